from dataclasses import dataclass
from typing import List

@dataclass
class AnalyzerHardcodedConfig:
  PERSISTENT_STORAGE_PATH_CHECKPOINTS_SUBFOLDER: str
  TENANT_SCOPE_MARKER: str
  THROTTLE_DEFAULT_MAX_RETRIES: int
  THROTTLE_DEFAULT_INITIAL_BACKOFF_MS: int
  THROTTLE_MAX_BACKOFF_MS: int
  THROTTLE_MAX_JITTER_FRACTION: float
  IGNORED_PERMISSION_LEVELS: List[str]
  INCLUDED_LIST_TEMPLATES: List[int]
  LIST_ITEMS_BATCH_SIZE: int
  STALE_ACCOUNT_DAYS: int


ANALYZER_HARDCODED_CONFIG = AnalyzerHardcodedConfig(
  PERSISTENT_STORAGE_PATH_CHECKPOINTS_SUBFOLDER="checkpoints"
  ,TENANT_SCOPE_MARKER="tenant"
  ,THROTTLE_DEFAULT_MAX_RETRIES=5
  ,THROTTLE_DEFAULT_INITIAL_BACKOFF_MS=2000
  ,THROTTLE_MAX_BACKOFF_MS=60000
  ,THROTTLE_MAX_JITTER_FRACTION=0.25
  # Structural grant SharePoint adds on parents of uniquely shared items
  ,IGNORED_PERMISSION_LEVELS=["Limited Access"]
  # Generic List, Document Library, Site Pages
  ,INCLUDED_LIST_TEMPLATES=[100, 101, 119]
  ,LIST_ITEMS_BATCH_SIZE=5000
  ,STALE_ACCOUNT_DAYS=90
)
