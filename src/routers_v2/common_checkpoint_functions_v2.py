# Checkpoints V2 - Phase-by-phase progress of analyzer operations persisted as JSON
# One file per operation type: [PERSISTENT_STORAGE]/checkpoints/[operation_type].json

import datetime, json, logging, os
from dataclasses import dataclass, field
from typing import Literal, Optional

from hardcoded_config import ANALYZER_HARDCODED_CONFIG
from routers_v2.common_logging_functions_v2 import MiddlewareLogger

logger = logging.getLogger(__name__)

CheckpointStatus = Literal["InProgress", "Completed", "Failed"]
CHECKPOINT_STATUSES = ["InProgress", "Completed", "Failed"]
INITIAL_PHASE = "Initializing"

def _utc_now() -> str:
  return datetime.datetime.now(datetime.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

@dataclass
class Checkpoint:
  operation_type: str
  scope: str
  started_at: str
  last_updated: str
  phase: str = INITIAL_PHASE
  completed_phases: list[str] = field(default_factory=list)
  processed_items: dict[str, int] = field(default_factory=dict)
  total_items: dict[str, int] = field(default_factory=dict)
  status: CheckpointStatus = "InProgress"
  completed_at: Optional[str] = None

  def to_json_dict(self) -> dict:
    data = {
      "OperationType": self.operation_type,
      "Scope": self.scope,
      "StartedAt": self.started_at,
      "LastUpdated": self.last_updated,
      "Phase": self.phase,
      "CompletedPhases": list(self.completed_phases),
      "ProcessedItems": dict(self.processed_items),
      "TotalItems": dict(self.total_items),
      "Status": self.status
    }
    if self.completed_at: data["CompletedAt"] = self.completed_at
    return data

  @classmethod
  def from_json_dict(cls, data: dict) -> "Checkpoint":
    """Raises KeyError / TypeError / ValueError on malformed data."""
    status = data["Status"]
    if status not in CHECKPOINT_STATUSES: raise ValueError(f"Unknown checkpoint status '{status}'")
    return cls(
      operation_type=str(data["OperationType"]),
      scope=str(data.get("Scope", "")),
      started_at=str(data.get("StartedAt", "")),
      last_updated=str(data.get("LastUpdated", "")),
      phase=str(data.get("Phase", INITIAL_PHASE)),
      completed_phases=[str(p) for p in data.get("CompletedPhases", [])],
      processed_items={str(k): int(v) for k, v in data.get("ProcessedItems", {}).items()},
      total_items={str(k): int(v) for k, v in data.get("TotalItems", {}).items()},
      status=status,
      completed_at=data.get("CompletedAt")
    )


class CheckpointStore:
  """
  Best-effort persistence of the running operation's progress. Write failures are logged
  as warnings and never raised to the caller.

  Usage:
    store = CheckpointStore("/home/data")
    store.start("permissions", "https://contoso.sharepoint.com/sites/hr")
    store.update(phase="Users", processed_count=0, total_count=120)
    store.update(processed_count=50)
    store.complete("Completed")  # deletes the file
    store.load("permissions")    # None
  """

  def __init__(self, persistent_storage_path: str, subfolder: str = ANALYZER_HARDCODED_CONFIG.PERSISTENT_STORAGE_PATH_CHECKPOINTS_SUBFOLDER):
    self.checkpoints_folder = os.path.join(persistent_storage_path, subfolder)
    self.current: Optional[Checkpoint] = None
    self._logger: Optional[MiddlewareLogger] = None

  def get_checkpoint_path(self, operation_type: str) -> str:
    return os.path.join(self.checkpoints_folder, f"{operation_type.lower()}.json")

  def start(self, operation_type: str, scope: str, logger: Optional[MiddlewareLogger] = None) -> Checkpoint:
    self._logger = logger
    now = _utc_now()
    self.current = Checkpoint(operation_type=operation_type, scope=scope, started_at=now, last_updated=now)
    self._save()
    return self.current

  def update(self, phase: Optional[str] = None, item_key: Optional[str] = None, processed_count: Optional[int] = None, total_count: Optional[int] = None) -> None:
    """Change phase and/or set a counter. Counters default to the current phase as key."""
    checkpoint = self.current
    if checkpoint is None: return
    if phase and phase != checkpoint.phase:
      if checkpoint.phase != INITIAL_PHASE and checkpoint.phase not in checkpoint.completed_phases:
        checkpoint.completed_phases.append(checkpoint.phase)
      checkpoint.phase = phase
    key = item_key or checkpoint.phase
    if processed_count is not None: checkpoint.processed_items[key] = processed_count
    if total_count is not None: checkpoint.total_items[key] = total_count
    checkpoint.last_updated = _utc_now()
    self._save()

  def complete(self, status: CheckpointStatus) -> None:
    """Mark the checkpoint terminal. A 'Completed' checkpoint is deleted from disk, a 'Failed' one is kept."""
    checkpoint = self.current
    if checkpoint is None: return
    now = _utc_now()
    checkpoint.status = status
    checkpoint.completed_at = now
    checkpoint.last_updated = now
    self._save()
    if status == "Completed": self._delete(checkpoint.operation_type)
    self._logger = None

  def load(self, operation_type: str, operation_logger: Optional[MiddlewareLogger] = None) -> Optional[Checkpoint]:
    """Return the persisted checkpoint only if it is still InProgress, else None."""
    path = self.get_checkpoint_path(operation_type)
    if not os.path.exists(path): return None
    try:
      with open(path, "r", encoding="utf-8") as f:
        checkpoint = Checkpoint.from_json_dict(json.load(f))
    except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError, AttributeError) as e:
      self._warn(f"Checkpoint '{path}' could not be read -> {e}", operation_logger=operation_logger)
      return None
    if checkpoint.status != "InProgress": return None
    return checkpoint

  def _save(self) -> None:
    checkpoint = self.current
    if checkpoint is None: return
    path = self.get_checkpoint_path(checkpoint.operation_type)
    temp_path = path + ".tmp"
    try:
      os.makedirs(self.checkpoints_folder, exist_ok=True)
      with open(temp_path, "w", encoding="utf-8") as f:
        json.dump(checkpoint.to_json_dict(), f, indent=2)
      os.replace(temp_path, path)
    except OSError as e:
      self._warn(f"Checkpoint '{path}' could not be written -> {e}")

  def _delete(self, operation_type: str) -> None:
    path = self.get_checkpoint_path(operation_type)
    try:
      if os.path.exists(path): os.unlink(path)
    except OSError as e:
      self._warn(f"Checkpoint '{path}' could not be deleted -> {e}")

  def _warn(self, message: str, operation_logger: Optional[MiddlewareLogger] = None) -> None:
    logger.warning(message)
    operation_logger = operation_logger or self._logger
    if operation_logger: operation_logger.log_function_output(f"WARNING: {message}")
