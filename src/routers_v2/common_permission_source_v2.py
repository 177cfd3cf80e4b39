# Permission Source V2 - Contract between the analyzer core and the remote platform clients
# Access denied on a single sub-resource is returned as SourceResult.denied(); throttle, timeout and fatal errors are raised

from dataclasses import dataclass, field
from typing import Any, Generic, Optional, Protocol, TypeVar

T = TypeVar("T")

# ----------------------------------------- START: Errors ---------------------------------------------------------------------

class RemoteThrottleError(Exception):
  """Remote platform rejected the call because of rate limiting."""
  def __init__(self, message: str, retry_after_seconds: Optional[float] = None):
    super().__init__(message)
    self.retry_after_seconds = retry_after_seconds

class RemoteTimeoutError(Exception):
  """Remote call did not answer in time."""

# ----------------------------------------- END: Errors -----------------------------------------------------------------------


# ----------------------------------------- START: Results --------------------------------------------------------------------

@dataclass
class SourceResult(Generic[T]):
  """Either a value (ok=True) or a partial failure with the reason the sub-resource was skipped."""
  ok: bool
  value: Optional[T] = None
  reason: str = ""

  @classmethod
  def success(cls, value: T) -> "SourceResult[T]":
    return cls(ok=True, value=value)

  @classmethod
  def denied(cls, reason: str) -> "SourceResult[T]":
    return cls(ok=False, value=None, reason=reason)

# ----------------------------------------- END: Results ----------------------------------------------------------------------


# ----------------------------------------- START: Source Records -------------------------------------------------------------

@dataclass
class SourceSite:
  title: str
  url: str
  owner: str = ""
  storage_mb: Optional[int] = None
  template: str = ""

@dataclass
class SourceUser:
  title: str
  login_name: str
  email: str = ""
  is_site_admin: bool = False
  principal_type: str = "User"

@dataclass
class SourceGroup:
  title: str
  member_count: int = 0
  description: str = ""
  owner: str = ""

@dataclass
class SourceRoleBinding:
  principal: str
  principal_type: str
  role_name: str
  login_name: str = ""

@dataclass
class SourceContainer:
  """Site, subsite, list or library. is_web=True for sites and subsites."""
  title: str
  url: str
  node_type: str
  has_unique_permissions: bool = False
  is_web: bool = False
  handle: Any = field(default=None, repr=False, compare=False)

@dataclass
class SourceItem:
  title: str
  url: str
  node_type: str
  has_unique_permissions: bool = False
  handle: Any = field(default=None, repr=False, compare=False)

@dataclass
class SourceSharingLink:
  link_type: str
  access_level: str
  url: str = ""
  member_count: int = 0
  created: str = ""

@dataclass
class DirectoryProfile:
  user_principal_name: str
  account_enabled: Optional[bool] = None
  last_sign_in: Optional[str] = None
  created: Optional[str] = None
  user_type: Optional[str] = None

# ----------------------------------------- END: Source Records ---------------------------------------------------------------


# ----------------------------------------- START: Protocols ------------------------------------------------------------------

class PermissionSource(Protocol):
  """What the analyzer needs from the SharePoint client, nothing more."""

  def open_site(self, site_url: str) -> SourceResult[SourceContainer]: ...

  def list_sites(self, scope: str) -> SourceResult[list[SourceSite]]: ...

  def list_users(self, site: SourceContainer) -> SourceResult[list[SourceUser]]: ...

  def list_groups(self, site: SourceContainer) -> SourceResult[list[SourceGroup]]: ...

  def list_sharing_links(self, site: SourceContainer) -> SourceResult[list[SourceSharingLink]]: ...

  def get_role_assignments(self, obj: Any) -> SourceResult[list[SourceRoleBinding]]: ...

  def list_child_containers(self, container: SourceContainer) -> SourceResult[list[SourceContainer]]: ...

  def list_items(self, container: SourceContainer) -> SourceResult[list[SourceItem]]: ...

  def close(self) -> None: ...

class DirectorySource(Protocol):
  """Directory lookups used to enrich external users."""

  def get_user_profile(self, user_principal_name: str) -> SourceResult[DirectoryProfile]: ...

  def close(self) -> None: ...

class TenantSiteLister(Protocol):
  """Tenant-wide site listing. Owns a remote client that close() releases."""

  def list_sites(self) -> list[SourceSite]: ...

  def close(self) -> None: ...

# ----------------------------------------- END: Protocols --------------------------------------------------------------------
