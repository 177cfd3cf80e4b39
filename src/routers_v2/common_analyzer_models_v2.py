# Analyzer Models V2 - Typed records for collected permission facts and the shared data store
# One explicit AnalyzerDataStore instance is created at app start and injected into every component

import datetime, threading
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Optional

# Role names ranked from most to least privileged; unknown roles rank lowest
ROLE_RANKING = ["Full Control", "Design", "Edit", "Contribute", "Approve", "Read", "Restricted View", "View Only"]
EDIT_OR_HIGHER_ROLES = {"Full Control", "Edit", "Contribute"}

def get_role_rank(role: str) -> int:
  return ROLE_RANKING.index(role) if role in ROLE_RANKING else len(ROLE_RANKING)

def get_highest_role(roles: list[str]) -> str:
  """Return the most privileged role of the list or "" if empty."""
  if not roles: return ""
  return sorted(roles, key=get_role_rank)[0]

def is_external_login(login_name: str, email: str = "") -> bool:
  """Guest accounts carry #ext# in the login or use the urn:spo:guest claim."""
  value = (login_name or "").lower()
  if "#ext#" in value or "urn:spo:guest" in value: return True
  return "#ext#" in (email or "").lower()

def get_email_domain(email: str) -> str:
  if not email or "@" not in email: return "Unknown"
  return email.split("@")[-1].lower()

def utc_now_iso() -> str:
  return datetime.datetime.now(datetime.timezone.utc).isoformat()


# ----------------------------------------- START: Collected Records ----------------------------------------------------------

@dataclass
class SiteRecord:
  title: str = "N/A"
  url: str = ""
  owner: str = "N/A"
  storage_mb: int = 0
  template: str = ""

@dataclass
class UserRecord:
  name: str = "N/A"
  login_name: str = ""
  email: str = ""
  is_external: bool = False
  is_site_admin: bool = False
  permission: str = ""
  site_url: str = ""
  graph_enriched: bool = False
  graph_account_enabled: Optional[bool] = None
  graph_last_sign_in: Optional[str] = None
  graph_created: Optional[str] = None
  graph_user_type: Optional[str] = None
  graph_is_stale: bool = False

@dataclass
class GroupRecord:
  name: str = "N/A"
  member_count: int = 0
  permission: str = ""
  description: str = ""
  owner: str = ""
  site_url: str = ""

@dataclass
class RoleAssignmentRecord:
  principal: str = "N/A"
  principal_type: str = "Unknown"
  role: str = ""
  scope: str = "Site"
  scope_url: str = ""
  login_name: str = ""

@dataclass
class InheritanceItem:
  title: str = "N/A"
  url: str = ""
  item_type: str = "Site"
  has_unique_permissions: bool = False
  parent_url: str = ""

@dataclass
class SharingLinkRecord:
  link_type: str = "Specific People"
  access_level: str = "View"
  site_title: str = ""
  site_url: str = ""
  item_url: str = ""
  member_count: int = 0
  created: str = ""

# ----------------------------------------- END: Collected Records ------------------------------------------------------------


# ----------------------------------------- START: Permission Tree ------------------------------------------------------------

class NodeKind(str, Enum):
  CONTAINER_ROOT = "ContainerRoot"
  CONTAINER = "Container"
  SUB_CONTAINER = "SubContainer"
  ITEM = "Item"

@dataclass
class PermissionEntry:
  principal: str
  role: str

@dataclass
class PermissionNode:
  """Node of the collected hierarchy. No permission entries means the node inherits from its parent."""
  title: str
  kind: NodeKind
  node_type: str
  url: str
  permissions: list[PermissionEntry] = field(default_factory=list)
  children: list["PermissionNode"] = field(default_factory=list)

  @property
  def inherits(self) -> bool:
    return len(self.permissions) == 0

  def iter_nodes(self):
    yield self
    for child in self.children:
      yield from child.iter_nodes()

  def to_dict(self) -> dict:
    return {
      "title": self.title,
      "kind": self.kind.value,
      "type": self.node_type,
      "url": self.url,
      "inherits": self.inherits,
      "permissions": [{"principal": p.principal, "role": p.role} for p in self.permissions],
      "children": [c.to_dict() for c in self.children]
    }

@dataclass
class PermissionMatrix:
  root: PermissionNode
  total_items: int
  unique_permissions: int
  total_principals: int
  scan_type: str
  completed_utc: str

  def to_dict(self) -> dict:
    return {
      "tree": [self.root.to_dict()],
      "total_items": self.total_items,
      "unique_permissions": self.unique_permissions,
      "total_principals": self.total_principals,
      "scan_type": self.scan_type,
      "completed_utc": self.completed_utc
    }

# ----------------------------------------- END: Permission Tree --------------------------------------------------------------


# ----------------------------------------- START: Data Store -----------------------------------------------------------------

@dataclass(frozen=True)
class DataSnapshot:
  """Immutable copy of the store contents at one point in time."""
  sites: tuple = ()
  users: tuple = ()
  groups: tuple = ()
  role_assignments: tuple = ()
  inheritance_items: tuple = ()
  sharing_links: tuple = ()

DATA_TYPES = ["sites", "users", "groups", "roleassignments", "inheritance", "sharinglinks", "matrix"]

class AnalyzerDataStore:
  """
  Collections filled by the background worker and read by endpoints.
  The worker owns the store while an operation runs; readers take snapshots so they
  tolerate a store that is being populated.
  """

  def __init__(self):
    self._lock = threading.Lock()
    self._sites: list[SiteRecord] = []
    self._users: list[UserRecord] = []
    self._groups: list[GroupRecord] = []
    self._role_assignments: list[RoleAssignmentRecord] = []
    self._inheritance_items: list[InheritanceItem] = []
    self._sharing_links: list[SharingLinkRecord] = []
    self._permission_matrix: Optional[PermissionMatrix] = None

  def replace_sites(self, sites: list[SiteRecord]) -> None:
    with self._lock: self._sites = list(sites)

  def clear_permission_data(self) -> None:
    """Drop everything a permission analysis collects. Sites and the last matrix are kept."""
    with self._lock:
      self._users = []
      self._groups = []
      self._role_assignments = []
      self._inheritance_items = []
      self._sharing_links = []

  def add_users(self, users: list[UserRecord]) -> None:
    with self._lock: self._users.extend(users)

  def add_groups(self, groups: list[GroupRecord]) -> None:
    with self._lock: self._groups.extend(groups)

  def add_role_assignments(self, role_assignments: list[RoleAssignmentRecord]) -> None:
    with self._lock: self._role_assignments.extend(role_assignments)

  def add_inheritance_items(self, items: list[InheritanceItem]) -> None:
    with self._lock: self._inheritance_items.extend(items)

  def add_sharing_links(self, links: list[SharingLinkRecord]) -> None:
    with self._lock: self._sharing_links.extend(links)

  def update_user(self, login_name: str, **changes) -> bool:
    """Update fields of the stored user(s) with the given login. Returns True if any user matched."""
    matched = False
    with self._lock:
      for user in self._users:
        if user.login_name == login_name:
          for key, value in changes.items(): setattr(user, key, value)
          matched = True
    return matched

  def update_group(self, name: str, site_url: str, **changes) -> bool:
    matched = False
    with self._lock:
      for group in self._groups:
        if group.name == name and group.site_url == site_url:
          for key, value in changes.items(): setattr(group, key, value)
          matched = True
    return matched

  def set_permission_matrix(self, matrix: PermissionMatrix) -> None:
    with self._lock: self._permission_matrix = matrix

  def get_permission_matrix(self) -> Optional[PermissionMatrix]:
    with self._lock: return self._permission_matrix

  def snapshot(self) -> DataSnapshot:
    """Copy all collections (records included) so later worker writes do not leak into readers."""
    with self._lock:
      return DataSnapshot(
        sites=tuple(SiteRecord(**asdict(s)) for s in self._sites),
        users=tuple(UserRecord(**asdict(u)) for u in self._users),
        groups=tuple(GroupRecord(**asdict(g)) for g in self._groups),
        role_assignments=tuple(RoleAssignmentRecord(**asdict(r)) for r in self._role_assignments),
        inheritance_items=tuple(InheritanceItem(**asdict(i)) for i in self._inheritance_items),
        sharing_links=tuple(SharingLinkRecord(**asdict(l)) for l in self._sharing_links)
      )

  def get_data(self, data_type: str) -> list[dict]:
    """Return one collection as list of dicts. Raises KeyError for unknown types."""
    if data_type not in DATA_TYPES: raise KeyError(data_type)
    if data_type == "matrix":
      matrix = self.get_permission_matrix()
      return [matrix.to_dict()] if matrix else []
    snapshot = self.snapshot()
    records = {
      "sites": snapshot.sites,
      "users": snapshot.users,
      "groups": snapshot.groups,
      "roleassignments": snapshot.role_assignments,
      "inheritance": snapshot.inheritance_items,
      "sharinglinks": snapshot.sharing_links
    }[data_type]
    return [asdict(r) for r in records]

  def get_metrics(self) -> dict:
    snapshot = self.snapshot()
    return {
      "total_sites": len(snapshot.sites),
      "total_users": len(snapshot.users),
      "total_groups": len(snapshot.groups),
      "external_users": sum(1 for u in snapshot.users if u.is_external),
      "total_role_assignments": len(snapshot.role_assignments),
      "inheritance_breaks": sum(1 for i in snapshot.inheritance_items if i.has_unique_permissions),
      "total_sharing_links": len(snapshot.sharing_links)
    }

  def get_enrichment_summary(self) -> dict:
    snapshot = self.snapshot()
    external = [u for u in snapshot.users if u.is_external]
    enriched = [u for u in external if u.graph_enriched]
    return {
      "total_external": len(external),
      "enriched_count": len(enriched),
      "disabled_accounts": sum(1 for u in enriched if u.graph_account_enabled is False),
      "stale_accounts": sum(1 for u in enriched if u.graph_is_stale)
    }

# ----------------------------------------- END: Data Store -------------------------------------------------------------------
