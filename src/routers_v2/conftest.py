# Shared pytest fixtures for routers_v2 tests: in-memory permission and directory sources
# No network access; every remote call is answered from dictionaries keyed by URL

import pytest

from routers_v2.common_analyzer_models_v2 import AnalyzerDataStore
from routers_v2.common_checkpoint_functions_v2 import CheckpointStore
from routers_v2.common_logging_functions_v2 import MiddlewareLogger
from routers_v2.common_operation_functions_v2 import OperationContext, OperationSession, SharedOperationState
from routers_v2.common_permission_source_v2 import DirectoryProfile, SourceContainer, SourceGroup, SourceItem, SourceResult, SourceRoleBinding, SourceSharingLink, SourceSite, SourceUser
from routers_v2.common_throttle_functions_v2 import ThrottleGuard

SITE_URL = "https://contoso.sharepoint.com/sites/hr"
GUEST_LOGIN = "i:0#.f|membership|guest_fabrikam.com#ext#@contoso.onmicrosoft.com"
ALICE_LOGIN = "i:0#.f|membership|alice@contoso.com"


# ----------------------------------------- START: Fake Sources ---------------------------------------------------------------

class FakePermissionSource:
  """
  PermissionSource answering from dictionaries keyed by URL.
  - denied: set of (method_name, url) answered with SourceResult.denied()
  - failures: method_name -> list of exceptions raised (one per call) before answering normally; a None entry lets that call through
  """

  def __init__(self, root: SourceContainer, role_assignments: dict = None, children: dict = None, items: dict = None, sites: list = None, users: list = None, groups: list = None, sharing_links: list = None):
    self.root = root
    self.role_assignments = role_assignments or {}
    self.children = children or {}
    self.items = items or {}
    self.sites = sites or []
    self.users = users or []
    self.groups = groups or []
    self.sharing_links = sharing_links or []
    self.denied: set = set()
    self.failures: dict = {}
    self.calls: list = []
    self.closed = False

  def _answer(self, method_name: str, url: str, value):
    self.calls.append((method_name, url))
    pending = self.failures.get(method_name)
    if pending:
      error = pending.pop(0)
      if error is not None: raise error
    if (method_name, url) in self.denied: return SourceResult.denied(f"Access denied: {method_name} {url}")
    return SourceResult.success(value)

  def open_site(self, site_url):
    return self._answer("open_site", site_url, self.root)

  def list_sites(self, scope):
    return self._answer("list_sites", scope, list(self.sites))

  def list_users(self, site):
    return self._answer("list_users", site.url, list(self.users))

  def list_groups(self, site):
    return self._answer("list_groups", site.url, list(self.groups))

  def list_sharing_links(self, site):
    return self._answer("list_sharing_links", site.url, list(self.sharing_links))

  def get_role_assignments(self, obj):
    return self._answer("get_role_assignments", obj.url, list(self.role_assignments.get(obj.url, [])))

  def list_child_containers(self, container):
    return self._answer("list_child_containers", container.url, list(self.children.get(container.url, [])))

  def list_items(self, container):
    return self._answer("list_items", container.url, list(self.items.get(container.url, [])))

  def close(self):
    self.closed = True

class FakeDirectorySource:
  def __init__(self, profiles: dict = None):
    self.profiles = profiles or {}
    self.calls: list = []
    self.closed = False

  def get_user_profile(self, user_principal_name):
    self.calls.append(user_principal_name)
    profile = self.profiles.get(user_principal_name)
    if profile is None: return SourceResult.denied(f"HTTP 404: '{user_principal_name}' not found")
    return SourceResult.success(profile)

  def close(self):
    self.closed = True

# ----------------------------------------- END: Fake Sources -----------------------------------------------------------------


# ----------------------------------------- START: Site Tree ------------------------------------------------------------------

def create_fake_site_source() -> FakePermissionSource:
  """
  HR (root)
    Projects (subsite, unique)
      Plans (library, inherits) -> plan.xlsx (inherits)
    Documents (library, unique) -> a.docx (unique), b.docx (inherits), Folder1 (inherits)
    Announcements (list, inherits) -> item1 (unique), item2 (inherits)
  """
  root = SourceContainer(title="HR", url=SITE_URL, node_type="Site", has_unique_permissions=True, is_web=True)
  projects = SourceContainer(title="Projects", url=f"{SITE_URL}/projects", node_type="Subsite", has_unique_permissions=True, is_web=True)
  plans = SourceContainer(title="Plans", url=f"{SITE_URL}/projects/Plans", node_type="Library", has_unique_permissions=False)
  documents = SourceContainer(title="Documents", url=f"{SITE_URL}/Shared Documents", node_type="Library", has_unique_permissions=True)
  announcements = SourceContainer(title="Announcements", url=f"{SITE_URL}/Lists/Announcements", node_type="List", has_unique_permissions=False)

  return FakePermissionSource(
    root=root,
    role_assignments={
      SITE_URL: [
        SourceRoleBinding("HR Owners", "SharePointGroup", "Full Control"),
        SourceRoleBinding("HR Members", "SharePointGroup", "Edit"),
        SourceRoleBinding("Alice", "User", "Limited Access", ALICE_LOGIN)
      ],
      projects.url: [SourceRoleBinding("Alice", "User", "Edit", ALICE_LOGIN)],
      documents.url: [SourceRoleBinding("Bob", "User", "Full Control", "i:0#.f|membership|bob@contoso.com")],
      f"{documents.url}/a.docx": [SourceRoleBinding("Guest", "User", "Edit", GUEST_LOGIN)],
      f"{announcements.url}/1_.000": [SourceRoleBinding("Carol", "User", "Read", "i:0#.f|membership|carol@contoso.com")]
    },
    children={
      SITE_URL: [projects, documents, announcements],
      projects.url: [plans]
    },
    items={
      plans.url: [SourceItem("plan.xlsx", f"{plans.url}/plan.xlsx", "File", False)],
      documents.url: [
        SourceItem("a.docx", f"{documents.url}/a.docx", "File", True),
        SourceItem("b.docx", f"{documents.url}/b.docx", "File", False),
        SourceItem("Folder1", f"{documents.url}/Folder1", "Folder", False)
      ],
      announcements.url: [
        SourceItem("item1", f"{announcements.url}/1_.000", "Item", True),
        SourceItem("item2", f"{announcements.url}/2_.000", "Item", False)
      ]
    },
    sites=[SourceSite("HR", SITE_URL, owner="admin@contoso.com", storage_mb=120), SourceSite("Finance", "https://contoso.sharepoint.com/sites/finance")],
    users=[
      SourceUser("Alice", ALICE_LOGIN, "alice@contoso.com"),
      SourceUser("Guest", GUEST_LOGIN, "guest@fabrikam.com", is_site_admin=True)
    ],
    groups=[SourceGroup("HR Owners", member_count=2), SourceGroup("HR Members", member_count=0)],
    sharing_links=[SourceSharingLink("Anonymous", "Edit", url=f"{documents.url}/a.docx", member_count=1)]
  )

def create_subsite_chain_source(depth: int) -> FakePermissionSource:
  """HR (root) -> w0 -> w1 -> ... -> w[depth-1], each subsite nested in the previous one and inheriting."""
  root = SourceContainer(title="HR", url=SITE_URL, node_type="Site", has_unique_permissions=True, is_web=True)
  children = {}
  parent_url = SITE_URL
  for level in range(depth):
    web = SourceContainer(title=f"w{level}", url=f"{parent_url}/w{level}", node_type="Subsite", has_unique_permissions=False, is_web=True)
    children[parent_url] = [web]
    parent_url = web.url
  return FakePermissionSource(root=root, role_assignments={SITE_URL: [SourceRoleBinding("HR Owners", "SharePointGroup", "Full Control")]}, children=children)

# ----------------------------------------- END: Site Tree --------------------------------------------------------------------


# ----------------------------------------- START: Fixtures -------------------------------------------------------------------

@pytest.fixture
def fake_source() -> FakePermissionSource:
  return create_fake_site_source()

@pytest.fixture
def sleeps() -> list:
  return []

@pytest.fixture
def throttle_guard(sleeps) -> ThrottleGuard:
  return ThrottleGuard(max_retries=3, initial_backoff_ms=100, sleep=sleeps.append, random_uniform=lambda low, high: 0)

@pytest.fixture
def operation_state() -> SharedOperationState:
  return SharedOperationState()

@pytest.fixture
def operation_context(tmp_path, throttle_guard, operation_state) -> OperationContext:
  checkpoints = CheckpointStore(str(tmp_path))
  session = OperationSession(session_id="test", operation_type="permissions", scope=SITE_URL, started_utc="2026-01-01T00:00:00+00:00")
  logger = MiddlewareLogger.create(operation_state=operation_state)
  checkpoints.start(session.operation_type, session.scope, logger=logger)
  return OperationContext(session=session, logger=logger, throttle_guard=throttle_guard, checkpoints=checkpoints, data_store=AnalyzerDataStore())

@pytest.fixture
def guest_profile() -> DirectoryProfile:
  return DirectoryProfile(user_principal_name="guest_fabrikam.com#ext#@contoso.onmicrosoft.com", account_enabled=False, last_sign_in="2025-01-01T00:00:00Z", created="2024-06-01T00:00:00Z", user_type="Guest")

# ----------------------------------------- END: Fixtures ---------------------------------------------------------------------
