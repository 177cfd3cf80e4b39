# Analysis V2 - Work functions executed by OperationRunner on the background thread
# Site enumeration, permission analysis, external user enrichment and permission matrix build

import datetime
from typing import Callable, Optional

from hardcoded_config import ANALYZER_HARDCODED_CONFIG
from routers_v2.common_analyzer_models_v2 import GroupRecord, InheritanceItem, RoleAssignmentRecord, SharingLinkRecord, SiteRecord, UserRecord, get_highest_role, is_external_login
from routers_v2.common_operation_functions_v2 import OperationContext
from routers_v2.common_permission_source_v2 import DirectorySource, PermissionSource, SourceContainer
from routers_v2.common_permission_tree_functions_v2 import PermissionTreeCollector, ScanPolicy, get_url_key

PermissionSourceFactory = Callable[[], PermissionSource]
DirectorySourceFactory = Callable[[], DirectorySource]

def _plural(count: int, word: str) -> str:
  return f"{count} {word}{'s' if count != 1 else ''}"

def _open_site(context: OperationContext, source: PermissionSource, site_url: str) -> SourceContainer:
  """Open the site or fail the operation. Without the root nothing else can be collected."""
  result = context.call(lambda: source.open_site(site_url), "open_site")
  if not result.ok: raise PermissionError(f"Site '{site_url}' could not be opened -> {result.reason}")
  context.log(f"Connected to '{result.value.title}' ({result.value.url}).")
  return result.value


# ----------------------------------------- START: Site Enumeration -----------------------------------------------------------

def run_site_enumeration(context: OperationContext, source_factory: PermissionSourceFactory, scope: str) -> dict:
  context.set_phase("Connecting")
  source = source_factory()
  try: return enumerate_sites(context, source, scope)
  finally: source.close()

def enumerate_sites(context: OperationContext, source: PermissionSource, scope: str) -> dict:
  context.set_phase("Sites")
  result = context.call(lambda: source.list_sites(scope), "list_sites")
  if not result.ok:
    context.warn(f"Sites for scope '{scope}' could not be listed -> {result.reason}")
    sites = []
  else:
    sites = [
      SiteRecord(
        title=s.title or "N/A",
        url=s.url,
        owner=s.owner or "N/A",
        storage_mb=s.storage_mb or 0,
        template=s.template or ""
      )
      for s in result.value or []
    ]

  context.data_store.replace_sites(sites)
  context.report_progress(len(sites), total_count=len(sites))
  context.log(f"{_plural(len(sites), 'site')} found.")
  return {"sites": len(sites), "warnings": context.session.warning_count}

# ----------------------------------------- END: Site Enumeration -------------------------------------------------------------


# ----------------------------------------- START: Permission Analysis --------------------------------------------------------

def collect_containers(context: OperationContext, source: PermissionSource, root: SourceContainer) -> list[tuple[SourceContainer, str]]:
  """All subsites and lists below root as (container, parent_url), depth-first. Each subsite is visited once."""
  containers = []
  visited_webs = {get_url_key(root.url)}

  def visit(container: SourceContainer) -> None:
    result = context.call(lambda: source.list_child_containers(container), "list_child_containers")
    if not result.ok:
      context.warn(f"Contents of '{container.url}' could not be listed -> {result.reason}")
      return
    for child in result.value or []:
      if child.is_web:
        url_key = get_url_key(child.url)
        if url_key in visited_webs:
          context.warn(f"Subsite '{child.url}' already visited, skipping.")
          continue
        visited_webs.add(url_key)
      containers.append((child, container.url))
      if child.is_web: visit(child)

  visit(root)
  return containers

def _get_scope_label(container: SourceContainer, is_root: bool) -> str:
  if is_root: return "Site"
  if container.is_web: return "Subsite"
  return container.node_type or "List"

def run_permission_analysis(context: OperationContext, source_factory: PermissionSourceFactory, site_url: str) -> dict:
  context.set_phase("Connecting")
  source = source_factory()
  try: return analyze_permissions(context, source, site_url)
  finally: source.close()

def analyze_permissions(context: OperationContext, source: PermissionSource, site_url: str) -> dict:
  """
  Collect users, groups, role assignments, inheritance breaks and sharing links of one site.
  Previously collected permission data is replaced, enumerated sites are kept.
  Every phase writes to the data store as soon as its records exist, so a failed run keeps what was collected before the failure.
  """
  store = context.data_store
  ignored_levels = set(ANALYZER_HARDCODED_CONFIG.IGNORED_PERMISSION_LEVELS)

  root = _open_site(context, source, site_url)
  store.clear_permission_data()

  # Users
  context.set_phase("Users")
  users = []
  result = context.call(lambda: source.list_users(root), "list_users")
  if not result.ok: context.warn(f"Users of '{root.url}' could not be read -> {result.reason}")
  else:
    for u in result.value or []:
      users.append(UserRecord(
        name=u.title or "N/A",
        login_name=u.login_name,
        email=u.email or "",
        is_external=is_external_login(u.login_name, u.email),
        is_site_admin=u.is_site_admin,
        site_url=root.url
      ))
  store.add_users(users)
  context.report_progress(len(users), total_count=len(users))
  context.log(f"{_plural(len(users), 'user')} found, {sum(1 for u in users if u.is_external)} external.")

  # Groups
  context.set_phase("Groups")
  groups = []
  result = context.call(lambda: source.list_groups(root), "list_groups")
  if not result.ok: context.warn(f"Groups of '{root.url}' could not be read -> {result.reason}")
  else:
    for g in result.value or []:
      groups.append(GroupRecord(name=g.title or "N/A", member_count=g.member_count, description=g.description or "", owner=g.owner or "", site_url=root.url))
  store.add_groups(groups)
  context.report_progress(len(groups), total_count=len(groups))
  context.log(f"{_plural(len(groups), 'group')} found.")

  # Role assignments on the root and on every container that breaks inheritance
  context.set_phase("RoleAssignments")
  containers = collect_containers(context, source, root)
  inheritance_items = [
    InheritanceItem(title=c.title or "N/A", url=c.url, item_type=_get_scope_label(c, False), has_unique_permissions=c.has_unique_permissions, parent_url=parent_url)
    for c, parent_url in containers
  ]
  store.add_inheritance_items(inheritance_items)
  scopes = [(root, True)] + [(c, False) for c, _ in containers if c.has_unique_permissions]
  role_assignments = []
  for index, (container, is_root) in enumerate(scopes, 1):
    result = context.call(lambda: source.get_role_assignments(container), "get_role_assignments")
    if not result.ok:
      context.warn(f"Permissions of '{container.url}' could not be read -> {result.reason}")
      continue
    scope_records = [
      RoleAssignmentRecord(
        principal=binding.principal or "N/A",
        principal_type=binding.principal_type or "Unknown",
        role=binding.role_name,
        scope=_get_scope_label(container, is_root),
        scope_url=container.url,
        login_name=binding.login_name or ""
      )
      for binding in result.value or [] if binding.role_name not in ignored_levels
    ]
    store.add_role_assignments(scope_records)
    role_assignments.extend(scope_records)
    context.report_progress(index, total_count=len(scopes))
  context.log(f"{_plural(len(role_assignments), 'role assignment')} on {_plural(len(scopes), 'scope')}.")

  # Directly held roles of users and groups
  user_roles: dict[str, list[str]] = {}
  group_roles: dict[str, list[str]] = {}
  for ra in role_assignments:
    if ra.principal_type == "User" and ra.login_name: user_roles.setdefault(ra.login_name, []).append(ra.role)
    elif ra.principal_type == "SharePointGroup": group_roles.setdefault(ra.principal, []).append(ra.role)
  for login_name, roles in user_roles.items(): store.update_user(login_name, permission=get_highest_role(roles))
  for group_name, roles in group_roles.items(): store.update_group(group_name, root.url, permission=get_highest_role(roles))

  # Inheritance
  context.set_phase("Inheritance")
  broken_count = sum(1 for i in inheritance_items if i.has_unique_permissions)
  context.report_progress(len(inheritance_items), total_count=len(inheritance_items))
  context.log(f"{_plural(len(inheritance_items), 'container')} checked, {broken_count} with broken inheritance.")

  # Sharing links
  context.set_phase("SharingLinks")
  sharing_links = []
  result = context.call(lambda: source.list_sharing_links(root), "list_sharing_links")
  if not result.ok: context.warn(f"Sharing links of '{root.url}' could not be read -> {result.reason}")
  else:
    for link in result.value or []:
      sharing_links.append(SharingLinkRecord(link_type=link.link_type, access_level=link.access_level, site_title=root.title, site_url=root.url, item_url=link.url or "", member_count=link.member_count, created=link.created or ""))
  store.add_sharing_links(sharing_links)
  context.report_progress(len(sharing_links), total_count=len(sharing_links))
  context.log(f"{_plural(len(sharing_links), 'sharing link')} found.")

  return {
    "site_url": root.url,
    "users": len(users),
    "groups": len(groups),
    "role_assignments": len(role_assignments),
    "inheritance_items": len(inheritance_items),
    "inheritance_breaks": broken_count,
    "sharing_links": len(sharing_links),
    "warnings": context.session.warning_count
  }

# ----------------------------------------- END: Permission Analysis ----------------------------------------------------------


# ----------------------------------------- START: External User Enrichment ---------------------------------------------------

def get_user_principal_name(login_name: str, email: str = "") -> str:
  """Claims logins look like 'i:0#.f|membership|john_fabrikam.com#ext#@contoso.onmicrosoft.com'."""
  if login_name and "|" in login_name: return login_name.split("|")[-1]
  return login_name or email

def parse_graph_datetime(value: Optional[str]) -> Optional[datetime.datetime]:
  if not value: return None
  try: parsed = datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))
  except ValueError: return None
  if parsed.tzinfo is None: parsed = parsed.replace(tzinfo=datetime.timezone.utc)
  return parsed

def is_stale_account(last_sign_in: Optional[str], created: Optional[str], now: datetime.datetime, stale_days: int = ANALYZER_HARDCODED_CONFIG.STALE_ACCOUNT_DAYS) -> bool:
  """Stale when the last sign-in is older than stale_days, or when there is none and the account is older than that."""
  threshold = now - datetime.timedelta(days=stale_days)
  signed_in = parse_graph_datetime(last_sign_in)
  if signed_in: return signed_in < threshold
  created_at = parse_graph_datetime(created)
  return created_at is not None and created_at < threshold

def run_external_enrichment(context: OperationContext, directory_factory: DirectorySourceFactory, now: Optional[datetime.datetime] = None) -> dict:
  context.set_phase("Connecting")
  directory = directory_factory()
  try: return enrich_external_users(context, directory, now)
  finally: directory.close()

def enrich_external_users(context: OperationContext, directory: DirectorySource, now: Optional[datetime.datetime] = None) -> dict:
  store = context.data_store
  now = now or datetime.datetime.now(datetime.timezone.utc)

  external_users = {}
  for user in store.snapshot().users:
    if user.is_external and user.login_name not in external_users: external_users[user.login_name] = user
  total = len(external_users)

  context.set_phase("ExternalUsers", total_count=total)
  if total == 0:
    context.log("No external users in the data store. Run a permission analysis first.")
    return {"external_users": 0, "enriched": 0, "disabled": 0, "stale": 0, "warnings": context.session.warning_count}

  enriched_count = 0; disabled_count = 0; stale_count = 0
  for index, (login_name, user) in enumerate(external_users.items(), 1):
    user_principal_name = get_user_principal_name(login_name, user.email)
    context.log(f"( {index} / {total} ) {user.name} ({user_principal_name})...")
    result = context.call(lambda: directory.get_user_profile(user_principal_name), "get_user_profile")
    if not result.ok:
      context.warn(f"Directory profile of '{user_principal_name}' could not be read -> {result.reason}")
      context.report_progress(index, total_count=total)
      continue

    profile = result.value
    is_stale = is_stale_account(profile.last_sign_in, profile.created, now)
    store.update_user(
      login_name,
      graph_enriched=True,
      graph_account_enabled=profile.account_enabled,
      graph_last_sign_in=profile.last_sign_in,
      graph_created=profile.created,
      graph_user_type=profile.user_type,
      graph_is_stale=is_stale
    )
    enriched_count += 1
    if profile.account_enabled is False: disabled_count += 1
    if is_stale: stale_count += 1
    context.report_progress(index, total_count=total)

  context.log(f"{enriched_count} of {_plural(total, 'external user')} enriched, {disabled_count} disabled, {stale_count} stale.")
  return {"external_users": total, "enriched": enriched_count, "disabled": disabled_count, "stale": stale_count, "warnings": context.session.warning_count}

# ----------------------------------------- END: External User Enrichment -----------------------------------------------------


# ----------------------------------------- START: Permission Matrix ----------------------------------------------------------

def run_permission_matrix(context: OperationContext, source_factory: PermissionSourceFactory, site_url: str, scan_type: str) -> dict:
  scan_policy = ScanPolicy(scan_type)

  context.set_phase("Connecting")
  source = source_factory()
  try: return build_permission_matrix(context, source, site_url, scan_policy)
  finally: source.close()

def build_permission_matrix(context: OperationContext, source: PermissionSource, site_url: str, scan_policy: ScanPolicy) -> dict:
  root = _open_site(context, source, site_url)

  context.set_phase("Scanning")
  collector = PermissionTreeCollector(source, call=context.call, warn=context.warn)
  matrix = collector.collect(root, scan_policy)
  context.data_store.set_permission_matrix(matrix)
  context.report_progress(matrix.total_items, total_count=matrix.total_items)
  context.log(f"{_plural(matrix.total_items, 'node')} scanned ({scan_policy.value}), {matrix.unique_permissions} with unique permissions, {_plural(matrix.total_principals, 'principal')}.")

  return {
    "site_url": root.url,
    "scan_type": matrix.scan_type,
    "total_items": matrix.total_items,
    "unique_permissions": matrix.unique_permissions,
    "total_principals": matrix.total_principals,
    "warnings": context.session.warning_count
  }

# ----------------------------------------- END: Permission Matrix ------------------------------------------------------------
