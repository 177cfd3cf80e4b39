# Common functions for SharePoint operations using Office365-REST-Python-Client
# https://pypi.org/project/Office365-REST-Python-Client/#Working-with-SharePoint-API
# V2 version: PermissionSource implementation used by the analyzer operations
import os, re
from typing import Any, Callable, Optional
from urllib.parse import urlparse
from office365.runtime.client_request_exception import ClientRequestException
from office365.sharepoint.client_context import ClientContext
from cryptography.hazmat.primitives.serialization import pkcs12, Encoding, PrivateFormat, NoEncryption
from cryptography.hazmat.backends import default_backend
from hardcoded_config import ANALYZER_HARDCODED_CONFIG
from routers_v2.common_permission_source_v2 import SourceContainer, SourceGroup, SourceItem, SourceResult, SourceRoleBinding, SourceSharingLink, SourceSite, SourceUser, TenantSiteLister

# SharePoint PrincipalType values
PRINCIPAL_TYPES = {1: "User", 2: "DistributionList", 4: "SecurityGroup", 8: "SharePointGroup"}

# Sharing links are backed by hidden site groups: SharingLinks.[ITEM_GUID].[LINK_KIND].[LINK_GUID]
SHARING_LINK_GROUP_PATTERN = re.compile(r"^SharingLinks\.([0-9a-fA-F-]+)\.([A-Za-z]+)\.([0-9a-fA-F-]+)$")
SHARING_LINK_KINDS = {
  "AnonymousEdit": ("Anonymous", "Edit"),
  "AnonymousView": ("Anonymous", "View"),
  "OrganizationEdit": ("Company-wide", "Edit"),
  "OrganizationView": ("Company-wide", "View"),
  "Flexible": ("Specific People", "Other")
}

ACCESS_DENIED_STATUS_CODES = {401, 403}
ACCESS_DENIED_MESSAGE_MARKERS = ["access denied", "unauthorizedaccessexception", "access is denied"]

# ----------------------------------------- START: Authentication -------------------------------------------------------------

def get_or_create_pem_from_pfx(cert_path: str, cert_password: str) -> tuple[str, str]:
  """
  Convert a PFX certificate to PEM format.
  Only recreates the PEM file if it doesn't exist or has a different timestamp than the PFX file.
  Returns: (pem_file_path, certificate_thumbprint)
  """
  pem_file = cert_path.replace('.pfx', '.pem')
  pfx_mtime = os.path.getmtime(cert_path)

  needs_conversion = True
  if os.path.exists(pem_file):
    if os.path.getmtime(pem_file) == pfx_mtime: needs_conversion = False

  with open(cert_path, 'rb') as f: pfx_data = f.read()
  private_key, certificate, _ = pkcs12.load_key_and_certificates(pfx_data, cert_password.encode() if cert_password else None, backend=default_backend())

  if needs_conversion:
    with open(pem_file, 'wb') as f:
      f.write(private_key.private_bytes(encoding=Encoding.PEM, format=PrivateFormat.PKCS8, encryption_algorithm=NoEncryption()))
      f.write(certificate.public_bytes(Encoding.PEM))
    # PEM timestamp mirrors the PFX so a replaced PFX triggers reconversion
    os.utime(pem_file, (pfx_mtime, pfx_mtime))

  thumbprint = certificate.fingerprint(certificate.signature_hash_algorithm).hex().upper()
  return pem_file, thumbprint

def connect_to_site_using_client_id_and_certificate(site_url: str, client_id: str, tenant_id: str, cert_path: str, cert_password: str) -> ClientContext:
  """App-only connection with certificate credentials. The library handles MSAL token acquisition internally."""
  pem_file, thumbprint = get_or_create_pem_from_pfx(cert_path, cert_password)
  return ClientContext(site_url).with_client_certificate(tenant=tenant_id, client_id=client_id, thumbprint=thumbprint, cert_path=pem_file)

# ----------------------------------------- END: Authentication ---------------------------------------------------------------


# ----------------------------------------- START: Helpers --------------------------------------------------------------------

def is_access_denied_error(error: Exception) -> bool:
  if not isinstance(error, ClientRequestException): return False
  response = getattr(error, "response", None)
  if getattr(response, "status_code", None) in ACCESS_DENIED_STATUS_CODES: return True
  message = str(error).lower()
  return any(marker in message for marker in ACCESS_DENIED_MESSAGE_MARKERS)

def try_source_call(call: Callable[[], Any]) -> SourceResult:
  """Run a SharePoint request. Access denied becomes SourceResult.denied(), every other error is raised."""
  try:
    return SourceResult.success(call())
  except ClientRequestException as e:
    if is_access_denied_error(e): return SourceResult.denied(str(e))
    raise

def parse_sharing_link_group(group_title: str) -> Optional[tuple[str, str]]:
  """'SharingLinks.[GUID].AnonymousEdit.[GUID]' -> ('Anonymous', 'Edit'). None for regular groups."""
  match = SHARING_LINK_GROUP_PATTERN.match(group_title or "")
  if not match: return None
  return SHARING_LINK_KINDS.get(match.group(2), ("Specific People", "Other"))

def get_tenant_root_url(site_url: str) -> str:
  parsed = urlparse(site_url)
  return f"{parsed.scheme}://{parsed.netloc}"

def get_list_node_type(base_template: int) -> str:
  return "List" if base_template == 100 else "Library"

def get_storage_mb(usage: Any) -> Optional[int]:
  """Site.Usage arrives as dict or UsageInfo value depending on library version."""
  if usage is None: return None
  storage = usage.get("Storage") if isinstance(usage, dict) else getattr(usage, "storage", None)
  if storage is None: return None
  return int(storage) // (1024 * 1024)

# ----------------------------------------- END: Helpers ----------------------------------------------------------------------


# ----------------------------------------- START: SharePoint Permission Source -----------------------------------------------

class SharePointPermissionSource:
  """
  PermissionSource backed by Office365-REST-Python-Client with certificate authentication.
  One ClientContext per site collection URL is created on demand and reused.

  Usage:
    source = SharePointPermissionSource(client_id, tenant_id, cert_path, cert_password, create_tenant_site_lister=lambda: GraphSiteLister(runner))
    site = source.open_site("https://contoso.sharepoint.com/sites/hr").value
    bindings = source.get_role_assignments(site)
    source.close()

  The tenant site lister is created on the first tenant-wide list_sites() call and closed by close().
  """

  def __init__(self, client_id: str, tenant_id: str, cert_path: str, cert_password: str, create_tenant_site_lister: Optional[Callable[[], TenantSiteLister]] = None, connect: Callable[..., ClientContext] = connect_to_site_using_client_id_and_certificate):
    self.client_id = client_id
    self.tenant_id = tenant_id
    self.cert_path = cert_path
    self.cert_password = cert_password
    self._create_tenant_site_lister = create_tenant_site_lister
    self._tenant_site_lister: Optional[TenantSiteLister] = None
    self._connect = connect
    self._contexts: dict[str, ClientContext] = {}

  def close(self) -> None:
    if self._tenant_site_lister is not None:
      self._tenant_site_lister.close()
      self._tenant_site_lister = None
    self._contexts.clear()

  def _get_context(self, site_url: str) -> ClientContext:
    key = site_url.rstrip("/").lower()
    if key not in self._contexts:
      self._contexts[key] = self._connect(site_url, self.client_id, self.tenant_id, self.cert_path, self.cert_password)
    return self._contexts[key]

  def open_site(self, site_url: str) -> SourceResult[SourceContainer]:
    def load():
      ctx = self._get_context(site_url)
      web = ctx.web.get().select(["Title", "Url", "HasUniqueRoleAssignments"]).execute_query()
      return SourceContainer(title=web.title or "N/A", url=web.url or site_url, node_type="Site", has_unique_permissions=True, is_web=True, handle=web)
    return try_source_call(load)

  def list_sites(self, scope: str) -> SourceResult[list[SourceSite]]:
    if (scope or "").strip().lower() == ANALYZER_HARDCODED_CONFIG.TENANT_SCOPE_MARKER:
      if self._create_tenant_site_lister is None: return SourceResult.denied("Tenant-wide enumeration requires Graph credentials.")
      if self._tenant_site_lister is None: self._tenant_site_lister = self._create_tenant_site_lister()
      return SourceResult.success(self._tenant_site_lister.list_sites())

    def load():
      ctx = self._get_context(scope)
      web = ctx.web.get().select(["Title", "Url", "WebTemplate"]).execute_query()
      site = ctx.site.get().select(["Usage"]).execute_query()
      sites = [SourceSite(title=web.title or "N/A", url=web.url or scope, storage_mb=get_storage_mb(site.properties.get("Usage")), template=web.properties.get("WebTemplate", ""))]
      subwebs = ctx.web.webs.get().select(["Title", "Url", "WebTemplate"]).execute_query()
      for subweb in subwebs:
        sites.append(SourceSite(title=subweb.title or "N/A", url=subweb.url, template=subweb.properties.get("WebTemplate", "")))
      return sites
    return try_source_call(load)

  def list_users(self, site: SourceContainer) -> SourceResult[list[SourceUser]]:
    def load():
      users = site.handle.site_users.get().execute_query()
      return [
        SourceUser(title=u.title or "", login_name=u.login_name or "", email=u.properties.get("Email", "") or "", is_site_admin=bool(u.properties.get("IsSiteAdmin", False)), principal_type=PRINCIPAL_TYPES.get(u.principal_type, "Unknown"))
        for u in users if u.principal_type == 1
      ]
    return try_source_call(load)

  def _load_site_groups(self, site: SourceContainer) -> list[tuple[Any, int]]:
    groups = site.handle.site_groups.get().execute_query()
    result = []
    for group in groups:
      members = group.users.get().execute_query()
      result.append((group, len(members)))
    return result

  def list_groups(self, site: SourceContainer) -> SourceResult[list[SourceGroup]]:
    def load():
      return [
        SourceGroup(title=g.title or "", member_count=member_count, description=g.properties.get("Description", "") or "", owner=g.properties.get("OwnerTitle", "") or "")
        for g, member_count in self._load_site_groups(site) if parse_sharing_link_group(g.title) is None
      ]
    return try_source_call(load)

  def list_sharing_links(self, site: SourceContainer) -> SourceResult[list[SourceSharingLink]]:
    def load():
      links = []
      for group, member_count in self._load_site_groups(site):
        kind = parse_sharing_link_group(group.title)
        if kind is None: continue
        link_type, access_level = kind
        links.append(SourceSharingLink(link_type=link_type, access_level=access_level, url=group.properties.get("Description", "") or "", member_count=member_count))
      return links
    return try_source_call(load)

  def get_role_assignments(self, obj: Any) -> SourceResult[list[SourceRoleBinding]]:
    securable = getattr(obj, "handle", obj)
    def load():
      role_assignments = securable.role_assignments.get().expand(["Member", "RoleDefinitionBindings"]).execute_query()
      bindings = []
      for ra in list(role_assignments):
        member = ra.member
        for binding in list(ra.role_definition_bindings or []):
          bindings.append(SourceRoleBinding(
            principal=member.title or "",
            principal_type=PRINCIPAL_TYPES.get(member.principal_type, "Unknown"),
            role_name=binding.properties.get("Name", ""),
            login_name=member.login_name or ""
          ))
      return bindings
    return try_source_call(load)

  def list_child_containers(self, container: SourceContainer) -> SourceResult[list[SourceContainer]]:
    """Subsites first, then visible lists and libraries of the included templates."""
    web = container.handle
    def load():
      children = []
      subwebs = web.webs.get().select(["Title", "Url", "HasUniqueRoleAssignments"]).execute_query()
      for subweb in subwebs:
        children.append(SourceContainer(title=subweb.title or "N/A", url=subweb.url, node_type="Subsite", has_unique_permissions=bool(subweb.properties.get("HasUniqueRoleAssignments", False)), is_web=True, handle=subweb))
      tenant_root_url = get_tenant_root_url(container.url)
      lists = web.lists.get().select(["Title", "BaseTemplate", "Hidden", "HasUniqueRoleAssignments", "RootFolder/ServerRelativeUrl"]).expand(["RootFolder"]).execute_query()
      for lst in lists:
        if lst.base_template not in ANALYZER_HARDCODED_CONFIG.INCLUDED_LIST_TEMPLATES or lst.properties.get("Hidden", False): continue
        server_relative_url = lst.root_folder.properties.get("ServerRelativeUrl", "")
        children.append(SourceContainer(title=lst.title or "N/A", url=tenant_root_url + server_relative_url, node_type=get_list_node_type(lst.base_template), has_unique_permissions=bool(lst.properties.get("HasUniqueRoleAssignments", False)), handle=lst))
      return children
    return try_source_call(load)

  def list_items(self, container: SourceContainer) -> SourceResult[list[SourceItem]]:
    """All items of a list, paged by ID in batches of LIST_ITEMS_BATCH_SIZE."""
    lst = container.handle
    batch_size = ANALYZER_HARDCODED_CONFIG.LIST_ITEMS_BATCH_SIZE
    is_library = container.node_type == "Library"
    tenant_root_url = get_tenant_root_url(container.url)
    def load():
      items = []
      last_id = 0
      while True:
        batch = lst.items.filter(f"ID gt {last_id}").select(["ID", "Title", "FileRef", "FileLeafRef", "FSObjType", "HasUniqueRoleAssignments"]).top(batch_size).get().execute_query()
        if len(batch) == 0: break
        for item in batch:
          props = item.properties
          if props.get("FSObjType", 0) == 1: node_type = "Folder"
          else: node_type = "File" if is_library else "Item"
          file_ref = props.get("FileRef", "")
          items.append(SourceItem(title=props.get("FileLeafRef") or props.get("Title") or str(props.get("ID", "")), url=tenant_root_url + file_ref if file_ref else container.url, node_type=node_type, has_unique_permissions=bool(props.get("HasUniqueRoleAssignments", False)), handle=item))
          last_id = props.get("ID", last_id)
        if len(batch) < batch_size: break
      return items
    return try_source_call(load)

# ----------------------------------------- END: SharePoint Permission Source -------------------------------------------------
