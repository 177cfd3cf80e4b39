# Tests for common_sharepoint_functions_v2.py helpers (no SharePoint connection needed)
# Run: pytest src/routers_v2/common_sharepoint_functions_v2_test.py

import pytest
import requests
from office365.runtime.client_request_exception import ClientRequestException

from routers_v2 import common_sharepoint_functions_v2 as spf
from routers_v2.common_permission_source_v2 import SourceSite

def create_client_request_exception(status_code: int, message: str) -> ClientRequestException:
  response = requests.Response()
  response.status_code = status_code
  response.headers["Content-Type"] = "text/plain"
  response._content = message.encode("utf-8")
  return ClientRequestException(f"{status_code} Client Error: {message}", response=response)


# ----------------------------------------- START: Sharing Links --------------------------------------------------------------

@pytest.mark.parametrize("group_title, expected", [
  ("SharingLinks.1a2b3c4d-0000-1111-2222-333344445555.AnonymousEdit.9f8e7d6c-0000-1111-2222-333344445555", ("Anonymous", "Edit")),
  ("SharingLinks.1a2b3c4d-0000-1111-2222-333344445555.AnonymousView.9f8e7d6c-0000-1111-2222-333344445555", ("Anonymous", "View")),
  ("SharingLinks.1a2b3c4d-0000-1111-2222-333344445555.OrganizationView.9f8e7d6c-0000-1111-2222-333344445555", ("Company-wide", "View")),
  ("SharingLinks.1a2b3c4d-0000-1111-2222-333344445555.Flexible.9f8e7d6c-0000-1111-2222-333344445555", ("Specific People", "Other")),
  ("SharingLinks.1a2b3c4d-0000-1111-2222-333344445555.SomethingNew.9f8e7d6c-0000-1111-2222-333344445555", ("Specific People", "Other")),
  ("HR Owners", None),
  ("", None)
])
def test_parse_sharing_link_group(group_title, expected):
  assert spf.parse_sharing_link_group(group_title) == expected

# ----------------------------------------- END: Sharing Links ----------------------------------------------------------------


# ----------------------------------------- START: Errors ---------------------------------------------------------------------

def test_forbidden_is_access_denied():
  assert spf.is_access_denied_error(create_client_request_exception(403, "Forbidden"))
  assert spf.is_access_denied_error(create_client_request_exception(401, "Unauthorized"))

def test_other_errors_are_not_access_denied():
  assert not spf.is_access_denied_error(create_client_request_exception(404, "Not Found"))
  assert not spf.is_access_denied_error(PermissionError("Access denied"))

def test_try_source_call_turns_access_denied_into_result():
  def denied(): raise create_client_request_exception(403, "Access denied")
  result = spf.try_source_call(denied)
  assert result.ok is False
  assert "403" in result.reason

def test_try_source_call_raises_other_errors():
  error = create_client_request_exception(429, "Too Many Requests")
  def throttled(): raise error
  with pytest.raises(ClientRequestException) as exc_info:
    spf.try_source_call(throttled)
  assert exc_info.value is error

def test_try_source_call_wraps_value():
  result = spf.try_source_call(lambda: ["a", "b"])
  assert (result.ok, result.value) == (True, ["a", "b"])

# ----------------------------------------- END: Errors -----------------------------------------------------------------------


# ----------------------------------------- START: Helpers --------------------------------------------------------------------

def test_tenant_root_url():
  assert spf.get_tenant_root_url("https://contoso.sharepoint.com/sites/hr/projects") == "https://contoso.sharepoint.com"

def test_list_node_type():
  assert spf.get_list_node_type(100) == "List"
  assert spf.get_list_node_type(101) == "Library"

def test_storage_mb():
  assert spf.get_storage_mb({"Storage": 5 * 1024 * 1024 + 10}) == 5
  assert spf.get_storage_mb({}) is None
  assert spf.get_storage_mb(None) is None

# ----------------------------------------- END: Helpers ----------------------------------------------------------------------


# ----------------------------------------- START: Tenant Site Lister ---------------------------------------------------------

class FakeTenantSiteLister:
  def __init__(self):
    self.list_calls = 0
    self.closed = False

  def list_sites(self):
    self.list_calls += 1
    return [SourceSite(title="HR", url="https://contoso.sharepoint.com/sites/hr")]

  def close(self):
    self.closed = True

@pytest.fixture
def created_listers() -> list:
  return []

def create_source(created_listers: list) -> spf.SharePointPermissionSource:
  def create_tenant_site_lister():
    lister = FakeTenantSiteLister()
    created_listers.append(lister)
    return lister
  def connect(site_url, *args):
    raise create_client_request_exception(403, "Access denied")
  return spf.SharePointPermissionSource("client", "tenant-id", "cert.pfx", "", create_tenant_site_lister=create_tenant_site_lister, connect=connect)

def test_site_scope_does_not_create_tenant_site_lister(created_listers):
  source = create_source(created_listers)
  result = source.list_sites("https://contoso.sharepoint.com/sites/hr")
  assert result.ok is False
  source.close()
  assert created_listers == []

def test_tenant_site_lister_created_once_and_closed(created_listers):
  source = create_source(created_listers)
  assert [s.title for s in source.list_sites("tenant").value] == ["HR"]
  assert source.list_sites("TENANT").ok is True
  assert len(created_listers) == 1
  assert created_listers[0].list_calls == 2
  source.close()
  assert created_listers[0].closed is True

def test_tenant_scope_without_graph_is_denied():
  source = spf.SharePointPermissionSource("client", "tenant-id", "cert.pfx", "")
  result = source.list_sites("tenant")
  assert result.ok is False
  assert "Graph" in result.reason
  source.close()

# ----------------------------------------- END: Tenant Site Lister -----------------------------------------------------------
