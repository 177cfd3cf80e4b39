# Common functions for Microsoft Graph using msgraph-sdk and azure-identity
# Tenant-wide site listing and directory profiles of external users

import asyncio, datetime
from typing import Any, Optional
from azure.identity import CertificateCredential
from kiota_abstractions.api_error import APIError
from kiota_abstractions.base_request_configuration import RequestConfiguration
from msgraph import GraphServiceClient
from msgraph.generated.sites.sites_request_builder import SitesRequestBuilder
from msgraph.generated.users.item.user_item_request_builder import UserItemRequestBuilder
from routers_v2.common_permission_source_v2 import DirectoryProfile, SourceResult, SourceSite

GRAPH_SITES_PAGE_SIZE = 999
GRAPH_USER_SELECT = ["userPrincipalName", "accountEnabled", "signInActivity", "createdDateTime", "userType"]
# Not found and forbidden lookups are skipped per user, everything else is raised
DIRECTORY_SKIPPED_STATUS_CODES = {401, 403, 404}

def create_graph_client(tenant_id: str, client_id: str, cert_path: str, cert_password: str) -> GraphServiceClient:
  """Graph client with certificate auth. Expects the PFX file, the credential reads it directly."""
  credential = CertificateCredential(tenant_id, client_id, certificate_path=cert_path, password=cert_password)
  return GraphServiceClient(credential)

def format_graph_datetime(value: Optional[datetime.datetime]) -> Optional[str]:
  if value is None: return None
  if value.tzinfo is None: value = value.replace(tzinfo=datetime.timezone.utc)
  return value.isoformat()


class GraphClientRunner:
  """Runs msgraph coroutines to completion on a private event loop owned by the calling worker thread."""

  def __init__(self, client: GraphServiceClient):
    self.client = client
    self._loop = asyncio.new_event_loop()

  def run(self, coroutine) -> Any:
    return self._loop.run_until_complete(coroutine)

  def close(self) -> None:
    if not self._loop.is_closed(): self._loop.close()


# ----------------------------------------- START: Tenant Sites ---------------------------------------------------------------

class GraphSiteLister:
  """
  Lists every site of the tenant with the Graph search endpoint (GET /sites?search=*).

  Usage:
    lister = GraphSiteLister(GraphClientRunner(create_graph_client(tenant_id, client_id, cert_path, cert_password)))
    sites = lister.list_sites()
    lister.close()
  """

  def __init__(self, runner: GraphClientRunner):
    self.runner = runner

  def close(self) -> None:
    self.runner.close()

  def list_sites(self) -> list[SourceSite]:
    query_params = SitesRequestBuilder.SitesRequestBuilderGetQueryParameters(search="*", select=["displayName", "name", "webUrl"], top=GRAPH_SITES_PAGE_SIZE)
    request_configuration = RequestConfiguration(query_parameters=query_params)
    response = self.runner.run(self.runner.client.sites.get(request_configuration=request_configuration))
    sites = []
    while response is not None:
      for site in response.value or []:
        if not site.web_url: continue
        sites.append(SourceSite(title=site.display_name or site.name or "N/A", url=site.web_url))
      next_link = response.odata_next_link
      if not next_link: break
      response = self.runner.run(self.runner.client.sites.with_url(next_link).get())
    return sites

# ----------------------------------------- END: Tenant Sites -----------------------------------------------------------------


# ----------------------------------------- START: Directory Source -----------------------------------------------------------

class GraphDirectorySource:
  """DirectorySource backed by GET /users/{upn} with sign-in activity (requires AuditLog.Read.All)."""

  def __init__(self, runner: GraphClientRunner):
    self.runner = runner

  def close(self) -> None:
    self.runner.close()

  def get_user_profile(self, user_principal_name: str) -> SourceResult[DirectoryProfile]:
    query_params = UserItemRequestBuilder.UserItemRequestBuilderGetQueryParameters(select=GRAPH_USER_SELECT)
    request_configuration = RequestConfiguration(query_parameters=query_params)
    try:
      user = self.runner.run(self.runner.client.users.by_user_id(user_principal_name).get(request_configuration=request_configuration))
    except APIError as e:
      if e.response_status_code in DIRECTORY_SKIPPED_STATUS_CODES: return SourceResult.denied(f"HTTP {e.response_status_code}: {e.message or e}")
      raise
    if user is None: return SourceResult.denied("User not found.")

    sign_in_activity = user.sign_in_activity
    last_sign_in = sign_in_activity.last_sign_in_date_time if sign_in_activity else None
    return SourceResult.success(DirectoryProfile(
      user_principal_name=user.user_principal_name or user_principal_name,
      account_enabled=user.account_enabled,
      last_sign_in=format_graph_datetime(last_sign_in),
      created=format_graph_datetime(user.created_date_time),
      user_type=user.user_type
    ))

# ----------------------------------------- END: Directory Source -------------------------------------------------------------
