# Tests for analyzer.py router
# Run: pytest src/routers_v2/analyzer_test.py

import threading, time
from types import SimpleNamespace

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from routers_v2 import analyzer
from conftest import GUEST_LOGIN, SITE_URL, FakeDirectorySource

PREFIX = "/v2/analyzer"
WAIT_SECONDS = 10

@pytest.fixture
def services(tmp_path, fake_source, throttle_guard, guest_profile):
  directory = FakeDirectorySource({guest_profile.user_principal_name: guest_profile})
  return analyzer.create_analyzer_services(str(tmp_path), lambda: fake_source, lambda: directory, throttle_guard=throttle_guard, tenant_url="https://contoso.sharepoint.com")

@pytest.fixture
def client(services):
  app = FastAPI()
  app.state.analyzer = services
  app.include_router(analyzer.router, prefix="/v2")
  analyzer.set_config(None, "/v2")
  return TestClient(app)

def poll_until_complete(client) -> dict:
  deadline = time.monotonic() + WAIT_SECONDS
  while time.monotonic() < deadline:
    progress = client.get(f"{PREFIX}/progress").json()
    if progress["complete"]: return progress
    time.sleep(0.01)
  raise AssertionError("Operation did not complete in time")


# ----------------------------------------- START: Start Endpoints ------------------------------------------------------------

def test_endpoint_listing(client):
  response = client.get(PREFIX)
  assert response.status_code == 200
  paths = [e["path"] for e in response.json()["data"]]
  assert f"{PREFIX}/permissions" in paths

def test_permission_analysis_runs_to_completion(client):
  response = client.post(f"{PREFIX}/permissions", json={"siteUrl": SITE_URL})
  assert response.status_code == 200
  body = response.json()
  assert body["ok"] is True
  assert body["data"]["started"] is True
  assert body["data"]["operation_type"] == "permissions"

  progress = poll_until_complete(client)
  assert progress["running"] is False
  assert "error" not in progress
  assert progress["result"]["users"] == 2
  assert any("Phase: RoleAssignments" in m for m in progress["messages"])

  metrics = client.get(f"{PREFIX}/metrics").json()["data"]
  assert metrics["total_users"] == 2
  assert metrics["inheritance_breaks"] == 2

def test_server_relative_site_url(client):
  response = client.post(f"{PREFIX}/permissions", json={"siteUrl": "/sites/hr"})
  assert response.json()["data"]["scope"] == SITE_URL
  poll_until_complete(client)

def test_site_enumeration_with_query_parameter(client):
  response = client.post(f"{PREFIX}/sites?scope=tenant")
  assert response.json()["data"]["scope"] == "tenant"
  assert poll_until_complete(client)["result"]["sites"] == 2
  assert len(client.get(f"{PREFIX}/data/sites").json()["data"]) == 2

def test_invalid_parameters_are_rejected(client):
  assert client.post(f"{PREFIX}/permissions", json={}).status_code == 400
  assert client.post(f"{PREFIX}/permissions", json={"siteUrl": "sites/hr"}).status_code == 400
  assert client.post(f"{PREFIX}/sites", json={"scope": ""}).status_code == 400
  response = client.post(f"{PREFIX}/matrix", json={"siteUrl": SITE_URL, "scanType": "deep"})
  assert response.status_code == 400
  assert response.json()["ok"] is False

def test_second_operation_rejected_while_running(client, services):
  release = threading.Event()
  services.runner.start("permissions", SITE_URL, lambda context: release.wait(WAIT_SECONDS))
  try:
    response = client.post(f"{PREFIX}/matrix", json={"siteUrl": SITE_URL})
    assert response.status_code == 409
    assert response.json()["data"]["started"] is False
    assert client.get(f"{PREFIX}/progress").json()["running"] is True
  finally:
    release.set()
  assert services.runner.wait_for_completion(WAIT_SECONDS)

def test_failed_operation_reports_error(client, fake_source):
  fake_source.denied.add(("open_site", SITE_URL))
  client.post(f"{PREFIX}/permissions", json={"siteUrl": SITE_URL})
  progress = poll_until_complete(client)
  assert "could not be opened" in progress["error"]
  assert client.get(f"{PREFIX}/audit").json()["data"]["status"] == "Failed"
  checkpoint = client.get(f"{PREFIX}/checkpoint", params={"operation_type": "permissions"}).json()["data"]
  assert checkpoint is None

def test_enrichment_after_permission_analysis(client):
  client.post(f"{PREFIX}/permissions", json={"siteUrl": SITE_URL})
  poll_until_complete(client)
  client.post(f"{PREFIX}/enrich")
  assert poll_until_complete(client)["result"]["enriched"] == 1
  summary = client.get(f"{PREFIX}/enrichment").json()["data"]
  assert summary["total_external"] == 1
  assert summary["disabled_accounts"] == 1
  guest = next(u for u in client.get(f"{PREFIX}/data/users").json()["data"] if u["login_name"] == GUEST_LOGIN)
  assert guest["graph_enriched"] is True

def test_enrichment_without_directory_is_rejected(client, services):
  services.directory_source_factory = None
  assert client.post(f"{PREFIX}/enrich").status_code == 400

def test_matrix_full_scan(client):
  ack = client.post(f"{PREFIX}/matrix", json={"siteUrl": SITE_URL, "scanType": "full"}).json()["data"]
  assert (ack["started"], ack["operation_type"]) == (True, "matrix")
  assert "total_items" not in ack
  assert poll_until_complete(client)["result"]["total_items"] == 11
  matrix = client.get(f"{PREFIX}/data/matrix").json()["data"]
  assert matrix[0]["scan_type"] == "full"

# ----------------------------------------- END: Start Endpoints --------------------------------------------------------------


# ----------------------------------------- START: Read Endpoints -------------------------------------------------------------

def test_risk_of_empty_store(client):
  data = client.get(f"{PREFIX}/risk").json()["data"]
  assert (data["overall_score"], data["risk_level"], data["findings"]) == (0, "None", [])

def test_risk_after_permission_analysis(client):
  client.post(f"{PREFIX}/permissions", json={"siteUrl": SITE_URL})
  poll_until_complete(client)
  data = client.get(f"{PREFIX}/risk").json()["data"]
  assert data["findings"][0]["rule_id"] == "SHR-001"
  assert data["critical_count"] == 2

def test_unknown_data_type_is_not_found(client):
  response = client.get(f"{PREFIX}/data/passwords")
  assert response.status_code == 404
  assert response.json()["ok"] is False

def test_data_type_is_case_insensitive(client):
  assert client.get(f"{PREFIX}/data/RoleAssignments").status_code == 200

def test_audit_before_any_operation(client):
  assert client.get(f"{PREFIX}/audit").json()["data"] is None

def test_checkpoint_endpoint(client, services):
  assert client.get(f"{PREFIX}/checkpoint", params={"operation_type": "bogus"}).status_code == 400
  assert client.get(f"{PREFIX}/checkpoint", params={"operation_type": "matrix"}).json()["data"] is None
  services.checkpoints.start("matrix", SITE_URL)
  services.checkpoints.update(phase="Scanning")
  data = client.get(f"{PREFIX}/checkpoint", params={"operation_type": "matrix"}).json()["data"]
  assert (data["Phase"], data["Status"]) == ("Scanning", "InProgress")

# ----------------------------------------- END: Read Endpoints ---------------------------------------------------------------


# ----------------------------------------- START: Source Factories -----------------------------------------------------------

def create_credentials_config():
  return SimpleNamespace(ANALYZER_TENANT_ID="tenant-id", ANALYZER_CLIENT_ID="client-id", ANALYZER_CLIENT_CERTIFICATE_PFX_FILE="analyzer.pfx", ANALYZER_CLIENT_CERTIFICATE_PASSWORD="")

def test_sharepoint_factory_creates_graph_client_only_for_tenant_scope(monkeypatch, tmp_path):
  graph_clients = []
  monkeypatch.setattr(analyzer, "create_graph_client", lambda *args: graph_clients.append(args) or SimpleNamespace())
  source = analyzer.create_sharepoint_source_factory(create_credentials_config(), str(tmp_path))()
  assert graph_clients == []
  monkeypatch.setattr(analyzer.GraphSiteLister, "list_sites", lambda self: [])
  assert source.list_sites("tenant").ok is True
  assert len(graph_clients) == 1
  lister = source._tenant_site_lister
  source.close()
  assert lister.runner._loop.is_closed()

def test_factories_require_credentials(tmp_path):
  config = SimpleNamespace(ANALYZER_TENANT_ID="", ANALYZER_CLIENT_ID="", ANALYZER_CLIENT_CERTIFICATE_PFX_FILE="", ANALYZER_CLIENT_CERTIFICATE_PASSWORD="")
  with pytest.raises(RuntimeError):
    analyzer.create_sharepoint_source_factory(config, str(tmp_path))()
  with pytest.raises(RuntimeError):
    analyzer.create_graph_directory_factory(config, str(tmp_path))()

# ----------------------------------------- END: Source Factories -------------------------------------------------------------
