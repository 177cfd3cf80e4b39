# Analyzer Router V2 - Starts background permission operations and serves their results
# Endpoints: /v2/analyzer (sites, permissions, enrich, matrix, progress, risk, metrics, data, enrichment, audit, checkpoint)
# Start endpoints return immediately; clients poll /progress until complete == true

import json, os
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from hardcoded_config import ANALYZER_HARDCODED_CONFIG
from routers_v2.common_analysis_functions_v2 import run_external_enrichment, run_permission_analysis, run_permission_matrix, run_site_enumeration
from routers_v2.common_analyzer_models_v2 import DATA_TYPES, AnalyzerDataStore
from routers_v2.common_checkpoint_functions_v2 import CheckpointStore
from routers_v2.common_graph_functions_v2 import GraphClientRunner, GraphDirectorySource, GraphSiteLister, create_graph_client
from routers_v2.common_logging_functions_v2 import MiddlewareLogger
from routers_v2.common_operation_functions_v2 import OPERATION_TYPES, OperationRunner, SharedOperationState
from routers_v2.common_permission_source_v2 import DirectorySource, PermissionSource
from routers_v2.common_permission_tree_functions_v2 import ScanPolicy
from routers_v2.common_risk_functions_v2 import assess
from routers_v2.common_sharepoint_functions_v2 import SharePointPermissionSource
from routers_v2.common_throttle_functions_v2 import ThrottleGuard
from routers_v2.common_ui_functions_v2 import json_result

router = APIRouter()
config = None
router_prefix = None
router_name = "analyzer"


def set_config(app_config, prefix):
  global config, router_prefix
  config = app_config
  router_prefix = prefix


# ----------------------------------------- START: Services -------------------------------------------------------------------

@dataclass
class AnalyzerServices:
  """The single set of analyzer objects of this process. Stored on app.state.analyzer."""
  data_store: AnalyzerDataStore
  operation_state: SharedOperationState
  throttle_guard: ThrottleGuard
  checkpoints: CheckpointStore
  runner: OperationRunner
  permission_source_factory: Callable[[], PermissionSource]
  directory_source_factory: Optional[Callable[[], DirectorySource]]
  tenant_url: str = ""

def create_analyzer_services(persistent_storage_path: str, permission_source_factory: Callable[[], PermissionSource], directory_source_factory: Optional[Callable[[], DirectorySource]] = None, throttle_guard: Optional[ThrottleGuard] = None, tenant_url: str = "") -> AnalyzerServices:
  data_store = AnalyzerDataStore()
  operation_state = SharedOperationState()
  throttle_guard = throttle_guard or ThrottleGuard()
  checkpoints = CheckpointStore(persistent_storage_path)
  runner = OperationRunner(operation_state, throttle_guard, checkpoints, data_store)
  return AnalyzerServices(data_store=data_store, operation_state=operation_state, throttle_guard=throttle_guard, checkpoints=checkpoints, runner=runner, permission_source_factory=permission_source_factory, directory_source_factory=directory_source_factory, tenant_url=tenant_url)

def _get_missing_credentials(app_config) -> list[str]:
  required = ["ANALYZER_TENANT_ID", "ANALYZER_CLIENT_ID", "ANALYZER_CLIENT_CERTIFICATE_PFX_FILE"]
  return [name for name in required if not getattr(app_config, name, None)]

def create_sharepoint_source_factory(app_config, persistent_storage_path: str) -> Callable[[], PermissionSource]:
  """Each call opens a fresh authenticated session; called on the worker thread. The caller closes the source."""
  def factory() -> PermissionSource:
    missing = _get_missing_credentials(app_config)
    if missing: raise RuntimeError(f"SharePoint credentials not configured: {', '.join(missing)}")
    cert_path = os.path.join(persistent_storage_path, app_config.ANALYZER_CLIENT_CERTIFICATE_PFX_FILE)
    cert_password = app_config.ANALYZER_CLIENT_CERTIFICATE_PASSWORD or ""
    # Graph is only needed for tenant-wide enumeration
    def create_tenant_site_lister() -> GraphSiteLister:
      return GraphSiteLister(GraphClientRunner(create_graph_client(app_config.ANALYZER_TENANT_ID, app_config.ANALYZER_CLIENT_ID, cert_path, cert_password)))
    return SharePointPermissionSource(app_config.ANALYZER_CLIENT_ID, app_config.ANALYZER_TENANT_ID, cert_path, cert_password, create_tenant_site_lister=create_tenant_site_lister)
  return factory

def create_graph_directory_factory(app_config, persistent_storage_path: str) -> Callable[[], DirectorySource]:
  def factory() -> DirectorySource:
    missing = _get_missing_credentials(app_config)
    if missing: raise RuntimeError(f"Graph credentials not configured: {', '.join(missing)}")
    cert_path = os.path.join(persistent_storage_path, app_config.ANALYZER_CLIENT_CERTIFICATE_PFX_FILE)
    return GraphDirectorySource(GraphClientRunner(create_graph_client(app_config.ANALYZER_TENANT_ID, app_config.ANALYZER_CLIENT_ID, cert_path, app_config.ANALYZER_CLIENT_CERTIFICATE_PASSWORD or "")))
  return factory

def get_services(request: Request) -> AnalyzerServices:
  return request.app.state.analyzer

# ----------------------------------------- END: Services ---------------------------------------------------------------------


# ----------------------------------------- START: Request Helpers ------------------------------------------------------------

async def read_body(request: Request) -> dict:
  """JSON body merged over query parameters. Invalid or missing JSON yields the query parameters only."""
  body_data = dict(request.query_params)
  try:
    payload = await request.json()
  except (json.JSONDecodeError, UnicodeDecodeError, ValueError):
    return body_data
  if isinstance(payload, dict): body_data.update(payload)
  return body_data

def resolve_site_url(value: str, tenant_url: str) -> Optional[str]:
  """Absolute https URL, or a server-relative path ('/sites/hr') resolved against the tenant URL."""
  value = (value or "").strip().rstrip("/")
  if value.lower().startswith("https://"): return value
  if value.startswith("/") and tenant_url: return tenant_url.rstrip("/") + value
  return None

def start_result(ack: dict) -> JSONResponse:
  if ack.get("started"): return json_result(True, "", ack)
  return json_result(False, ack.get("message", "Another operation is already running."), ack, status_code=409)

# ----------------------------------------- END: Request Helpers --------------------------------------------------------------


# ----------------------------------------- START: Endpoints ------------------------------------------------------------------

@router.get(f"/{router_name}")
async def analyzer_root():
  prefix = f"{router_prefix}/{router_name}"
  endpoints = [
    {"method": "POST", "path": f"{prefix}/sites", "description": "Start site enumeration. Body: {\"scope\": \"tenant\" | site URL}"},
    {"method": "POST", "path": f"{prefix}/permissions", "description": "Start permission analysis of one site. Body: {\"siteUrl\": ...}"},
    {"method": "POST", "path": f"{prefix}/enrich", "description": "Start directory enrichment of external users"},
    {"method": "POST", "path": f"{prefix}/matrix", "description": "Start permission matrix build. Body: {\"siteUrl\": ..., \"scanType\": \"quick\" | \"full\"}"},
    {"method": "GET", "path": f"{prefix}/progress", "description": "Progress transcript of the current operation"},
    {"method": "GET", "path": f"{prefix}/risk", "description": "Risk assessment of the collected data"},
    {"method": "GET", "path": f"{prefix}/metrics", "description": "Totals of the collected data"},
    {"method": "GET", "path": f"{prefix}/data/{{type}}", "description": f"Collected records. Types: {', '.join(DATA_TYPES)}"},
    {"method": "GET", "path": f"{prefix}/enrichment", "description": "External user enrichment summary"},
    {"method": "GET", "path": f"{prefix}/audit", "description": "Summary of the last operation"},
    {"method": "GET", "path": f"{prefix}/checkpoint?operation_type=...", "description": f"Resumable checkpoint. Types: {', '.join(OPERATION_TYPES)}"}
  ]
  return json_result(True, "", endpoints)

@router.post(f"/{router_name}/sites")
async def analyzer_start_enumeration(request: Request):
  logger = MiddlewareLogger.create()
  logger.log_function_header("analyzer_start_enumeration")
  services = get_services(request)
  body_data = await read_body(request)

  scope = str(body_data.get("scope", "")).strip()
  if scope.lower() != ANALYZER_HARDCODED_CONFIG.TENANT_SCOPE_MARKER:
    scope = resolve_site_url(scope, services.tenant_url)
    if not scope:
      logger.log_function_footer()
      return json_result(False, f"Param 'scope' must be '{ANALYZER_HARDCODED_CONFIG.TENANT_SCOPE_MARKER}' or a site URL.", {})
  else:
    scope = ANALYZER_HARDCODED_CONFIG.TENANT_SCOPE_MARKER

  source_factory = services.permission_source_factory
  ack = services.runner.start("enumeration", scope, lambda context: run_site_enumeration(context, source_factory, scope))
  logger.log_function_output(f"started={ack['started']} scope='{scope}'")
  logger.log_function_footer()
  return start_result(ack)

@router.post(f"/{router_name}/permissions")
async def analyzer_start_permission_analysis(request: Request):
  logger = MiddlewareLogger.create()
  logger.log_function_header("analyzer_start_permission_analysis")
  services = get_services(request)
  body_data = await read_body(request)

  site_url = resolve_site_url(str(body_data.get("siteUrl", "")), services.tenant_url)
  if not site_url:
    logger.log_function_footer()
    return json_result(False, "Param 'siteUrl' must be a site URL.", {})

  source_factory = services.permission_source_factory
  ack = services.runner.start("permissions", site_url, lambda context: run_permission_analysis(context, source_factory, site_url))
  logger.log_function_output(f"started={ack['started']} site_url='{site_url}'")
  logger.log_function_footer()
  return start_result(ack)

@router.post(f"/{router_name}/enrich")
async def analyzer_start_enrichment(request: Request):
  logger = MiddlewareLogger.create()
  logger.log_function_header("analyzer_start_enrichment")
  services = get_services(request)

  directory_factory = services.directory_source_factory
  if directory_factory is None:
    logger.log_function_footer()
    return json_result(False, "Directory lookups are not configured.", {})

  ack = services.runner.start("enrichment", "external-users", lambda context: run_external_enrichment(context, directory_factory))
  logger.log_function_output(f"started={ack['started']}")
  logger.log_function_footer()
  return start_result(ack)

@router.post(f"/{router_name}/matrix")
async def analyzer_start_matrix(request: Request):
  logger = MiddlewareLogger.create()
  logger.log_function_header("analyzer_start_matrix")
  services = get_services(request)
  body_data = await read_body(request)

  site_url = resolve_site_url(str(body_data.get("siteUrl", "")), services.tenant_url)
  if not site_url:
    logger.log_function_footer()
    return json_result(False, "Param 'siteUrl' must be a site URL.", {})
  scan_type = str(body_data.get("scanType", ScanPolicy.QUICK.value)).strip().lower()
  if scan_type not in [p.value for p in ScanPolicy]:
    logger.log_function_footer()
    return json_result(False, f"Param 'scanType' must be one of: {', '.join(p.value for p in ScanPolicy)}.", {})

  source_factory = services.permission_source_factory
  ack = services.runner.start("matrix", site_url, lambda context: run_permission_matrix(context, source_factory, site_url, scan_type))
  logger.log_function_output(f"started={ack['started']} site_url='{site_url}' scan_type='{scan_type}'")
  logger.log_function_footer()
  return start_result(ack)

@router.get(f"/{router_name}/progress")
async def analyzer_progress(request: Request):
  return JSONResponse(get_services(request).operation_state.snapshot())

@router.get(f"/{router_name}/risk")
async def analyzer_risk(request: Request):
  logger = MiddlewareLogger.create()
  logger.log_function_header("analyzer_risk")
  assessment = assess(get_services(request).data_store)
  logger.log_function_output(f"overall_score={assessment.overall_score} risk_level='{assessment.risk_level}' findings={assessment.total_findings}")
  logger.log_function_footer()
  return json_result(True, "", assessment.to_dict())

@router.get(f"/{router_name}/metrics")
async def analyzer_metrics(request: Request):
  return json_result(True, "", get_services(request).data_store.get_metrics())

@router.get(f"/{router_name}/data/{{data_type}}")
async def analyzer_data(request: Request, data_type: str):
  data_type = data_type.lower()
  try:
    records = get_services(request).data_store.get_data(data_type)
  except KeyError:
    return json_result(False, f"Unknown data type '{data_type}'. Valid types: {', '.join(DATA_TYPES)}.", {}, status_code=404)
  return json_result(True, "", records)

@router.get(f"/{router_name}/enrichment")
async def analyzer_enrichment(request: Request):
  return json_result(True, "", get_services(request).data_store.get_enrichment_summary())

@router.get(f"/{router_name}/audit")
async def analyzer_audit(request: Request):
  return json_result(True, "", get_services(request).runner.get_audit())

@router.get(f"/{router_name}/checkpoint")
async def analyzer_checkpoint(request: Request):
  operation_type = request.query_params.get("operation_type", "").strip().lower()
  if operation_type not in OPERATION_TYPES:
    return json_result(False, f"Param 'operation_type' must be one of: {', '.join(OPERATION_TYPES)}.", {})
  checkpoint = get_services(request).checkpoints.load(operation_type)
  return json_result(True, "", checkpoint.to_json_dict() if checkpoint else None)

# ----------------------------------------- END: Endpoints --------------------------------------------------------------------
