import logging, os, platform, tempfile
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from common_utility_functions import format_config_for_displaying, get_storage_summary
from hardcoded_config import ANALYZER_HARDCODED_CONFIG
from routers_v2 import analyzer
from routers_v2.common_logging_functions_v2 import MiddlewareLogger
from routers_v2.common_throttle_functions_v2 import ThrottleGuard

# Load environment variables from a local .env file if present
load_dotenv()

# Global initialization errors array
initialization_errors = []

@dataclass
class Config:
  ANALYZER_TENANT_URL: Optional[str]
  ANALYZER_TENANT_ID: Optional[str]
  ANALYZER_CLIENT_ID: Optional[str]
  ANALYZER_CLIENT_CERTIFICATE_PFX_FILE: Optional[str]
  ANALYZER_CLIENT_CERTIFICATE_PASSWORD: Optional[str]
  LOCAL_PERSISTENT_STORAGE_PATH: Optional[str]
  ANALYZER_THROTTLE_MAX_RETRIES: int
  ANALYZER_THROTTLE_INITIAL_BACKOFF_MS: int


def _get_int_env(name: str, default: int) -> int:
  value = os.getenv(name)
  if value is None or value.strip() == "": return default
  try: return int(value)
  except ValueError:
    initialization_errors.append({"component": "Configuration", "error": f"{name}='{value}' is not an integer, using {default}"})
    return default

def load_config() -> Config:
  """Load configuration from environment variables."""
  return Config(
    ANALYZER_TENANT_URL=os.getenv('ANALYZER_TENANT_URL')
    ,ANALYZER_TENANT_ID=os.getenv('ANALYZER_TENANT_ID')
    ,ANALYZER_CLIENT_ID=os.getenv('ANALYZER_CLIENT_ID')
    ,ANALYZER_CLIENT_CERTIFICATE_PFX_FILE=os.getenv('ANALYZER_CLIENT_CERTIFICATE_PFX_FILE')
    ,ANALYZER_CLIENT_CERTIFICATE_PASSWORD=os.getenv('ANALYZER_CLIENT_CERTIFICATE_PASSWORD')
    ,LOCAL_PERSISTENT_STORAGE_PATH=os.getenv('LOCAL_PERSISTENT_STORAGE_PATH')
    ,ANALYZER_THROTTLE_MAX_RETRIES=_get_int_env('ANALYZER_THROTTLE_MAX_RETRIES', ANALYZER_HARDCODED_CONFIG.THROTTLE_DEFAULT_MAX_RETRIES)
    ,ANALYZER_THROTTLE_INITIAL_BACKOFF_MS=_get_int_env('ANALYZER_THROTTLE_INITIAL_BACKOFF_MS', ANALYZER_HARDCODED_CONFIG.THROTTLE_DEFAULT_INITIAL_BACKOFF_MS)
  )

def configure_logging():
  """Configure logging to suppress verbose Azure SDK and HTTP logs."""
  logging.getLogger('azure').setLevel(logging.WARNING)
  logging.getLogger('azure.core.pipeline.policies.http_logging_policy').setLevel(logging.WARNING)
  logging.getLogger('azure.identity').setLevel(logging.WARNING)
  logging.getLogger('msal').setLevel(logging.WARNING)
  logging.getLogger('urllib3').setLevel(logging.WARNING)
  logging.getLogger('requests').setLevel(logging.WARNING)
  logging.getLogger('httpx').setLevel(logging.WARNING)
  logging.getLogger('httpcore').setLevel(logging.WARNING)
  logging.getLogger('office365').setLevel(logging.WARNING)


def is_running_on_azure_app_service() -> bool:
  """Detect if the application is running on Azure App Service."""
  return os.path.exists("/home/site/wwwroot") or os.path.exists("/opt/startup") or os.path.exists("/home/site")

def get_persistent_storage_path(config: Config) -> str:
  """Azure App Service: /home/data. Local: LOCAL_PERSISTENT_STORAGE_PATH, falling back to a temp folder."""
  if is_running_on_azure_app_service():
    return os.path.join(os.getenv("HOME", r"d:\home"), "data") if platform.system() == "Windows" else "/home/data"
  if config.LOCAL_PERSISTENT_STORAGE_PATH: return config.LOCAL_PERSISTENT_STORAGE_PATH
  fallback_path = os.path.join(tempfile.gettempdir(), "spo-permissions-analyzer")
  initialization_errors.append({"component": "Persistent Storage", "error": f"LOCAL_PERSISTENT_STORAGE_PATH not configured, using '{fallback_path}'"})
  return fallback_path


def create_app() -> FastAPI:
  """Create and configure the FastAPI application."""
  logger = MiddlewareLogger.create()
  logger.log_function_header("create_app")

  # Configure logging first to ensure all initialization logs are properly formatted
  configure_logging()
  logger.log_function_output("Logging configured")

  config = load_config()
  logger.log_function_output("Configuration loaded")

  app = FastAPI(title="SPO-Permissions-Analyzer")
  app.state.config = config

  persistent_storage_path = get_persistent_storage_path(config)
  try: os.makedirs(persistent_storage_path, exist_ok=True)
  except OSError as e: initialization_errors.append({"component": "Persistent Storage", "error": f"Cannot create '{persistent_storage_path}': {e}"})
  app.state.persistent_storage_path = persistent_storage_path
  logger.log_function_output(f"PERSISTENT_STORAGE_PATH='{persistent_storage_path}'")

  app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_credentials=True, allow_methods=["*"], allow_headers=["*"])
  logger.log_function_output("CORS middleware added")

  # One set of analyzer services per process, injected into the router through app.state
  try:
    throttle_guard = ThrottleGuard(max_retries=config.ANALYZER_THROTTLE_MAX_RETRIES, initial_backoff_ms=config.ANALYZER_THROTTLE_INITIAL_BACKOFF_MS)
    app.state.analyzer = analyzer.create_analyzer_services(
      persistent_storage_path,
      analyzer.create_sharepoint_source_factory(config, persistent_storage_path),
      analyzer.create_graph_directory_factory(config, persistent_storage_path),
      throttle_guard=throttle_guard,
      tenant_url=config.ANALYZER_TENANT_URL or ""
    )
    logger.log_function_output("Analyzer services created")
  except Exception as e:
    initialization_errors.append({"component": "Analyzer Services", "error": str(e)})

  v2_router_prefix = "/v2"
  try:
    app.include_router(analyzer.router, tags=["Analyzer"], prefix=v2_router_prefix)
    analyzer.set_config(config, v2_router_prefix)
    logger.log_function_output(f"Analyzer router included at {v2_router_prefix}")
  except Exception as e:
    initialization_errors.append({"component": "Analyzer Router", "error": str(e)})

  if initialization_errors:
    logger.log_function_output(f"App initialization completed with {len(initialization_errors)} initialization error(s):")
    for error in initialization_errors:
      logger.log_function_output(f"  - {error['component']}: {error['error']}")
  else:
    logger.log_function_output("App initialization completed successfully with no errors")

  logger.log_function_footer()
  return app

# Initialize the FastAPI application
app = create_app()

@app.get("/alive", response_class=PlainTextResponse)
async def health():
  """Health check endpoint for monitoring."""
  return PlainTextResponse(content="alive", status_code=200)

@app.get("/favicon.ico")
async def favicon(): return Response(status_code=204)

@app.get("/")
async def root():
  return JSONResponse({
    "app": app.title,
    "endpoints": f"/v2/{analyzer.router_name}",
    "initialization_errors": initialization_errors,
    "config": format_config_for_displaying(app.state.config),
    "persistent_storage": get_storage_summary(app.state.persistent_storage_path)
  })
