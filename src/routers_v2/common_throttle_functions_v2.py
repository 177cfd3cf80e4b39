# Throttle Guard V2 - Retries remote calls on throttling and timeouts with exponential backoff and jitter
# Fatal errors and exhausted retries re-raise the original exception unchanged

import random, time
from enum import Enum
from typing import Any, Callable, Optional, TypeVar

import requests

from hardcoded_config import ANALYZER_HARDCODED_CONFIG
from routers_v2.common_logging_functions_v2 import MiddlewareLogger
from routers_v2.common_permission_source_v2 import RemoteThrottleError, RemoteTimeoutError

T = TypeVar("T")

THROTTLE_STATUS_CODES = {429, 503}
TIMEOUT_STATUS_CODES = {408, 504}
THROTTLE_MESSAGE_MARKERS = ["too many requests", "server busy", "server is busy", "throttl", "rate limit"]
TIMEOUT_MESSAGE_MARKERS = ["timed out", "timeout"]

class ErrorClass(Enum):
  THROTTLE = "throttle"
  TIMEOUT = "timeout"
  FATAL = "fatal"


# ----------------------------------------- START: Error Classification -------------------------------------------------------

def get_status_code(error: Exception) -> Optional[int]:
  """HTTP status from Office365 ClientRequestException (error.response), kiota APIError or plain attributes."""
  response = getattr(error, "response", None)
  status_code = getattr(response, "status_code", None) if response is not None else None
  if status_code is None: status_code = getattr(error, "response_status_code", None)
  if status_code is None: status_code = getattr(error, "status_code", None)
  try: return int(status_code) if status_code is not None else None
  except (TypeError, ValueError): return None

def _get_headers(error: Exception) -> dict:
  response = getattr(error, "response", None)
  headers = getattr(response, "headers", None) if response is not None else None
  if headers is None: headers = getattr(error, "response_headers", None)
  if not headers: return {}
  try: return {str(k).lower(): v for k, v in dict(headers).items()}
  except (TypeError, ValueError): return {}

def get_retry_after_ms(error: Exception) -> Optional[int]:
  """Explicit retry-after hint in milliseconds, or None."""
  if isinstance(error, RemoteThrottleError) and error.retry_after_seconds is not None:
    return int(error.retry_after_seconds * 1000)
  value = _get_headers(error).get("retry-after")
  if isinstance(value, (list, tuple)): value = value[0] if value else None
  if value is None: return None
  try: return int(float(value) * 1000)
  except (TypeError, ValueError): return None

def classify_error(error: Exception) -> ErrorClass:
  if isinstance(error, RemoteThrottleError): return ErrorClass.THROTTLE
  if isinstance(error, (RemoteTimeoutError, TimeoutError, requests.exceptions.Timeout)): return ErrorClass.TIMEOUT
  status_code = get_status_code(error)
  if status_code in THROTTLE_STATUS_CODES: return ErrorClass.THROTTLE
  if status_code in TIMEOUT_STATUS_CODES: return ErrorClass.TIMEOUT
  if get_retry_after_ms(error) is not None: return ErrorClass.THROTTLE
  message = str(error).lower()
  if any(marker in message for marker in THROTTLE_MESSAGE_MARKERS): return ErrorClass.THROTTLE
  if any(marker in message for marker in TIMEOUT_MESSAGE_MARKERS): return ErrorClass.TIMEOUT
  return ErrorClass.FATAL

# ----------------------------------------- END: Error Classification ---------------------------------------------------------


# ----------------------------------------- START: Throttle Guard -------------------------------------------------------------

class ThrottleGuard:
  """
  Executes remote calls and retries throttle-class and timeout-class failures.

  Usage:
    guard = ThrottleGuard()
    lists = guard.execute(lambda: source.list_child_containers(site), "list_child_containers", logger=logger)
    guard.get_stats()  # {"total_retries": 2, "throttle_events": 2, "timeout_events": 0}
  """

  def __init__(
    self,
    max_retries: int = ANALYZER_HARDCODED_CONFIG.THROTTLE_DEFAULT_MAX_RETRIES,
    initial_backoff_ms: int = ANALYZER_HARDCODED_CONFIG.THROTTLE_DEFAULT_INITIAL_BACKOFF_MS,
    max_backoff_ms: int = ANALYZER_HARDCODED_CONFIG.THROTTLE_MAX_BACKOFF_MS,
    max_jitter_fraction: float = ANALYZER_HARDCODED_CONFIG.THROTTLE_MAX_JITTER_FRACTION,
    sleep: Callable[[float], None] = time.sleep,
    random_uniform: Callable[[float, float], float] = random.uniform
  ):
    self.max_retries = max_retries
    self.initial_backoff_ms = initial_backoff_ms
    self.max_backoff_ms = max_backoff_ms
    self.max_jitter_fraction = max_jitter_fraction
    self._sleep = sleep
    self._random_uniform = random_uniform
    self.total_retries = 0
    self.throttle_events = 0
    self.timeout_events = 0

  def reset_stats(self) -> None:
    self.total_retries = 0
    self.throttle_events = 0
    self.timeout_events = 0

  def get_stats(self) -> dict:
    return {"total_retries": self.total_retries, "throttle_events": self.throttle_events, "timeout_events": self.timeout_events}

  def next_backoff_ms(self, current_backoff_ms: int) -> int:
    """Double the backoff, add up to max_jitter_fraction of the doubled value, cap at max_backoff_ms."""
    doubled = current_backoff_ms * 2
    jitter = self._random_uniform(0, doubled * self.max_jitter_fraction)
    return min(int(doubled + jitter), self.max_backoff_ms)

  def execute(self, call: Callable[[], T], operation_name: str, max_retries: Optional[int] = None, initial_backoff_ms: Optional[int] = None, logger: Optional[MiddlewareLogger] = None) -> T:
    retries_allowed = self.max_retries if max_retries is None else max_retries
    backoff_ms = self.initial_backoff_ms if initial_backoff_ms is None else initial_backoff_ms
    retries_done = 0

    while True:
      try:
        return call()
      except Exception as e:
        error_class = classify_error(e)
        if error_class == ErrorClass.FATAL: raise

        if error_class == ErrorClass.THROTTLE: self.throttle_events += 1
        else: self.timeout_events += 1

        if retries_done >= retries_allowed:
          if logger: logger.log_function_output(f"ERROR: {operation_name} failed after {retries_done} retr{'ies' if retries_done != 1 else 'y'} -> {e}")
          raise

        wait_ms = backoff_ms
        retry_after_ms = get_retry_after_ms(e)
        if retry_after_ms is not None and retry_after_ms > wait_ms: wait_ms = retry_after_ms

        retries_done += 1
        self.total_retries += 1
        if logger: logger.log_function_output(f"{'Throttled' if error_class == ErrorClass.THROTTLE else 'Timed out'} on {operation_name}, retrying in {wait_ms} ms (retry {retries_done} of {retries_allowed})...")
        self._sleep(wait_ms / 1000.0)
        backoff_ms = self.next_backoff_ms(backoff_ms)

# ----------------------------------------- END: Throttle Guard ---------------------------------------------------------------
