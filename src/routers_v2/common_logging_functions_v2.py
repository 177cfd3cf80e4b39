# Logging V2 - Unified logger for endpoints and background operations
# Implements MiddlewareLogger class; lines are optionally mirrored into a SharedOperationState transcript

import datetime, logging, os, sys
from dataclasses import dataclass, field
from typing import List, Optional, Tuple, TYPE_CHECKING

if TYPE_CHECKING:
  from routers_v2.common_operation_functions_v2 import SharedOperationState

# Configure logging for multi-worker environment
logging.basicConfig(level=logging.INFO, format='%(message)s', handlers=[logging.StreamHandler(sys.stdout)])
logger = logging.getLogger(__name__)

# Global request counter (monotonically increasing)
_request_counter = 0

# Format milliseconds into a human-readable string
def format_milliseconds(millisecs: int) -> str:
  if millisecs < 1000: return f"{millisecs} ms"
  if millisecs < 50000:
    seconds_float = round(millisecs / 1000.0, 1)
    unit = "sec" if seconds_float == 1.0 else "secs"
    return f"{seconds_float:.1f} {unit}"
  secs = millisecs // 1000; hours = secs // 3600; minutes = (secs % 3600) // 60; seconds = secs % 60
  parts = []
  if hours: parts.append(f"{hours} hour{'s' if hours != 1 else ''}")
  if minutes: parts.append(f"{minutes} min{'s' if minutes != 1 else ''}")
  if seconds: parts.append(f"{seconds} sec{'s' if seconds != 1 else ''}")
  return ', '.join(parts) if parts else "0 sec"

@dataclass
class MiddlewareLogger:
  """
  Unified logger for FastAPI endpoints and background operations.

  Usage:
    # Endpoint
    logger = MiddlewareLogger.create()
    logger.log_function_header("analyzer_risk()")
    logger.log_function_output("Assessing...")
    logger.log_function_footer()

    # Background operation (lines also land in the polling transcript)
    logger = MiddlewareLogger.create(operation_state=state)
    logger.log_function_header("permissions(https://contoso.sharepoint.com/sites/hr)")
  """

  # Configuration (set at creation)
  log_inner_function_headers_and_footers: bool = True
  inner_log_indentation: int = 2
  operation_state: Optional["SharedOperationState"] = None

  # State (managed internally)
  _function_name: str = ""
  _start_time: Optional[datetime.datetime] = None
  _request_number: int = 0
  _nesting_depth: int = 0
  _inner_stack: List[Tuple[str, datetime.datetime]] = field(default_factory=list)

  @classmethod
  def create(cls, log_inner_function_headers_and_footers: bool = True, inner_log_indentation: int = 2, operation_state: Optional["SharedOperationState"] = None) -> "MiddlewareLogger":
    """Factory method. Increments global request counter."""
    global _request_counter
    _request_counter += 1
    instance = cls(
      log_inner_function_headers_and_footers=log_inner_function_headers_and_footers,
      inner_log_indentation=inner_log_indentation,
      operation_state=operation_state,
      _request_number=_request_counter,
      _inner_stack=[]
    )
    return instance

  def log_function_header(self, function_name: str) -> Optional[str]:
    """
    Log function start.
    - depth=0: Always logs, sets top-level function name and start time
    - depth>0: Logs only if log_inner_function_headers_and_footers=True
    Returns: transcript line if operation_state set and output logged, else None
    """
    now = datetime.datetime.now()

    if self._nesting_depth == 0:
      self._function_name = function_name
      self._start_time = now
      message = f"START: {function_name}..."
      self._log_to_console(message)
      self._nesting_depth = 1
      return self._emit_to_operation_state(message)
    else:
      self._inner_stack.append((function_name, now))
      self._nesting_depth += 1

      if self.log_inner_function_headers_and_footers:
        indented_message = self._apply_indentation(f"START: {function_name}...")
        self._log_to_console(indented_message)
        return self._emit_to_operation_state(indented_message)
      return None

  def log_function_output(self, output: str) -> Optional[str]:
    """Log intermediate output. Always logs regardless of nesting depth, indented by depth."""
    indented_message = self._apply_indentation(output)
    self._log_to_console(indented_message)
    return self._emit_to_operation_state(indented_message)

  def log_function_footer(self) -> Optional[str]:
    """
    Log function end.
    - depth>0: Pops from stack, logs if log_inner_function_headers_and_footers=True
    - depth=0: Logs total duration (should not decrement below 0)
    """
    now = datetime.datetime.now()

    if self._nesting_depth <= 1:
      if self._start_time:
        ms = int((now - self._start_time).total_seconds() * 1000)
        duration = format_milliseconds(ms)
      else:
        duration = "0 ms"

      message = f"END: {self._function_name} ({duration})."
      self._log_to_console(message)
      self._nesting_depth = 0
      return self._emit_to_operation_state(message)
    else:
      indented_message = None
      if self._inner_stack:
        inner_func_name, inner_start_time = self._inner_stack.pop()

        if self.log_inner_function_headers_and_footers:
          ms = int((now - inner_start_time).total_seconds() * 1000)
          duration = format_milliseconds(ms)
          # Same indentation as the matching header
          indented_message = self._apply_indentation(f"END: {inner_func_name} ({duration}).")

      self._nesting_depth -= 1
      if indented_message is None: return None
      self._log_to_console(indented_message)
      return self._emit_to_operation_state(indented_message)

  def _apply_indentation(self, output: str) -> str:
    """Apply indentation based on nesting depth. Depth 0 and 1 have no indentation."""
    if self._nesting_depth <= 1: return output
    indent = " " * (self.inner_log_indentation * (self._nesting_depth - 1))
    return indent + output

  def _log_to_console(self, message: str) -> None:
    """Write to server console using standard format."""
    process_id = os.getpid()
    timestamp = datetime.datetime.now().strftime('%Y-%m-%d %H:%M:%S')
    logger.info(f"[{timestamp},process {process_id},request {self._request_number},{self._function_name}] {message}")

  def _emit_to_operation_state(self, message: str) -> Optional[str]:
    """
    Append to the operation transcript if a state is attached.
    Adds timestamp prefix: [YYYY-MM-DD HH:MM:SS] MESSAGE
    Returns the transcript line or None.
    """
    if self.operation_state is None: return None
    timestamp = datetime.datetime.now().strftime('%Y-%m-%d %H:%M:%S')
    timestamped_message = f"[{timestamp}] {message}"
    self.operation_state.append_message(timestamped_message)
    return timestamped_message
