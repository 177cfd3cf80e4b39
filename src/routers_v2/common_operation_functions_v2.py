# Operations V2 - Single background operation runner with a pollable progress transcript
# Worker runs on its own thread; transcript lines travel worker -> poller through a thread-safe queue

import datetime, logging, queue, threading, uuid
from dataclasses import dataclass
from typing import Any, Callable, Literal, Optional, TypeVar

from routers_v2.common_analyzer_models_v2 import AnalyzerDataStore
from routers_v2.common_checkpoint_functions_v2 import CheckpointStore
from routers_v2.common_logging_functions_v2 import MiddlewareLogger, format_milliseconds
from routers_v2.common_throttle_functions_v2 import ThrottleGuard

logger = logging.getLogger(__name__)

T = TypeVar("T")

OperationType = Literal["enumeration", "permissions", "enrichment", "matrix"]
OperationStatus = Literal["InProgress", "Completed", "Failed"]
OPERATION_TYPES = ["enumeration", "permissions", "enrichment", "matrix"]


# ----------------------------------------- START: Shared Operation State -----------------------------------------------------

class SharedOperationState:
  """
  Progress transcript plus running/complete/error flags and the optional result.
  Written by the worker through append_message() and finish(); read by pollers through snapshot().
  """

  def __init__(self):
    self._lock = threading.Lock()
    self._pending: queue.SimpleQueue = queue.SimpleQueue()
    self._messages: list[str] = []
    self.running = False
    self.complete = False
    self.error: Optional[str] = None
    self.result: Any = None

  def append_message(self, message: str) -> None:
    self._pending.put(message)

  def _drain(self) -> None:
    while True:
      try: self._messages.append(self._pending.get_nowait())
      except queue.Empty: return

  def try_begin(self) -> bool:
    """Atomically claim the state for a new operation. Returns False if an operation is running."""
    with self._lock:
      if self.running: return False
      while True:
        try: self._pending.get_nowait()
        except queue.Empty: break
      self._messages = []
      self.running = True
      self.complete = False
      self.error = None
      self.result = None
      return True

  def finish(self, error: Optional[str] = None, result: Any = None) -> None:
    with self._lock:
      self._drain()
      self.error = error
      self.result = result
      self.complete = True
      self.running = False

  def snapshot(self) -> dict:
    """Polling response: {messages, running, complete, error?, result?}"""
    with self._lock:
      self._drain()
      response = {"messages": list(self._messages), "running": self.running, "complete": self.complete}
      if self.error is not None: response["error"] = self.error
      if self.result is not None: response["result"] = self.result
      return response

  def get_message_count(self) -> int:
    with self._lock:
      self._drain()
      return len(self._messages)

# ----------------------------------------- END: Shared Operation State -------------------------------------------------------


# ----------------------------------------- START: Session and Context --------------------------------------------------------

@dataclass
class OperationSession:
  session_id: str
  operation_type: OperationType
  scope: str
  started_utc: str
  phase: str = "Initializing"
  status: OperationStatus = "InProgress"
  finished_utc: Optional[str] = None
  warning_count: int = 0
  error: str = ""

@dataclass
class OperationContext:
  """
  Everything a work function may touch. Handed to the worker at spawn time.
  Each phase is logged as an inner header/footer block, so phase output is indented below the operation header.
  """
  session: OperationSession
  logger: MiddlewareLogger
  throttle_guard: ThrottleGuard
  checkpoints: CheckpointStore
  data_store: AnalyzerDataStore
  _phase_open: bool = False

  def log(self, message: str) -> None:
    self.logger.log_function_output(message)

  def warn(self, message: str) -> None:
    self.session.warning_count += 1
    self.logger.log_function_output(f"WARNING: {message}")

  def call(self, remote_call: Callable[[], T], operation_name: str) -> T:
    return self.throttle_guard.execute(remote_call, operation_name, logger=self.logger)

  def set_phase(self, phase: str, total_count: Optional[int] = None) -> None:
    self.end_phase()
    self.session.phase = phase
    self.checkpoints.update(phase=phase, processed_count=0, total_count=total_count)
    self.logger.log_function_header(f"Phase: {phase}")
    self._phase_open = True

  def end_phase(self) -> None:
    if not self._phase_open: return
    self._phase_open = False
    self.logger.log_function_footer()

  def report_progress(self, processed_count: int, total_count: Optional[int] = None, item_key: Optional[str] = None) -> None:
    self.checkpoints.update(item_key=item_key, processed_count=processed_count, total_count=total_count)

# ----------------------------------------- END: Session and Context ----------------------------------------------------------


# ----------------------------------------- START: Operation Runner -----------------------------------------------------------

def _utc_now_iso() -> str:
  return datetime.datetime.now(datetime.timezone.utc).isoformat()

class OperationRunner:
  """
  Runs at most one operation at a time, whatever its type, on a daemon thread.

  Usage:
    runner = OperationRunner(state, ThrottleGuard(), CheckpointStore("/home/data"), AnalyzerDataStore())
    ack = runner.start("permissions", site_url, lambda context: run_permission_analysis(context, source_factory, site_url))
    if not ack["started"]: ...  # another operation is running
    state.snapshot()            # {"messages": [...], "running": True, "complete": False}
  """

  def __init__(self, state: SharedOperationState, throttle_guard: ThrottleGuard, checkpoints: CheckpointStore, data_store: AnalyzerDataStore):
    self.state = state
    self.throttle_guard = throttle_guard
    self.checkpoints = checkpoints
    self.data_store = data_store
    self.session: Optional[OperationSession] = None
    self._thread: Optional[threading.Thread] = None

  def is_running(self) -> bool:
    return self.state.running

  def start(self, operation_type: OperationType, scope: str, work: Callable[[OperationContext], Any]) -> dict:
    """Launch work(context) in the background and return an acknowledgment immediately."""
    if not self.state.try_begin():
      current = self.session.operation_type if self.session else "unknown"
      return {"started": False, "message": f"Operation '{current}' is already running.", "operation_type": current}

    session = OperationSession(session_id=uuid.uuid4().hex, operation_type=operation_type, scope=scope, started_utc=_utc_now_iso())
    self.session = session
    self.throttle_guard.reset_stats()
    operation_logger = MiddlewareLogger.create(operation_state=self.state)
    context = OperationContext(session=session, logger=operation_logger, throttle_guard=self.throttle_guard, checkpoints=self.checkpoints, data_store=self.data_store)

    self._thread = threading.Thread(target=self._run_worker, args=(context, work), name=f"analyzer-{operation_type}", daemon=True)
    self._thread.start()
    return {"started": True, "session_id": session.session_id, "operation_type": operation_type, "scope": scope, "started_utc": session.started_utc}

  def _run_worker(self, context: OperationContext, work: Callable[[OperationContext], Any]) -> None:
    session = context.session
    operation_logger = context.logger
    operation_logger.log_function_header(f"{session.operation_type}({session.scope})")

    try:
      previous = self.checkpoints.load(session.operation_type, operation_logger=operation_logger)
      if previous:
        operation_logger.log_function_output(f"Found incomplete checkpoint from {previous.started_at} (scope '{previous.scope}', phase '{previous.phase}'). Starting fresh.")
      self.checkpoints.start(session.operation_type, session.scope, logger=operation_logger)
      result = work(context)
    except Exception as e:
      logger.exception(f"Operation '{session.operation_type}' failed")
      session.status = "Failed"
      session.error = str(e) or type(e).__name__
      session.finished_utc = _utc_now_iso()
      context.end_phase()
      operation_logger.log_function_output(f"ERROR: {session.error}")
      self.checkpoints.complete("Failed")
      operation_logger.log_function_footer()
      self.state.finish(error=session.error)
      return

    session.status = "Completed"
    session.finished_utc = _utc_now_iso()
    context.end_phase()
    operation_logger.log_function_output(f"Completed with {session.warning_count} warning{'s' if session.warning_count != 1 else ''}.")
    self.checkpoints.complete("Completed")
    operation_logger.log_function_footer()
    self.state.finish(result=result)

  def wait_for_completion(self, timeout: Optional[float] = None) -> bool:
    """Block until the current worker ends. Returns True if no worker is alive afterwards."""
    thread = self._thread
    if thread is None: return True
    thread.join(timeout)
    return not thread.is_alive()

  def get_audit(self) -> Optional[dict]:
    """Summary of the last (or current) session, None if nothing ran yet."""
    session = self.session
    if session is None: return None
    duration = ""
    if session.finished_utc:
      ms = int((datetime.datetime.fromisoformat(session.finished_utc) - datetime.datetime.fromisoformat(session.started_utc)).total_seconds() * 1000)
      duration = format_milliseconds(ms)
    return {
      "session_id": session.session_id,
      "operation_type": session.operation_type,
      "scope": session.scope,
      "status": session.status,
      "phase": session.phase,
      "started_utc": session.started_utc,
      "finished_utc": session.finished_utc,
      "duration": duration,
      "event_count": self.state.get_message_count(),
      "warning_count": session.warning_count,
      "error": session.error,
      "throttle": self.throttle_guard.get_stats()
    }

# ----------------------------------------- END: Operation Runner -------------------------------------------------------------
