# Tests for common_throttle_functions_v2.py
# Run: pytest src/routers_v2/common_throttle_functions_v2_test.py

import pytest
import requests

from routers_v2.common_permission_source_v2 import RemoteThrottleError, RemoteTimeoutError
from routers_v2.common_throttle_functions_v2 import ErrorClass, ThrottleGuard, classify_error, get_retry_after_ms

class FakeResponse:
  def __init__(self, status_code: int, headers: dict = None):
    self.status_code = status_code
    self.headers = headers or {}

class FakeHttpError(Exception):
  def __init__(self, message: str, status_code: int, headers: dict = None):
    super().__init__(message)
    self.response = FakeResponse(status_code, headers)

def failing_then(value, errors: list):
  """Callable raising the given errors in order, then returning value."""
  calls = {"count": 0}
  def call():
    calls["count"] += 1
    if errors: raise errors.pop(0)
    return value
  call.calls = calls
  return call


# ----------------------------------------- START: Classification -------------------------------------------------------------

@pytest.mark.parametrize("error, expected", [
  (RemoteThrottleError("slow down"), ErrorClass.THROTTLE),
  (FakeHttpError("Too Many Requests", 429), ErrorClass.THROTTLE),
  (FakeHttpError("Service Unavailable", 503), ErrorClass.THROTTLE),
  (Exception("The server is busy, try again later"), ErrorClass.THROTTLE),
  (FakeHttpError("Conflict", 409, {"Retry-After": "3"}), ErrorClass.THROTTLE),
  (RemoteTimeoutError("no answer"), ErrorClass.TIMEOUT),
  (TimeoutError(), ErrorClass.TIMEOUT),
  (requests.exceptions.ReadTimeout("read timed out"), ErrorClass.TIMEOUT),
  (FakeHttpError("Gateway Timeout", 504), ErrorClass.TIMEOUT),
  (FakeHttpError("Forbidden", 403), ErrorClass.FATAL),
  (ValueError("malformed response"), ErrorClass.FATAL),
  (ConnectionRefusedError("refused"), ErrorClass.FATAL)
])
def test_classify_error(error, expected):
  assert classify_error(error) == expected

def test_retry_after_hint_in_milliseconds():
  assert get_retry_after_ms(RemoteThrottleError("x", retry_after_seconds=2.5)) == 2500
  assert get_retry_after_ms(FakeHttpError("x", 429, {"retry-after": "7"})) == 7000
  assert get_retry_after_ms(FakeHttpError("x", 429)) is None

# ----------------------------------------- END: Classification ---------------------------------------------------------------


# ----------------------------------------- START: Execute --------------------------------------------------------------------

@pytest.mark.parametrize("failure_count", [0, 1, 2, 3])
def test_returns_value_after_n_throttles_within_limit(throttle_guard, sleeps, failure_count):
  call = failing_then("ok", [RemoteThrottleError("busy") for _ in range(failure_count)])
  assert throttle_guard.execute(call, "list_items") == "ok"
  assert throttle_guard.total_retries == failure_count
  assert throttle_guard.throttle_events == failure_count
  assert len(sleeps) == failure_count

def test_reraises_same_error_when_retries_exhausted(throttle_guard, sleeps):
  errors = [RemoteThrottleError(f"busy {i}") for i in range(5)]
  last_raised = errors[3]
  call = failing_then("ok", errors)
  with pytest.raises(RemoteThrottleError) as exc_info:
    throttle_guard.execute(call, "list_items")
  assert exc_info.value is last_raised
  assert call.calls["count"] == 4
  assert throttle_guard.total_retries == 3
  assert len(sleeps) == 3

def test_fatal_error_is_not_retried(throttle_guard, sleeps):
  error = ValueError("bad payload")
  call = failing_then("ok", [error])
  with pytest.raises(ValueError) as exc_info:
    throttle_guard.execute(call, "get_role_assignments")
  assert exc_info.value is error
  assert call.calls["count"] == 1
  assert throttle_guard.total_retries == 0
  assert sleeps == []

def test_timeouts_share_backoff_track(throttle_guard, sleeps):
  call = failing_then("ok", [RemoteTimeoutError("t1"), RemoteThrottleError("busy")])
  assert throttle_guard.execute(call, "list_users") == "ok"
  assert throttle_guard.timeout_events == 1
  assert throttle_guard.throttle_events == 1
  assert sleeps == [0.1, 0.2]

def test_larger_retry_after_hint_wins(throttle_guard, sleeps):
  call = failing_then("ok", [RemoteThrottleError("busy", retry_after_seconds=5), RemoteThrottleError("busy", retry_after_seconds=0.01)])
  throttle_guard.execute(call, "list_users")
  assert sleeps == [5.0, 0.2]

def test_per_call_limits_override_defaults(throttle_guard, sleeps):
  call = failing_then("ok", [RemoteThrottleError("busy"), RemoteThrottleError("busy")])
  with pytest.raises(RemoteThrottleError):
    throttle_guard.execute(call, "list_sites", max_retries=1, initial_backoff_ms=1000)
  assert sleeps == [1.0]

def test_reset_stats(throttle_guard):
  throttle_guard.execute(failing_then("ok", [RemoteThrottleError("busy")]), "x")
  throttle_guard.reset_stats()
  assert throttle_guard.get_stats() == {"total_retries": 0, "throttle_events": 0, "timeout_events": 0}

# ----------------------------------------- END: Execute ----------------------------------------------------------------------


# ----------------------------------------- START: Backoff --------------------------------------------------------------------

@pytest.mark.parametrize("jitter_fraction_used", [0.0, 0.5, 1.0])
def test_backoff_sequence_doubles_with_bounded_jitter_and_cap(jitter_fraction_used):
  guard = ThrottleGuard(sleep=lambda seconds: None, random_uniform=lambda low, high: low + (high - low) * jitter_fraction_used)
  backoff = 2000
  for _ in range(10):
    following = guard.next_backoff_ms(backoff)
    assert following <= 60000
    if following < 60000:
      assert 2 * backoff <= following <= int(2 * backoff * 1.25)
    assert following >= backoff
    backoff = following
  assert backoff == 60000

# ----------------------------------------- END: Backoff ----------------------------------------------------------------------
