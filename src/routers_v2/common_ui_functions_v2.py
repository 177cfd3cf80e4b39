# Common UI Functions V2 - Response helpers shared by V2 routers

from typing import Any

from fastapi.responses import JSONResponse

def json_result(ok: bool, error: str, data: Any, status_code: int = None) -> JSONResponse:
  """Generate consistent JSON response: {ok, error, data}. Status defaults to 200 / 400."""
  if status_code is None: status_code = 200 if ok else 400
  return JSONResponse({"ok": ok, "error": error, "data": data}, status_code=status_code)
