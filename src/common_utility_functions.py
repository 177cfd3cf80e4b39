import dataclasses, os, shutil, tempfile
from typing import Any, Dict

# Format a file size in bytes into a human-readable string
def format_filesize(num_bytes):
  if not num_bytes: return ''
  for unit in ['B','KB','MB','GB','TB']:
    if num_bytes < 1024: return f"{num_bytes:.2f} {unit}"
    num_bytes /= 1024
  return f"{num_bytes:.2f} PB"

# Format configuration dataclass for display (mask secrets, handle None values)
def format_config_for_displaying(config_obj) -> Dict[str, Any]:
  result = {}
  for field in dataclasses.fields(config_obj):
    value = getattr(config_obj, field.name)
    if field.name.endswith("_KEY") or field.name.endswith("_SECRET") or field.name.endswith("_PASSWORD"): result[field.name] = "✅ [CONFIGURED]" if value else "⚠️ [NOT CONFIGURED]"
    elif value is None or value == "": result[field.name] = "⚠️ [NOT CONFIGURED]"
    else: result[field.name] = "✅ " + str(value)
  return result

def test_directory_writable(directory_path: str) -> bool:
  """Test if a directory is writable by creating a temporary file."""
  if not os.path.exists(directory_path): return False
  try:
    with tempfile.NamedTemporaryFile(dir=directory_path, delete=False) as temp_file:
      temp_file.write(b"test")
      temp_file_path = temp_file.name
    os.unlink(temp_file_path)
    return True
  except OSError:
    return False

def get_storage_summary(path: str) -> Dict[str, Any]:
  """Existence, writability and free space of the persistent storage folder."""
  summary = {"path": path, "exists": bool(path) and os.path.exists(path), "writable": False, "free_space": "N/A"}
  if not summary["exists"]: return summary
  summary["writable"] = test_directory_writable(path)
  try: summary["free_space"] = format_filesize(shutil.disk_usage(path).free)
  except OSError: summary["free_space"] = "N/A"
  return summary
