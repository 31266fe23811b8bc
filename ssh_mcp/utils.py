import os
import re
import sys
import json
import hashlib
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from ssh_mcp.errors import TransferError

LOG_PREFIX = "[SSH-MCP]"


def log(message: str, level: str = "info") -> None:
    try:
        if level == "info":
            print(f"{LOG_PREFIX} {message}", file=sys.stderr, flush=True)
        else:
            print(f"{LOG_PREFIX} [{level.upper()}] {message}", file=sys.stderr, flush=True)
    except Exception:
        pass


def log_error(message: str) -> None:
    log(message, "error")


def clamp_float(value: Any, default: float, min_value: float, max_value: float) -> float:
    try:
        numeric = float(value)
    except Exception:
        numeric = default
    if numeric < min_value:
        return min_value
    if numeric > max_value:
        return max_value
    return numeric


def iso_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def resolve_local_path(path: str, root: Optional[str] = None) -> str:
    """Canonicalize ``path`` and require it to stay inside ``root``.

    ``root`` defaults to the current working directory. Symlinks and ``..``
    segments are resolved before the check.
    """
    if not path or not str(path).strip():
        raise TransferError("Local path is required")
    base = os.path.realpath(root or os.getcwd())
    resolved = os.path.realpath(os.path.join(base, os.path.expanduser(str(path).strip())))
    try:
        common = os.path.commonpath([base, resolved])
    except ValueError:
        common = ""
    if common != base:
        raise TransferError(
            f"Path traversal detected: '{path}' resolves to '{resolved}'. "
            f"Local path must be within the working directory '{base}'."
        )
    return resolved


def safe_name(text: str) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9._-]+", "_", text.strip())
    return cleaned[:80] if cleaned else "unnamed"


def json_line(path: str, payload: Dict[str, Any]) -> None:
    try:
        with open(path, "a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False) + "\n")
    except Exception as exc:
        log_error(f"log write failed ({path}): {exc}")


def make_cache_dirs(cache_root: str) -> Dict[str, str]:
    sessions_dir = os.path.join(cache_root, "sessions")
    os.makedirs(sessions_dir, exist_ok=True)
    return {
        "cache_root": cache_root,
        "sessions_dir": sessions_dir,
    }


def resolve_runtime_paths(
    project_root_arg: Optional[str],
    cache_dir_arg: Optional[str],
) -> Dict[str, str]:
    project_root = os.path.abspath(project_root_arg or os.getcwd())
    project_tag = safe_name(os.path.basename(project_root))
    project_hash = hashlib.sha1(project_root.encode("utf-8")).hexdigest()[:8]
    project_ns = f"{project_tag}-{project_hash}"
    cache_override = cache_dir_arg or os.environ.get("SSH_MCP_CACHE_DIR")
    if cache_override:
        cache_root = os.path.join(os.path.abspath(cache_override), project_ns)
    else:
        cache_root = os.path.join(project_root, ".ssh-cache")
    return {
        "project_root": project_root,
        "project_tag": project_tag,
        "cache_root": cache_root,
    }
