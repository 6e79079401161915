import os
import re
import sys
import json
import uuid
from datetime import datetime
from typing import Any, Dict


def log_error(message: str) -> None:
    print(f"[shellwire] {message}", file=sys.stderr, flush=True)


def clamp_float(value: Any, default: float, min_value: float, max_value: float) -> float:
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        numeric = default
    if numeric < min_value:
        return min_value
    if numeric > max_value:
        return max_value
    return numeric


def clamp_int(value: Any, default: int, min_value: int, max_value: int) -> int:
    try:
        numeric = int(value)
    except (TypeError, ValueError):
        numeric = default
    if numeric < min_value:
        return min_value
    if numeric > max_value:
        return max_value
    return numeric


def to_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    s = str(value).lower().strip()
    if s in ("true", "1", "yes", "on"):
        return True
    if s in ("false", "0", "no", "off"):
        return False
    return default


def iso_now() -> str:
    return datetime.now().isoformat(timespec="milliseconds")


def safe_name(text: str) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9._-]+", "_", text.strip())
    return cleaned[:80] if cleaned else "unnamed"


def short_token(length: int = 12) -> str:
    return uuid.uuid4().hex[:length]


def shell_escape(text: str) -> str:
    """Escape for use inside a single-quoted shell word."""
    return text.replace("'", "'\\''")


def shell_quote(text: str) -> str:
    return f"'{shell_escape(text)}'"


def json_line(path: str, payload: Dict[str, Any]) -> None:
    if not path:
        return
    try:
        with open(path, "a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False) + "\n")
    except OSError as exc:
        log_error(f"log write failed ({path}): {exc}")


def make_cache_dirs(cache_root: str) -> Dict[str, str]:
    if not cache_root:
        return {}
    sessions_dir = os.path.join(cache_root, "sessions")
    os.makedirs(sessions_dir, exist_ok=True)
    return {
        "cache_root": cache_root,
        "sessions_dir": sessions_dir,
    }
