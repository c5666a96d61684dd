import os
import re
import sys
import json
import hashlib
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from shellpilot.config import ANSI_ESCAPE, CONTROL_CHARS, MAX_HISTORY_ROWS

TRUE_WORDS = frozenset(("true", "1", "yes", "on"))
FALSE_WORDS = frozenset(("false", "0", "no", "off"))
CACHE_SUBDIRS = ("sessions", "runs")


def log_error(message: str) -> None:
    print(f"[shellpilot] {message}", file=sys.stderr, flush=True)


def _clamp(value: Any, default, low, high, cast: Callable[[Any], Any]):
    try:
        number = cast(value)
    except (TypeError, ValueError):
        number = default
    return max(low, min(high, number))


def clamp_float(value: Any, default: float, min_value: float, max_value: float) -> float:
    return _clamp(value, default, min_value, max_value, float)


def clamp_int(value: Any, default: int, min_value: int, max_value: int) -> int:
    return _clamp(value, default, min_value, max_value, int)


def to_bool(value: Any, default: bool = False) -> bool:
    """Lenient flag parsing for tool arguments; unknown words give `default`."""
    if value is None:
        return default
    if isinstance(value, (bool, int, float)):
        return bool(value)
    word = str(value).strip().lower()
    if word in TRUE_WORDS:
        return True
    if word in FALSE_WORDS:
        return False
    return default


def iso_now() -> str:
    return datetime.now().isoformat(timespec="milliseconds")


def safe_name(text: str) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9._-]+", "_", text.strip())
    return cleaned[:80] or "unnamed"


def clean_output(text: str) -> str:
    """Strip terminal escapes and normalise line endings."""
    if not text:
        return ""
    for pattern in (ANSI_ESCAPE, CONTROL_CHARS):
        text = pattern.sub("", text)
    return re.sub(r"\r\n?", "\n", text)


def json_line(path: str, payload: Dict[str, Any]) -> None:
    """Append one JSON record to `path`. An empty path disables logging."""
    if not path:
        return
    line = json.dumps(payload, ensure_ascii=False, default=str)
    try:
        with open(path, "a", encoding="utf-8") as handle:
            handle.write(line + "\n")
    except OSError as exc:
        log_error(f"log write failed ({path}): {exc}")


def make_cache_dirs(cache_root: str) -> Dict[str, str]:
    dirs = {"cache_root": cache_root}
    for name in CACHE_SUBDIRS:
        path = os.path.join(cache_root, name)
        os.makedirs(path, exist_ok=True)
        dirs[f"{name}_dir"] = path
    return dirs


def resolve_runtime_paths(
    project_root_arg: Optional[str],
    cache_dir_arg: Optional[str],
) -> Dict[str, str]:
    """Where session and run logs go for this project root.

    With an explicit cache dir (argument or SHELLPILOT_CACHE_DIR) every project
    gets its own `<tag>-<hash>` folder under it; otherwise logs live in
    `.shellpilot-cache` inside the project root.
    """
    project_root = os.path.abspath(project_root_arg or os.getcwd())
    project_tag = safe_name(os.path.basename(project_root))
    cache_override = cache_dir_arg or os.environ.get("SHELLPILOT_CACHE_DIR")
    if cache_override:
        digest = hashlib.sha1(project_root.encode("utf-8")).hexdigest()[:8]
        cache_root = os.path.join(os.path.abspath(cache_override), f"{project_tag}-{digest}")
    else:
        cache_root = os.path.join(project_root, ".shellpilot-cache")
    return {"project_root": project_root, "project_tag": project_tag, "cache_root": cache_root}


def apply_text_filters(
    text: str,
    contains: Optional[str] = None,
    regex: Optional[str] = None,
    tail_lines: Optional[int] = None,
) -> Dict[str, Any]:
    lines: List[str] = (text or "").splitlines()
    steps = 0
    if contains:
        lines = [line for line in lines if contains in line]
        steps += 1
    if regex:
        try:
            pattern = re.compile(regex)
        except re.error as exc:
            return {"success": False, "error": f"invalid regex: {exc}", "filtered": False, "matched_lines": 0, "output": ""}
        lines = list(filter(pattern.search, lines))
        steps += 1
    if tail_lines is not None:
        lines = lines[-clamp_int(tail_lines, 100, 1, MAX_HISTORY_ROWS * 100):]
        steps += 1
    return {"success": True, "filtered": steps > 0, "matched_lines": len(lines), "output": "\n".join(lines)}
