import os
import re
import sys
import json
import hashlib
from datetime import datetime
from typing import Any, Dict, Optional
from remote_bridge.config import MAX_OUTPUT_CHARS, TRUNCATION_MARKER

def log_error(message: str) -> None:
    print(f"[REMOTE-BRIDGE] {message}", file=sys.stderr, flush=True)

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

def optional_int(value: Any, name: str) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be a number")

def iso_now() -> str:
    return datetime.now().isoformat(timespec="milliseconds")

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
    runs_dir = os.path.join(cache_root, "runs")
    os.makedirs(runs_dir, exist_ok=True)
    return {
        "cache_root": cache_root,
        "runs_dir": runs_dir,
        "exec_log": os.path.join(runs_dir, "exec.log"),
        "transport_log": os.path.join(runs_dir, "transport.log"),
    }

def resolve_runtime_paths(
    project_root_arg: Optional[str],
    cache_dir_arg: Optional[str],
) -> Dict[str, str]:
    project_root = os.path.abspath(project_root_arg or os.getcwd())
    project_tag = safe_name(os.path.basename(project_root))
    project_hash = hashlib.sha1(project_root.encode("utf-8")).hexdigest()[:8]
    project_ns = f"{project_tag}-{project_hash}"
    cache_override = cache_dir_arg or os.environ.get("REMOTE_BRIDGE_CACHE_DIR")
    if cache_override:
        cache_root = os.path.join(os.path.abspath(cache_override), project_ns)
    else:
        cache_root = os.path.join(project_root, ".bridge-cache")
    return {
        "project_root": project_root,
        "project_tag": project_tag,
        "cache_root": cache_root,
    }

def truncate_output(text: str, max_chars: int = MAX_OUTPUT_CHARS) -> str:
    """Keep the head and tail halves of ``text`` when it exceeds ``max_chars``."""
    if len(text) <= max_chars:
        return text
    half = max_chars // 2
    return text[:half] + TRUNCATION_MARKER + text[-half:]

def slice_lines(text: str, offset: Optional[int], limit: Optional[int]) -> str:
    # offset is 1-based; a missing limit runs to the end of the file
    lines = text.split("\n")
    start = max((offset if offset is not None else 1) - 1, 0)
    end = start + limit if limit else len(lines)
    return "\n".join(lines[start:end])

def glob_to_regex(pattern: str) -> "re.Pattern[str]":
    """Translate a workspace glob (``**``, ``*``, ``?``, ``[...]``, ``{a,b}``)
    into a regex matched against slash-separated relative paths."""
    out = []
    i = 0
    depth = 0
    n = len(pattern)
    while i < n:
        c = pattern[i]
        if c == "*":
            if pattern[i:i + 3] == "**/":
                out.append("(?:.*/)?")
                i += 3
                continue
            if pattern[i:i + 2] == "**":
                out.append(".*")
                i += 2
                continue
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        elif c == "[":
            close = pattern.find("]", i + 1)
            if close < 0:
                out.append(re.escape(c))
            else:
                body = pattern[i + 1:close]
                if body.startswith("!"):
                    body = "^" + body[1:]
                out.append("[" + body.replace("\\", "\\\\") + "]")
                i = close + 1
                continue
        elif c == "{":
            out.append("(?:")
            depth += 1
        elif c == "}" and depth:
            out.append(")")
            depth -= 1
        elif c == "," and depth:
            out.append("|")
        else:
            out.append(re.escape(c))
        i += 1
    out.extend(")" * depth)
    return re.compile("".join(out) + r"\Z")
