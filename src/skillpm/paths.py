from __future__ import annotations

import os
import re
from pathlib import Path

PLACEHOLDER_NAME = "unnamed-skill"
MAX_NAME_LENGTH = 255

_UNSAFE_CHARS_RE = re.compile(r"[/\\:\0]")
_EDGE_RE = re.compile(r"^[.\s]+|[.\s]+$")


def sanitize_name(name: str) -> str:
    """
    Turn a user supplied skill name into a single safe path component.

    Path separators, colons and NUL bytes are dropped, leading/trailing dots and
    whitespace are stripped and the result is capped at 255 characters. An empty
    result becomes ``PLACEHOLDER_NAME``. The function is idempotent.
    """
    sanitized = _UNSAFE_CHARS_RE.sub("", name or "")
    sanitized = _EDGE_RE.sub("", sanitized)
    if len(sanitized) > MAX_NAME_LENGTH:
        # Truncation can expose a trailing dot or space again.
        sanitized = _EDGE_RE.sub("", sanitized[:MAX_NAME_LENGTH])
    if not sanitized:
        return PLACEHOLDER_NAME
    return sanitized


def _absolute(path: str | Path) -> str:
    return os.path.normpath(os.path.abspath(os.fspath(path)))


def is_path_safe(base: str | Path, target: str | Path) -> bool:
    base_s = _absolute(base)
    target_s = _absolute(target)
    if target_s == base_s:
        return True
    return target_s.startswith(base_s.rstrip(os.sep) + os.sep)
