from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

MANIFEST_FILENAME = "SKILL.md"


@dataclass(frozen=True)
class SkillManifest:
    path: Path
    name: str | None
    description: str | None
    version: str | None
    metadata: dict[str, Any]


def split_frontmatter(text: str) -> tuple[dict[str, Any], str]:
    normalized = (text or "").replace("\r\n", "\n").replace("\r", "\n")
    if not normalized.startswith("---\n"):
        return {}, normalized
    end = normalized.find("\n---", 3)
    if end < 0:
        return {}, normalized
    block = normalized[4:end]
    body = normalized[end + len("\n---") :].lstrip("\n")
    try:
        parsed = yaml.safe_load(block)
    except yaml.YAMLError:
        return {}, normalized
    if not isinstance(parsed, dict):
        return {}, body
    return parsed, body


def _str_field(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def read_skill_manifest(skill_dir: Path) -> SkillManifest | None:
    """Read the SKILL.md frontmatter of ``skill_dir``; ``None`` when there is no readable manifest."""
    path = skill_dir / MANIFEST_FILENAME
    if not path.is_file():
        return None
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None
    data, _ = split_frontmatter(text)
    metadata = data.get("metadata")
    return SkillManifest(
        path=path,
        name=_str_field(data, "name"),
        description=_str_field(data, "description"),
        version=_str_field(data, "version"),
        metadata=dict(metadata) if isinstance(metadata, dict) else {},
    )
