from __future__ import annotations

from pathlib import Path

from .errors import SourceResolutionError
from .paths import is_path_safe
from .refs import ParsedReference
from .skill_manifest import read_skill_manifest


def _candidate_names(child: Path) -> list[str]:
    names = [child.name]
    manifest = read_skill_manifest(child)
    if manifest is not None and manifest.name and manifest.name != child.name:
        names.append(manifest.name)
    return names


def _find_by_skill_name(root: Path, skill_name: str) -> Path:
    children = sorted(p for p in root.iterdir() if p.is_dir() and not p.name.startswith("."))
    named = [(child, _candidate_names(child)) for child in children]

    exact = [child for child, names in named if skill_name in names]
    if len(exact) == 1:
        return exact[0]
    if len(exact) > 1:
        found = ", ".join(p.name for p in exact)
        raise SourceResolutionError(f"Skill name {skill_name!r} is ambiguous in {root}: {found}")

    wanted = skill_name.lower()
    folded = [child for child, names in named if any(n.lower() == wanted for n in names)]
    if len(folded) == 1:
        return folded[0]
    if len(folded) > 1:
        found = ", ".join(p.name for p in folded)
        raise SourceResolutionError(f"Skill name {skill_name!r} is ambiguous in {root}: {found}")

    available = ", ".join(child.name for child in children) or "<none>"
    raise SourceResolutionError(f"Skill {skill_name!r} not found in {root}. Available: {available}")


def resolve_skill_dir(root: Path, parsed: ParsedReference) -> Path:
    """
    Locate the skill directory inside a fetched repository.

    An explicit sub path wins, then the ``#fragment`` skill name (matched against
    directory names and declared manifest names, case-sensitive before
    case-insensitive), and otherwise the repository root is the skill.
    """
    root = root.resolve()
    if not root.is_dir():
        raise SourceResolutionError(f"Repository path is not a directory: {root}")

    if parsed.sub_path:
        target = root / parsed.sub_path
        if not is_path_safe(root, target):
            raise SourceResolutionError(f"Sub path escapes the repository: {parsed.sub_path!r}")
        if not target.is_dir():
            raise SourceResolutionError(f"Sub path not found in repository: {parsed.sub_path}")
    elif parsed.skill_name:
        target = _find_by_skill_name(root, parsed.skill_name)
    else:
        target = root

    if not is_path_safe(root, target.resolve()):
        raise SourceResolutionError(f"Resolved skill directory escapes the repository: {target}")
    return target
