"""
Multi-agent skill installer.

Two modes are supported:

- ``symlink``: the skill is copied once to the canonical location
  (``<base>/.agents/skills/<name>``) and every agent directory links to it.
  Where a link cannot be created the agent gets its own copy instead.
- ``copy``: every agent directory receives an independent copy.
"""

from __future__ import annotations

import logging
import os
import shutil
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Literal

import yaml

from .agents import AgentSpec, AgentTable, get_agent
from .cache import COMMIT_FILENAME
from .errors import SkillpmError
from .paths import is_path_safe, sanitize_name
from .skill_manifest import MANIFEST_FILENAME, read_skill_manifest

logger = logging.getLogger(__name__)

InstallMode = Literal["symlink", "copy"]
INSTALL_MODES = ("symlink", "copy")

CANONICAL_DIR = Path(".agents") / "skills"

# Never copied into an installed skill; names starting with PRIVATE_PREFIX are skipped too.
DEFAULT_EXCLUDE_NAMES = frozenset(
    {
        "README.md",
        "metadata.json",
        ".git",
        ".hg",
        ".svn",
        ".DS_Store",
        "__pycache__",
        COMMIT_FILENAME,
    }
)
PRIVATE_PREFIX = "_"

CURSOR_AGENT_ID = "cursor"
CURSOR_RULES_DIR = Path(".cursor") / "rules"
BRIDGE_MARKER = "<!-- skillpm:auto-generated -->"

PATH_TRAVERSAL_ERROR = "Invalid skill name: potential path traversal detected"


@dataclass(frozen=True)
class InstallResult:
    success: bool
    path: Path
    mode: InstallMode
    canonical_path: Path | None = None
    symlink_failed: bool = False
    error: str | None = None


def _remove(path: Path) -> None:
    if os.path.islink(path) or os.path.isfile(path):
        os.unlink(path)
    elif os.path.isdir(path):
        shutil.rmtree(path)


def copy_skill_tree(src: Path, dest: Path, *, exclude: Iterable[str] = DEFAULT_EXCLUDE_NAMES) -> None:
    excluded = frozenset(exclude)

    def _ignore(_dir: str, names: list[str]) -> set[str]:
        return {n for n in names if n in excluded or n.startswith(PRIVATE_PREFIX)}

    shutil.copytree(src, dest, ignore=_ignore, symlinks=False, dirs_exist_ok=True)


def _link_points_to(link: Path, target: Path) -> bool:
    current = os.readlink(link)
    if not os.path.isabs(current):
        current = os.path.join(os.path.dirname(link), current)
    return os.path.normpath(os.path.abspath(current)) == os.path.normpath(os.path.abspath(target))


def _clear_link_path(link: Path) -> None:
    try:
        _remove(link)
    except OSError as e:
        # Cyclic or otherwise odd entries: a last forced unlink, then let symlink() decide.
        logger.debug("Could not clear %s (%s); retrying with unlink", link, e)
        try:
            os.unlink(link)
        except OSError:
            pass


def create_symlink(target: Path, link: Path) -> bool:
    """
    Point ``link`` at ``target`` with a relative symlink.

    Returns True when the link exists afterwards (including when it already
    pointed at ``target``), False when the platform refused to create it.
    """
    if os.path.islink(link):
        try:
            if _link_points_to(link, target):
                logger.debug("Symlink %s already points to %s", link, target)
                return True
        except OSError:
            pass
    if os.path.lexists(link):
        _clear_link_path(link)

    try:
        link.parent.mkdir(parents=True, exist_ok=True)
        relative = os.path.relpath(target, link.parent)
        # Windows needs directory semantics; without the privilege this raises and we copy instead.
        os.symlink(relative, link, target_is_directory=sys.platform == "win32")
    except OSError as e:
        logger.debug("Symlink %s -> %s failed: %s", link, target, e)
        return False
    return True


class Installer:
    def __init__(
        self,
        *,
        agents: AgentTable,
        cwd: Path | None = None,
        global_scope: bool = False,
        home: Path | None = None,
        exclude: Iterable[str] = DEFAULT_EXCLUDE_NAMES,
    ) -> None:
        self.agents = agents
        self.cwd = (cwd or Path.cwd()).expanduser().absolute()
        self.home = (home or Path.home()).expanduser().absolute()
        self.global_scope = global_scope
        self.exclude = frozenset(exclude)

    @property
    def canonical_base(self) -> Path:
        return (self.home if self.global_scope else self.cwd) / CANONICAL_DIR

    def agent_base(self, agent: AgentSpec) -> Path:
        if self.global_scope:
            return Path(agent.global_skills_dir)
        return self.cwd / agent.skills_dir

    def shares_canonical_base(self, agent: AgentSpec) -> bool:
        """True when the agent's skills directory is (or resolves to) the canonical base."""
        return os.path.realpath(self.agent_base(agent)) == os.path.realpath(self.canonical_base)

    def get_canonical_path(self, skill_name: str) -> Path:
        return self.canonical_base / sanitize_name(skill_name)

    def get_agent_skill_path(self, skill_name: str, agent_id: str) -> Path:
        agent = get_agent(self.agents, agent_id)
        return self.agent_base(agent) / sanitize_name(skill_name)

    def install_for_agent(
        self,
        source: Path,
        skill_name: str,
        agent_id: str,
        *,
        mode: InstallMode = "symlink",
    ) -> InstallResult:
        sanitized = sanitize_name(skill_name)
        try:
            agent = get_agent(self.agents, agent_id)
        except SkillpmError as e:
            return InstallResult(success=False, path=Path(sanitized), mode=mode, error=str(e))

        canonical_base = self.canonical_base
        canonical_dir = canonical_base / sanitized
        agent_base = self.agent_base(agent)
        agent_dir = agent_base / sanitized

        if mode not in INSTALL_MODES:
            return InstallResult(success=False, path=agent_dir, mode=mode, error=f"Unknown install mode: {mode!r}")
        if not is_path_safe(canonical_base, canonical_dir) or not is_path_safe(agent_base, agent_dir):
            logger.warning("Rejected skill name %r for %s: path traversal", skill_name, agent_id)
            return InstallResult(success=False, path=agent_dir, mode=mode, error=PATH_TRAVERSAL_ERROR)

        try:
            if mode == "copy":
                _remove(agent_dir)
                agent_dir.mkdir(parents=True, exist_ok=True)
                copy_skill_tree(source, agent_dir, exclude=self.exclude)
                logger.debug("Copied %s into %s", sanitized, agent_dir)
                result = InstallResult(success=True, path=agent_dir, mode="copy")
            else:
                result = self._install_symlinked(source, canonical_dir, agent_dir)
        except OSError as e:
            logger.debug("Installing %s for %s failed: %s", sanitized, agent_id, e)
            return InstallResult(success=False, path=agent_dir, mode=mode, error=str(e))

        if agent.id == CURSOR_AGENT_ID and not self.global_scope:
            self._write_cursor_bridge(source, sanitized, agent_dir)
        return result

    def _install_symlinked(self, source: Path, canonical_dir: Path, agent_dir: Path) -> InstallResult:
        _remove(canonical_dir)
        canonical_dir.mkdir(parents=True, exist_ok=True)
        copy_skill_tree(source, canonical_dir, exclude=self.exclude)

        # Agents whose skills directory is the canonical one read the canonical copy directly.
        if os.path.realpath(agent_dir.parent) == os.path.realpath(canonical_dir.parent):
            return InstallResult(success=True, path=agent_dir, mode="symlink", canonical_path=canonical_dir)

        if create_symlink(canonical_dir, agent_dir):
            return InstallResult(success=True, path=agent_dir, mode="symlink", canonical_path=canonical_dir)

        logger.info("Symlink unavailable for %s, copying instead", agent_dir)
        if os.path.lexists(agent_dir):
            _clear_link_path(agent_dir)
        agent_dir.mkdir(parents=True, exist_ok=True)
        copy_skill_tree(source, agent_dir, exclude=self.exclude)
        return InstallResult(
            success=True,
            path=agent_dir,
            mode="symlink",
            canonical_path=canonical_dir,
            symlink_failed=True,
        )

    def install_to_agents(
        self,
        source: Path,
        skill_name: str,
        agent_ids: Iterable[str],
        *,
        mode: InstallMode = "symlink",
    ) -> dict[str, InstallResult]:
        results: dict[str, InstallResult] = {}
        for agent_id in agent_ids:
            results[agent_id] = self.install_for_agent(source, skill_name, agent_id, mode=mode)
        return results

    def is_installed(self, skill_name: str, agent_id: str) -> bool:
        return self.get_agent_skill_path(skill_name, agent_id).exists()

    def is_installed_in_canonical(self, skill_name: str) -> bool:
        return self.get_canonical_path(skill_name).is_dir()

    def uninstall_from_agent(self, skill_name: str, agent_id: str) -> bool:
        """
        Remove the skill from one agent directory.

        An agent reading the canonical base directly has nothing of its own to
        remove: the shared copy stays for the other agents and only
        ``uninstall_from_agents`` deletes it.
        """
        agent = get_agent(self.agents, agent_id)
        base = self.agent_base(agent)
        skill_path = base / sanitize_name(skill_name)
        if not is_path_safe(base, skill_path):
            return False

        if agent.id == CURSOR_AGENT_ID and not self.global_scope:
            self._remove_cursor_bridge(sanitize_name(skill_name))

        if self.shares_canonical_base(agent):
            logger.debug("Keeping canonical copy of %s for %s", skill_name, agent_id)
            return False
        if not os.path.lexists(skill_path):
            return False
        _remove(skill_path)
        return True

    def _linked_elsewhere(self, skill_name: str, skip: set[str]) -> list[str]:
        canonical = os.path.realpath(self.get_canonical_path(skill_name))
        users: list[str] = []
        for agent_id, agent in self.agents.items():
            if agent_id in skip or self.shares_canonical_base(agent):
                continue
            path = self.agent_base(agent) / sanitize_name(skill_name)
            if os.path.islink(path) and os.path.realpath(path) == canonical:
                users.append(agent_id)
        return users

    def uninstall_from_agents(self, skill_name: str, agent_ids: Iterable[str]) -> dict[str, bool]:
        ids = list(agent_ids)
        canonical = self.get_canonical_path(skill_name)
        had_canonical = os.path.isdir(canonical)

        results: dict[str, bool] = {}
        for agent_id in ids:
            removed = self.uninstall_from_agent(skill_name, agent_id)
            if not removed and agent_id in self.agents and self.shares_canonical_base(self.agents[agent_id]):
                removed = had_canonical
            results[agent_id] = removed

        if not is_path_safe(self.canonical_base, canonical) or not os.path.lexists(canonical):
            return results
        users = self._linked_elsewhere(skill_name, set(ids))
        if users:
            logger.info("Keeping canonical copy of %s, still linked from %s", skill_name, ", ".join(users))
            for agent_id in ids:
                if agent_id in self.agents and self.shares_canonical_base(self.agents[agent_id]):
                    results[agent_id] = False
            return results
        _remove(canonical)
        return results

    def list_installed_skills(self, agent_id: str) -> list[str]:
        """
        Sorted names of the skills in the agent's directory.

        For an agent whose directory is the canonical base (amp in project
        scope) this is every skill installed in symlink mode for any agent.
        """
        base = self.agent_base(get_agent(self.agents, agent_id))
        if not base.is_dir():
            return []
        return sorted(p.name for p in base.iterdir() if p.is_symlink() or p.is_dir())

    def bridge_path(self, skill_name: str) -> Path:
        return self.cwd / CURSOR_RULES_DIR / f"{sanitize_name(skill_name)}.mdc"

    def _write_cursor_bridge(self, source: Path, sanitized: str, agent_dir: Path) -> None:
        try:
            manifest = read_skill_manifest(source)
            if manifest is None or not manifest.description:
                return
            bridge = self.bridge_path(sanitized)
            if bridge.exists() and BRIDGE_MARKER not in bridge.read_text(encoding="utf-8"):
                logger.debug("Leaving hand-written rule file %s untouched", bridge)
                return
            skill_md = os.path.relpath(agent_dir / MANIFEST_FILENAME, bridge.parent).replace(os.sep, "/")
            header = yaml.safe_dump(
                {"description": manifest.description, "alwaysApply": False},
                sort_keys=False,
                allow_unicode=True,
            )
            bridge.parent.mkdir(parents=True, exist_ok=True)
            bridge.write_text(
                f"---\n{header}---\n{BRIDGE_MARKER}\n\n"
                f"When this rule applies, read and follow the skill instructions in @{skill_md}\n",
                encoding="utf-8",
            )
        except Exception as e:  # noqa: BLE001 - the bridge file never fails an install
            logger.warning("Could not write Cursor rule for %s: %s", sanitized, e)

    def _remove_cursor_bridge(self, sanitized: str) -> None:
        bridge = self.bridge_path(sanitized)
        try:
            if bridge.is_file() and BRIDGE_MARKER in bridge.read_text(encoding="utf-8"):
                bridge.unlink()
        except Exception as e:  # noqa: BLE001
            logger.warning("Could not remove Cursor rule for %s: %s", sanitized, e)
