from __future__ import annotations

import json
import logging
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from .cache import RepoCache
from .errors import SkillpmError
from .fetch import FetchedTree, Fetcher, ResolvedRef
from .installer import InstallMode, Installer, InstallResult
from .paths import sanitize_name
from .refs import ParsedReference, ParsedVersion, RefResolver, parse_version
from .source_path import resolve_skill_dir

logger = logging.getLogger(__name__)

LOCK_FILENAME = "skills.lock"
UNKNOWN = "unknown"


@dataclass(frozen=True)
class SkillInstallReport:
    ref: str
    name: str | None = None
    repo_url: str | None = None
    resolved_ref: str | None = None
    commit: str | None = None
    results: dict[str, InstallResult] = field(default_factory=dict)
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None and bool(self.results) and all(r.success for r in self.results.values())


@dataclass(frozen=True)
class OutdatedInfo:
    name: str
    current: str
    latest: str
    update_available: bool


def skill_name_for(parsed: ParsedReference) -> str:
    if parsed.skill_name:
        return parsed.skill_name
    if parsed.sub_path:
        return parsed.sub_path.rstrip("/").rsplit("/", 1)[-1]
    return parsed.repo


def _locked_version(entry: dict[str, Any]) -> ParsedVersion | None:
    ref, commit = entry.get("ref"), entry.get("commit")
    if not isinstance(ref, str) or not ref:
        return None
    if ref == commit:
        return ParsedVersion(kind="commit", value=ref, raw=f"commit:{ref}")
    return ParsedVersion(kind="exact", value=ref, raw=ref)


def _write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)


class LockFile:
    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> dict[str, dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise SkillpmError(f"Lock file is not valid JSON: {self.path}: {e}") from e
        skills = raw.get("skills") if isinstance(raw, dict) else None
        if not isinstance(skills, dict):
            return {}
        return {k: v for k, v in skills.items() if isinstance(k, str) and isinstance(v, dict)}

    def _save(self, skills: dict[str, dict[str, Any]]) -> None:
        _write_json_atomic(self.path, {"lockfile_version": 1, "skills": {k: skills[k] for k in sorted(skills)}})

    def record(self, name: str, entry: dict[str, Any]) -> None:
        skills = self.load()
        skills[name] = entry
        self._save(skills)

    def remove(self, name: str) -> bool:
        skills = self.load()
        if skills.pop(name, None) is None:
            return False
        self._save(skills)
        return True


class SkillManager:
    """
    Glue between reference resolution, fetching and the installer.

    Each skill is handled on its own: a failure while resolving or fetching one
    reference never stops the rest of a batch.
    """

    def __init__(
        self,
        *,
        installer: Installer,
        fetcher: Fetcher,
        resolver: RefResolver | None = None,
        work_dir: Path,
        lock: LockFile | None = None,
        cache: RepoCache | None = None,
    ) -> None:
        self.installer = installer
        self.fetcher = fetcher
        self.resolver = resolver or RefResolver()
        self.work_dir = work_dir
        self.lock = lock
        self.cache = cache

    def _fetch(self, parsed: ParsedReference, repo_url: str, resolved: ResolvedRef, dest: Path) -> FetchedTree:
        if self.cache is not None:
            cached = self.cache.get(parsed, resolved)
            if cached is not None:
                return cached
        tree = self.fetcher.fetch(repo_url, resolved, dest)
        if self.cache is not None and tree.commit:
            try:
                self.cache.store(parsed, resolved.ref, tree)
            except OSError as e:
                logger.warning("Could not cache %s@%s: %s", parsed.source, resolved.ref, e)
        return tree

    def install(
        self,
        ref: str,
        agent_ids: Iterable[str],
        *,
        mode: InstallMode = "symlink",
        version: ParsedVersion | None = None,
    ) -> SkillInstallReport:
        """
        Install one reference for ``agent_ids``.

        ``version`` overrides the version written in ``ref``; the lock still
        records ``ref`` as the source.
        """
        agents = list(agent_ids)
        parsed = self.resolver.parse_ref(ref)
        repo_url = self.resolver.build_repo_url(parsed)
        resolved = self.fetcher.resolve_version(repo_url, version or parse_version(parsed.version))
        name = skill_name_for(parsed)
        logger.info("Installing %s (%s@%s) to %d agent(s)", name, repo_url, resolved.ref, len(agents))

        self.work_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix="skillpm-", dir=self.work_dir) as td:
            tree = self._fetch(parsed, repo_url, resolved, Path(td) / "repo")
            skill_dir = resolve_skill_dir(tree.path, parsed)
            results = self.installer.install_to_agents(skill_dir, name, agents, mode=mode)

        report = SkillInstallReport(
            ref=ref,
            name=sanitize_name(name),
            repo_url=repo_url,
            resolved_ref=resolved.ref,
            commit=tree.commit,
            results=results,
        )
        if self.lock is not None and any(r.success for r in results.values()):
            previous = self.lock.load().get(report.name or name, {})
            kept = [a for a in previous.get("agents", []) if isinstance(a, str) and a not in results]
            self.lock.record(
                report.name or name,
                {
                    "source": ref,
                    "resolved": repo_url,
                    "ref": resolved.ref,
                    "commit": tree.commit,
                    "agents": kept + [a for a, r in results.items() if r.success],
                    "installed_at": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
                },
            )
        return report

    def _install_isolated(
        self,
        ref: str,
        agents: list[str],
        *,
        mode: InstallMode,
        version: ParsedVersion | None = None,
    ) -> SkillInstallReport:
        try:
            return self.install(ref, agents, mode=mode, version=version)
        except (SkillpmError, OSError) as e:
            logger.warning("Skipping %s: %s", ref, e)
            return SkillInstallReport(ref=ref, error=str(e))

    def install_many(
        self,
        refs: Iterable[str],
        agent_ids: Iterable[str],
        *,
        mode: InstallMode = "symlink",
    ) -> list[SkillInstallReport]:
        agents = list(agent_ids)
        return [self._install_isolated(ref, agents, mode=mode) for ref in refs]

    def _locked(self) -> dict[str, dict[str, Any]]:
        if self.lock is None:
            raise SkillpmError("No lock file configured")
        return self.lock.load()

    def _entry_agents(self, entry: dict[str, Any], agent_ids: Iterable[str] | None) -> list[str]:
        if agent_ids is not None:
            return list(agent_ids)
        return [a for a in entry.get("agents", []) if isinstance(a, str)]

    def install_all(
        self,
        agent_ids: Iterable[str] | None = None,
        *,
        mode: InstallMode = "symlink",
    ) -> list[SkillInstallReport]:
        """Reinstall every locked skill at its locked ref (default: for the agents it was locked for)."""
        reports: list[SkillInstallReport] = []
        for name, entry in sorted(self._locked().items()):
            source = entry.get("source")
            if not isinstance(source, str):
                reports.append(SkillInstallReport(ref=name, name=name, error="Lock entry has no source"))
                continue
            agents = self._entry_agents(entry, agent_ids)
            reports.append(self._install_isolated(source, agents, mode=mode, version=_locked_version(entry)))
        return reports

    def update(
        self,
        name: str | None = None,
        agent_ids: Iterable[str] | None = None,
        *,
        mode: InstallMode = "symlink",
    ) -> list[SkillInstallReport]:
        """Re-resolve locked skills from their source references and reinstall them."""
        locked = self._locked()
        if name is not None:
            key = sanitize_name(name)
            if key not in locked:
                raise SkillpmError(f"Skill {name!r} is not in the lock file")
            locked = {key: locked[key]}

        reports: list[SkillInstallReport] = []
        for skill, entry in sorted(locked.items()):
            source = entry.get("source")
            if not isinstance(source, str):
                reports.append(SkillInstallReport(ref=skill, name=skill, error="Lock entry has no source"))
                continue
            reports.append(self._install_isolated(source, self._entry_agents(entry, agent_ids), mode=mode))
        return reports

    def check_outdated(self) -> list[OutdatedInfo]:
        infos: list[OutdatedInfo] = []
        for name, entry in sorted(self._locked().items()):
            current = entry.get("ref") if isinstance(entry.get("ref"), str) else UNKNOWN
            try:
                parsed = self.resolver.parse_ref(str(entry.get("source", "")))
                repo_url = self.resolver.build_repo_url(parsed)
                latest = self.fetcher.resolve_version(repo_url, parse_version("latest"))
            except (SkillpmError, OSError) as e:
                logger.debug("Could not check %s: %s", name, e)
                infos.append(OutdatedInfo(name=name, current=current, latest=UNKNOWN, update_available=False))
                continue
            changed = current != latest.ref
            commit = entry.get("commit")
            if not changed and latest.commit and isinstance(commit, str):
                changed = commit != latest.commit
            infos.append(
                OutdatedInfo(
                    name=name,
                    current=current,
                    latest=latest.ref,
                    update_available=current != UNKNOWN and changed,
                )
            )
        return infos

    def uninstall(self, name: str, agent_ids: Iterable[str]) -> dict[str, bool]:
        agents = list(agent_ids)
        results = self.installer.uninstall_from_agents(name, agents)
        if self.lock is not None:
            key = sanitize_name(name)
            entry = self.lock.load().get(key)
            remaining = [a for a in (entry or {}).get("agents", []) if isinstance(a, str) and a not in agents]
            if entry is not None and remaining:
                self.lock.record(key, {**entry, "agents": remaining})
            else:
                self.lock.remove(key)
        return results
