"""
Fetched repository cache.

Layout under the cache root::

    <registry>/<owner...>/<repo>/<ref>/       repository snapshot (without .git)
    <registry>/<owner...>/<repo>/<ref>/.skillpm-commit

A snapshot is only reused when the commit a ref resolves to is known and equals
the recorded one, so moving branches are always fetched again.
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote

from .errors import SkillpmError
from .fetch import FetchedTree, ResolvedRef
from .paths import is_path_safe, sanitize_name
from .refs import ParsedReference

logger = logging.getLogger(__name__)

COMMIT_FILENAME = ".skillpm-commit"


@dataclass(frozen=True)
class CacheStats:
    repos: int
    snapshots: int
    registries: list[str]


def _remove_tree(path: Path) -> None:
    if os.path.islink(path) or path.is_file():
        path.unlink()
    elif path.is_dir():
        shutil.rmtree(path)


class RepoCache:
    def __init__(self, root: Path) -> None:
        self.root = root.expanduser()

    def repo_dir(self, parsed: ParsedReference) -> Path:
        parts = [parsed.registry, *parsed.owner.split("/"), parsed.repo]
        path = self.root.joinpath(*(sanitize_name(p) for p in parts if p))
        if not is_path_safe(self.root, path):
            raise SkillpmError(f"Refusing cache path outside {self.root}: {path}")
        return path

    def snapshot_dir(self, parsed: ParsedReference, ref: str) -> Path:
        return self.repo_dir(parsed) / sanitize_name(quote(ref, safe=""))

    def get(self, parsed: ParsedReference, resolved: ResolvedRef) -> FetchedTree | None:
        if not resolved.commit:
            return None
        path = self.snapshot_dir(parsed, resolved.ref)
        marker = path / COMMIT_FILENAME
        try:
            cached = marker.read_text(encoding="utf-8").strip()
        except OSError:
            return None
        if cached != resolved.commit:
            logger.debug("Cache for %s@%s is at %s, wanted %s", parsed.source, resolved.ref, cached, resolved.commit)
            return None
        logger.debug("Reusing cached %s@%s", parsed.source, resolved.ref)
        return FetchedTree(path=path, commit=cached)

    def store(self, parsed: ParsedReference, ref: str, tree: FetchedTree) -> FetchedTree:
        """Copy a fetched tree into the cache; requires ``tree.commit``."""
        if not tree.commit:
            raise SkillpmError(f"Cannot cache {parsed.source}@{ref} without a commit")
        path = self.snapshot_dir(parsed, ref)
        tmp = path.with_name(path.name + ".tmp")
        _remove_tree(tmp)
        path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copytree(tree.path, tmp, ignore=shutil.ignore_patterns(".git"), symlinks=True)
        (tmp / COMMIT_FILENAME).write_text(tree.commit + "\n", encoding="utf-8")
        _remove_tree(path)
        tmp.replace(path)
        return FetchedTree(path=path, commit=tree.commit)

    def clear(self, parsed: ParsedReference | None = None) -> None:
        target = self.repo_dir(parsed) if parsed is not None else self.root
        _remove_tree(target)

    def stats(self) -> CacheStats:
        if not self.root.is_dir():
            return CacheStats(repos=0, snapshots=0, registries=[])
        markers = list(self.root.rglob(COMMIT_FILENAME))
        repos = {m.parent.parent for m in markers}
        registries = sorted(p.name for p in self.root.iterdir() if p.is_dir())
        return CacheStats(repos=len(repos), snapshots=len(markers), registries=registries)
