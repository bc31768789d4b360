from __future__ import annotations

import io
import logging
import os
import re
import shutil
import subprocess
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol
from urllib.parse import quote, urlsplit

import httpx

from .errors import FetchError, GitCommandError
from .paths import is_path_safe
from .refs import ParsedVersion
from .versions import compare_versions, is_prerelease, is_version_tag, strip_tag_prefix, version_satisfies

logger = logging.getLogger(__name__)

# Accept unknown host keys once, still refuse changed ones; never prompt.
GIT_SSH_COMMAND = "ssh -o StrictHostKeyChecking=accept-new -o BatchMode=yes"

_SYMREF_RE = re.compile(r"ref: refs/heads/(\S+)\s+HEAD")
_SSH_URL_RE = re.compile(r"^git@([^:/]+):(.+)$")


@dataclass(frozen=True)
class ResolvedRef:
    ref: str
    commit: str | None = None


@dataclass(frozen=True)
class FetchedTree:
    path: Path
    commit: str | None = None


@dataclass(frozen=True)
class RemoteTag:
    name: str
    commit: str


class Fetcher(Protocol):
    def resolve_version(self, repo_url: str, version: ParsedVersion) -> ResolvedRef:
        ...

    def fetch(self, repo_url: str, resolved: ResolvedRef, dest: Path) -> FetchedTree:
        ...


def git_env() -> dict[str, str]:
    env = dict(os.environ)
    env["GIT_SSH_COMMAND"] = GIT_SSH_COMMAND
    env["GIT_TERMINAL_PROMPT"] = "0"
    return env


def parse_ls_remote_tags(output: str) -> list[RemoteTag]:
    tags: list[RemoteTag] = []
    for line in output.splitlines():
        commit, _, ref = line.strip().partition("\t")
        if not commit or not ref.startswith("refs/tags/"):
            continue
        name = ref[len("refs/tags/") :]
        if name.endswith("^{}"):
            continue
        tags.append(RemoteTag(name=name, commit=commit))
    return tags


def pick_latest_tag(tags: list[RemoteTag]) -> RemoteTag | None:
    best: RemoteTag | None = None
    for tag in tags:
        if not is_version_tag(tag.name):
            continue
        if best is None or compare_versions(tag.name, best.name) > 0:
            best = tag
    return best


def pick_range_tag(tags: list[RemoteTag], spec: str) -> RemoteTag | None:
    # Prereleases only match ranges that name a prerelease themselves.
    allow_pre = "-" in spec
    matching = [
        t
        for t in tags
        if is_version_tag(t.name)
        and (allow_pre or not is_prerelease(t.name))
        and version_satisfies(strip_tag_prefix(t.name), spec)
    ]
    return pick_latest_tag(matching)


class GitFetcher:
    """Resolves versions with ``git ls-remote`` and fetches with ``git clone``."""

    def __init__(self, *, git: str = "git") -> None:
        self.git = git

    def _run(self, args: list[str], *, repo_url: str, action: str, cwd: Path | None = None) -> str:
        logger.debug("git %s", " ".join(args))
        try:
            proc = subprocess.run(
                [self.git, *args],
                cwd=cwd,
                env=git_env(),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as e:
            raise FetchError(f"git executable not found: {self.git}") from e
        if proc.returncode != 0:
            raise GitCommandError(repo_url, proc.stderr or "", action=action)
        return proc.stdout.strip()

    def list_remote_tags(self, repo_url: str) -> list[RemoteTag]:
        out = self._run(["ls-remote", "--tags", "--refs", repo_url], repo_url=repo_url, action="list tags of")
        return parse_ls_remote_tags(out)

    def default_branch(self, repo_url: str) -> str:
        try:
            out = self._run(["ls-remote", "--symref", repo_url, "HEAD"], repo_url=repo_url, action="query")
        except GitCommandError:
            return "main"
        m = _SYMREF_RE.search(out)
        return m.group(1) if m else "main"

    def resolve_version(self, repo_url: str, version: ParsedVersion) -> ResolvedRef:
        if version.kind in ("exact", "branch"):
            return ResolvedRef(ref=version.value)
        if version.kind == "commit":
            return ResolvedRef(ref=version.value, commit=version.value)
        if version.kind == "latest":
            tag = pick_latest_tag(self.list_remote_tags(repo_url))
            if tag is None:
                return ResolvedRef(ref=self.default_branch(repo_url))
            return ResolvedRef(ref=tag.name, commit=tag.commit)
        if version.kind == "range":
            tag = pick_range_tag(self.list_remote_tags(repo_url), version.value)
            if tag is None:
                raise FetchError(f"No version found matching {version.raw} for {repo_url}")
            return ResolvedRef(ref=tag.name, commit=tag.commit)
        raise FetchError(f"Unknown version kind: {version.kind}")

    def fetch(self, repo_url: str, resolved: ResolvedRef, dest: Path) -> FetchedTree:
        dest.parent.mkdir(parents=True, exist_ok=True)
        if resolved.commit is not None and resolved.commit == resolved.ref:
            # Arbitrary commits cannot be shallow-cloned by name.
            self._run(["clone", repo_url, str(dest)], repo_url=repo_url, action="clone")
            self._run(["checkout", resolved.commit], repo_url=repo_url, action="checkout", cwd=dest)
        else:
            self._run(
                ["clone", "--depth", "1", "--branch", resolved.ref, repo_url, str(dest)],
                repo_url=repo_url,
                action="clone",
            )
        return FetchedTree(path=dest, commit=self.current_commit(dest))

    def current_commit(self, repo_dir: Path) -> str:
        return self._run(["rev-parse", "HEAD"], repo_url=str(repo_dir), action="inspect", cwd=repo_dir)


def safe_extract_zip(zip_bytes: bytes, dest: Path) -> None:
    dest.mkdir(parents=True, exist_ok=True)
    base = dest.resolve()
    with zipfile.ZipFile(io.BytesIO(zip_bytes), "r") as zf:
        for info in zf.infolist():
            name = info.filename
            if not name:
                continue
            if name.startswith("/"):
                raise FetchError(f"Archive contains an absolute path entry: {name!r}")
            target = (base / name).resolve()
            if not is_path_safe(base, target):
                raise FetchError(f"Archive contains an invalid path entry: {name!r}")

            if info.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                continue

            target.parent.mkdir(parents=True, exist_ok=True)
            with zf.open(info, "r") as src, target.open("wb") as out:
                shutil.copyfileobj(src, out)


def _https_repo_base(repo_url: str) -> str:
    m = _SSH_URL_RE.match(repo_url)
    if m:
        repo_url = f"https://{m.group(1)}/{m.group(2)}"
    parts = urlsplit(repo_url)
    if parts.scheme not in ("http", "https", "git") or not parts.netloc:
        raise FetchError(f"Cannot build an archive URL for {repo_url}")
    path = parts.path.rstrip("/")
    if path.endswith(".git"):
        path = path[: -len(".git")]
    host = parts.netloc.rsplit("@", 1)[-1]
    scheme = "https" if parts.scheme == "git" else parts.scheme
    return f"{scheme}://{host}{path}"


def archive_url(repo_url: str, ref: str) -> str:
    base = _https_repo_base(repo_url)
    host = urlsplit(base).hostname or ""
    quoted = quote(ref, safe="")
    if host == "github.com" or host.endswith(".github.com"):
        return f"{base}/archive/{quoted}.zip"
    if "gitlab" in host:
        repo = base.rsplit("/", 1)[-1]
        return f"{base}/-/archive/{quoted}/{repo}-{quoted}.zip"
    raise FetchError(f"Archive downloads are only supported for GitHub and GitLab hosts: {repo_url}")


class ArchiveFetcher:
    """
    Downloads a zip snapshot of a ref over HTTPS instead of cloning.

    Version resolution (tags, default branch) still goes through ``git ls-remote``.
    """

    def __init__(
        self,
        *,
        timeout_s: float = 30.0,
        git: GitFetcher | None = None,
        http: httpx.Client | None = None,
    ) -> None:
        self._git = git or GitFetcher()
        self._http = http or httpx.Client(timeout=timeout_s, follow_redirects=True)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "ArchiveFetcher":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def resolve_version(self, repo_url: str, version: ParsedVersion) -> ResolvedRef:
        return self._git.resolve_version(repo_url, version)

    def fetch(self, repo_url: str, resolved: ResolvedRef, dest: Path) -> FetchedTree:
        url = archive_url(repo_url, resolved.commit or resolved.ref)
        logger.debug("Downloading %s", url)
        try:
            resp = self._http.get(url)
        except httpx.HTTPError as e:
            raise FetchError(f"Download failed: {url}: {e}") from e
        if resp.status_code >= 400:
            raise FetchError(f"Download failed: {url}: HTTP {resp.status_code}")

        try:
            safe_extract_zip(resp.content, dest)
        except zipfile.BadZipFile as e:
            raise FetchError(f"Downloaded archive is not a zip file: {url}") from e

        # Hosting services wrap the snapshot in a single <repo>-<ref>/ folder.
        children = list(dest.iterdir())
        if len(children) == 1 and children[0].is_dir():
            inner = children[0]
            for item in list(inner.iterdir()):
                shutil.move(str(item), str(dest / item.name))
            inner.rmdir()
        return FetchedTree(path=dest, commit=resolved.commit)
