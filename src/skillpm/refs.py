"""
Skill reference grammar.

Accepted forms (a trailing ``#skill-name`` fragment is allowed on all of them)::

    owner/repo[/sub/path][@version]
    <registry>:owner/repo[/sub/path][@version]
    owner/repo/tree/<branch>[/sub/path]           (web URL layout, no @version)
    git@host:group[/subgroup]/repo[.git][/sub/path][@version]
    https://host/group[/subgroup]/repo[.git][/sub/path][@version]
    https://host/owner/repo/(tree|blob|raw)/<branch>[/sub/path]
    git://host/owner/repo[.git][@version]

Version strings::

    v1.0.0 / 1.0.0-beta.1   exact tag
    latest                  newest tag (default branch when untagged)
    ^2.0.0 / ~1.2.3         semver range over tags
    branch:dev              branch
    commit:abc1234          commit
    (none)                  branch "main"
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Iterable, Mapping

from .errors import InvalidGitUrlError, InvalidReferenceError

DEFAULT_REGISTRY = "github"

WELL_KNOWN_REGISTRIES: Mapping[str, str] = {
    "github": "https://github.com",
    "gitlab": "https://gitlab.com",
}

WEB_URL_MARKERS = frozenset({"tree", "blob", "raw"})

VERSION_KINDS = ("exact", "latest", "range", "branch", "commit")

_REGISTRY_PREFIX_RE = re.compile(r"^([A-Za-z0-9.-]+):(.+)$")
_NAME_RE = re.compile(r"^[\w.-]+$")
_SSH_RE = re.compile(r"^git@([^:/\s]+):(.+)$")
_URL_RE = re.compile(r"^(https?|git)://([^/\s]+)/(.+)$")

RegistryProvider = Callable[[str], "str | None"]


@dataclass(frozen=True)
class ParsedReference:
    registry: str
    owner: str
    repo: str
    raw: str
    sub_path: str | None = None
    version: str | None = None
    skill_name: str | None = None
    git_url: str | None = None

    @property
    def source(self) -> str:
        """``registry:owner/repo[/sub_path]`` without version or fragment."""
        base = f"{self.registry}:{self.owner}/{self.repo}"
        return f"{base}/{self.sub_path}" if self.sub_path else base


@dataclass(frozen=True)
class ParsedVersion:
    kind: str
    value: str
    raw: str


def is_git_url(ref: str) -> bool:
    return ref.startswith(("git@", "git://", "http://", "https://"))


def _split_fragment(ref: str) -> tuple[str, str | None]:
    body, sep, fragment = ref.partition("#")
    fragment = fragment.strip()
    return body.strip(), (fragment if sep and fragment else None)


def _rsplit_unescaped_at(value: str, *, start: int = 0) -> tuple[str, str | None]:
    """Split on the last ``@`` at or after ``start`` that is not escaped as ``\\@``."""
    idx = len(value)
    while True:
        idx = value.rfind("@", start, idx)
        if idx < 0:
            return value.replace("\\@", "@"), None
        if idx > 0 and value[idx - 1] == "\\":
            continue
        head = value[:idx].replace("\\@", "@")
        version = value[idx + 1 :].strip()
        return head, (version or None)


def _join_sub_path(segments: Iterable[str]) -> str | None:
    joined = "/".join(s for s in segments if s)
    return joined or None


def _web_marker_index(segments: list[str], *, first: int) -> int | None:
    for i in range(first, len(segments) - 1):
        if segments[i] in WEB_URL_MARKERS:
            return i
    return None


def parse_version(spec: str | None = None) -> ParsedVersion:
    if not spec:
        return ParsedVersion(kind="branch", value="main", raw="")
    if spec.startswith("branch:"):
        return ParsedVersion(kind="branch", value=spec[len("branch:") :], raw=spec)
    if spec.startswith("commit:"):
        return ParsedVersion(kind="commit", value=spec[len("commit:") :], raw=spec)
    if spec == "latest":
        return ParsedVersion(kind="latest", value="latest", raw=spec)
    if spec.startswith(("^", "~")):
        return ParsedVersion(kind="range", value=spec, raw=spec)
    return ParsedVersion(kind="exact", value=spec, raw=spec)


def _parse_git_url_ref(body: str, *, raw: str, skill_name: str | None) -> ParsedReference:
    ssh = _SSH_RE.match(body)
    if ssh:
        host, path = ssh.group(1), ssh.group(2)
        prefix = f"git@{host}:"
    else:
        m = _URL_RE.match(body)
        if not m:
            raise InvalidGitUrlError(
                f"Invalid Git URL: {raw}. Expected format: git@host:owner/repo.git or https://host/owner/repo.git"
            )
        scheme, host, path = m.group(1), m.group(2), m.group(3)
        prefix = f"{scheme}://{host}/"
        host = host.rsplit("@", 1)[-1]

    path, version = _rsplit_unescaped_at(path)
    explicit_version = version is not None

    git_idx = path.find(".git/")
    if git_idx < 0 and path.endswith(".git"):
        git_idx = len(path) - len(".git")

    if git_idx >= 0:
        repo_path = path[:git_idx]
        segments = [s for s in repo_path.split("/") if s]
        sub_path = _join_sub_path(path[git_idx + len(".git") :].split("/"))
    else:
        all_segments = [s for s in path.split("/") if s]
        marker = _web_marker_index(all_segments, first=2)
        if marker is None:
            segments = all_segments
            sub_path = None
        else:
            # GitLab spells web URLs as group/repo/-/tree/<branch>/...
            repo_end = marker - 1 if all_segments[marker - 1] == "-" else marker
            segments = all_segments[:repo_end]
            rest = all_segments[marker:]
            if explicit_version:
                sub_path = _join_sub_path(rest)
            else:
                version = f"branch:{rest[1]}"
                sub_path = _join_sub_path(rest[2:])

    if len(segments) < 2 or not all(_NAME_RE.match(s) for s in segments):
        raise InvalidGitUrlError(
            f"Invalid Git URL: {raw}. Expected format: git@host:owner/repo.git or https://host/owner/repo.git"
        )

    owner = "/".join(segments[:-1])
    repo = segments[-1]
    return ParsedReference(
        registry=host,
        owner=owner,
        repo=repo,
        raw=raw,
        sub_path=sub_path,
        version=version,
        skill_name=skill_name,
        git_url=f"{prefix}{owner}/{repo}.git",
    )


def _parse_shorthand_ref(body: str, *, raw: str, skill_name: str | None, default_registry: str) -> ParsedReference:
    registry = default_registry
    remaining = body
    m = _REGISTRY_PREFIX_RE.match(remaining)
    if m:
        registry, remaining = m.group(1), m.group(2)

    first_slash = remaining.find("/")
    if first_slash <= 0:
        raise InvalidReferenceError(f"Invalid skill reference: {raw}. Expected format: owner/repo[@version]")

    remaining, version = _rsplit_unescaped_at(remaining, start=first_slash)
    parts = remaining.strip("/").split("/")
    if len(parts) < 2:
        raise InvalidReferenceError(f"Invalid skill reference: {raw}. Expected format: owner/repo[@version]")

    owner, repo = parts[0], parts[1]
    if repo.endswith(".git") and len(repo) > len(".git"):
        repo = repo[: -len(".git")]
    if not _NAME_RE.match(owner) or not _NAME_RE.match(repo):
        raise InvalidReferenceError(
            f"Invalid skill reference: {raw}. Owner and repo may only contain letters, digits, '.', '_' and '-'."
        )

    rest = parts[2:]
    if version is None and len(rest) >= 2 and rest[0] in WEB_URL_MARKERS:
        version = f"branch:{rest[1]}"
        rest = rest[2:]

    return ParsedReference(
        registry=registry,
        owner=owner,
        repo=repo,
        raw=raw,
        sub_path=_join_sub_path(rest),
        version=version,
        skill_name=skill_name,
    )


def parse_ref(ref: str, *, default_registry: str = DEFAULT_REGISTRY) -> ParsedReference:
    raw = ref
    body, skill_name = _split_fragment(ref or "")
    if not body:
        raise InvalidReferenceError(f"Invalid skill reference: {raw!r}. Expected format: owner/repo[@version]")
    if is_git_url(body):
        return _parse_git_url_ref(body, raw=raw, skill_name=skill_name)
    return _parse_shorthand_ref(body, raw=raw, skill_name=skill_name, default_registry=default_registry)


def mapping_provider(registries: Mapping[str, str]) -> RegistryProvider:
    def _lookup(name: str) -> str | None:
        url = registries.get(name)
        return url.rstrip("/") if url else None

    return _lookup


class RefResolver:
    """
    Parses references and turns them into clone URLs.

    Registry names are looked up through an ordered chain: the optional
    ``registry_resolver`` override, then ``registries``, then the well-known
    hosts, and finally ``https://<name>``. A provider returning ``None`` passes
    the lookup on to the next one.
    """

    def __init__(
        self,
        *,
        default_registry: str = DEFAULT_REGISTRY,
        registries: Mapping[str, str] | None = None,
        registry_resolver: RegistryProvider | None = None,
    ) -> None:
        self.default_registry = default_registry
        providers: list[RegistryProvider] = []
        if registry_resolver is not None:
            providers.append(registry_resolver)
        providers.append(mapping_provider(dict(registries or {})))
        providers.append(mapping_provider(WELL_KNOWN_REGISTRIES))
        self._providers = tuple(providers)

    def get_registry_url(self, name: str) -> str:
        for provider in self._providers:
            url = provider(name)
            if url:
                return url
        return f"https://{name}"

    def parse_ref(self, ref: str) -> ParsedReference:
        return parse_ref(ref, default_registry=self.default_registry)

    def parse_version(self, spec: str | None = None) -> ParsedVersion:
        return parse_version(spec)

    def build_repo_url(self, parsed: ParsedReference) -> str:
        if parsed.git_url:
            return parsed.git_url
        return f"{self.get_registry_url(parsed.registry)}/{parsed.owner}/{parsed.repo}"
