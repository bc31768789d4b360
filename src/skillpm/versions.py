from __future__ import annotations

import re
from functools import cmp_to_key
from typing import Iterable

_COMPARATOR_RE = re.compile(r"^(>=|<=|>|<|==|=)?\s*v?([0-9][0-9A-Za-z.\-+]*)$")


def strip_tag_prefix(tag: str) -> str:
    tag = tag.strip()
    if tag[:1] in ("v", "V") and tag[1:2].isdigit():
        return tag[1:]
    return tag


def _split_version(version: str) -> tuple[tuple[int, ...], tuple[str, ...] | None]:
    raw = strip_tag_prefix(version)
    if not raw:
        raise ValueError("empty version")
    raw = raw.split("+", 1)[0]  # build metadata never affects ordering
    if "-" in raw:
        core, pre = raw.split("-", 1)
        pre_parts: tuple[str, ...] | None = tuple(p for p in pre.split(".") if p)
    else:
        core = raw
        pre_parts = None
    pieces = core.split(".")
    if any(not p.isdigit() for p in pieces):
        raise ValueError(f"Unsupported version format: {version!r}")
    nums = [int(p) for p in pieces]
    while len(nums) < 3:
        nums.append(0)
    return tuple(nums), pre_parts


def is_version_tag(tag: str) -> bool:
    try:
        _split_version(tag)
    except ValueError:
        return False
    return True


def is_prerelease(tag: str) -> bool:
    try:
        return _split_version(tag)[1] is not None
    except ValueError:
        return False


def _compare_prerelease(pa: tuple[str, ...], pb: tuple[str, ...]) -> int:
    for x, y in zip(pa, pb):
        if x == y:
            continue
        if x.isdigit() and y.isdigit():
            return -1 if int(x) < int(y) else 1
        if x.isdigit():
            return -1
        if y.isdigit():
            return 1
        return -1 if x < y else 1
    if len(pa) == len(pb):
        return 0
    return -1 if len(pa) < len(pb) else 1


def compare_versions(a: str, b: str) -> int:
    """Three-way comparison of two semver-ish tags (``v`` prefix allowed)."""
    try:
        ma, pa = _split_version(a)
        mb, pb = _split_version(b)
    except ValueError:
        return (a > b) - (a < b)
    if ma != mb:
        return -1 if ma < mb else 1
    if pa is None and pb is None:
        return 0
    if pa is None:
        return 1
    if pb is None:
        return -1
    return _compare_prerelease(pa, pb)


def _range_bounds(spec: str) -> list[str]:
    op, base = spec[0], spec[1:].strip()
    major, minor, patch = _split_version(base)[0][:3]
    lower = f">={major}.{minor}.{patch}"
    if op == "~":
        return [lower, f"<{major}.{minor + 1}.0"]
    if major > 0:
        upper = f"<{major + 1}.0.0"
    elif minor > 0:
        upper = f"<0.{minor + 1}.0"
    else:
        upper = f"<0.0.{patch + 1}"
    return [lower, upper]


def _expand(specifier: str) -> list[str]:
    out: list[str] = []
    for token in specifier.replace(",", " ").split():
        if token.startswith(("^", "~")):
            out.extend(_range_bounds(token))
        else:
            out.append(token)
    return out


def version_satisfies(version: str, specifier: str) -> bool:
    try:
        tokens = _expand(specifier)
    except ValueError:
        return False
    for token in tokens:
        if token.lower() in ("latest", "*"):
            continue
        m = _COMPARATOR_RE.match(token)
        if not m:
            return False
        op = m.group(1) or "="
        cmp = compare_versions(version, m.group(2))
        ok = {
            "=": cmp == 0,
            "==": cmp == 0,
            ">": cmp > 0,
            ">=": cmp >= 0,
            "<": cmp < 0,
            "<=": cmp <= 0,
        }[op]
        if not ok:
            return False
    return True


def sort_versions(tags: Iterable[str], *, reverse: bool = False) -> list[str]:
    return sorted(tags, key=cmp_to_key(compare_versions), reverse=reverse)
