from __future__ import annotations

import argparse
import json
import logging
import sys
import textwrap
from dataclasses import asdict
from pathlib import Path
from typing import Any

from ._version import __version__
from .agents import PathExistsProbe, all_agent_ids, default_agents, detect_installed_agents, is_valid_agent
from .cache import RepoCache
from .config import Config, apply_env, load_config
from .errors import SkillpmError, UnknownAgentError
from .fetch import ArchiveFetcher, GitFetcher
from .installer import Installer, InstallResult
from .manager import LOCK_FILENAME, LockFile, SkillInstallReport, SkillManager
from .refs import parse_version


def _print_table(rows: list[list[str]]) -> None:
    if not rows:
        return
    widths = [max(len(r[i]) for r in rows) for i in range(len(rows[0]))]
    for row in rows:
        print("  ".join(cell.ljust(widths[i]) for i, cell in enumerate(row)).rstrip())


def _load_cfg(args: argparse.Namespace) -> Config:
    return apply_env(load_config(getattr(args, "config", None)))


def _check_agents(agents: list[str], table) -> list[str]:
    unknown = [a for a in agents if not is_valid_agent(table, a)]
    if unknown:
        raise UnknownAgentError(f"Unknown agent(s): {', '.join(unknown)}. Known agents: {', '.join(table)}")
    return agents


def _target_agents(args: argparse.Namespace, cfg: Config, table) -> list[str]:
    return _check_agents(list(getattr(args, "agent", None) or cfg.target_agents), table)


def _explicit_agents(args: argparse.Namespace, table) -> list[str] | None:
    # None keeps the agents recorded in the lock file
    agents = getattr(args, "agent", None)
    return _check_agents(list(agents), table) if agents else None


def _make_installer(args: argparse.Namespace) -> Installer:
    return Installer(agents=default_agents(), cwd=Path.cwd(), global_scope=bool(getattr(args, "global_scope", False)))


def _lock_for(installer: Installer) -> LockFile:
    base = installer.home / ".agents" if installer.global_scope else installer.cwd
    return LockFile(base / LOCK_FILENAME)


def _make_manager(args: argparse.Namespace, cfg: Config, installer: Installer) -> SkillManager:
    fetcher = ArchiveFetcher(timeout_s=cfg.timeout_s) if getattr(args, "archive", False) else GitFetcher()
    return SkillManager(
        installer=installer,
        fetcher=fetcher,
        resolver=cfg.resolver(),
        work_dir=cfg.cache_path / "work",
        lock=_lock_for(installer),
        cache=RepoCache(cfg.cache_path / "repos"),
    )


def _close_fetcher(manager: SkillManager) -> None:
    if isinstance(manager.fetcher, ArchiveFetcher):
        manager.fetcher.close()


def _result_payload(result: InstallResult) -> dict[str, Any]:
    payload = asdict(result)
    payload["path"] = str(result.path)
    payload["canonical_path"] = str(result.canonical_path) if result.canonical_path else None
    return payload


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="skillpm",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Install agent skills from git repositories into coding agents.",
        epilog=textwrap.dedent(
            """\
            Reference examples:
              owner/repo                      default registry, default branch
              github:owner/repo@v1.0.0#pdf    pick the "pdf" skill of a multi-skill repo
              git@host:org/skills.git/pdf@latest
              https://github.com/org/repo/tree/main/skills/pdf

            Environment variables:
              SKILLPM_CONFIG_PATH, SKILLPM_DEFAULT_REGISTRY, SKILLPM_CACHE_DIR
            """
        ),
    )
    p.add_argument("--version", action="version", version=f"skillpm {__version__}")
    p.add_argument("--config", help="Path to config.json (overrides SKILLPM_CONFIG_PATH)")
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    sub = p.add_subparsers(dest="cmd", required=True)

    def _add_scope(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("-a", "--agent", action="append", help="Target agent id (repeatable; default from config)")
        parser.add_argument("-g", "--global", dest="global_scope", action="store_true", help="Use home-level directories")

    def _add_fetch_options(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--mode", choices=("symlink", "copy"), help="Install mode (default from config)")
        parser.add_argument(
            "--archive",
            action="store_true",
            help="Download zip snapshots over HTTPS instead of cloning (GitHub/GitLab only)",
        )
        parser.add_argument("--json", action="store_true", help="Output JSON")

    install = sub.add_parser("install", aliases=["i"], help="Install skills into agent directories")
    install.add_argument("refs", nargs="*", help="Skill references (none: reinstall everything in skills.lock)")
    _add_scope(install)
    _add_fetch_options(install)

    update = sub.add_parser("update", aliases=["up"], help="Re-resolve locked skills and reinstall them")
    update.add_argument("name", nargs="?", help="Skill name (default: every locked skill)")
    _add_scope(update)
    _add_fetch_options(update)

    outdated = sub.add_parser("outdated", help="Compare locked refs with the latest available ones")
    outdated.add_argument("-g", "--global", dest="global_scope", action="store_true", help="Use the global lock file")
    outdated.add_argument("--json", action="store_true", help="Output JSON")

    cache = sub.add_parser("cache", help="Inspect or clear the repository cache")
    cache.add_argument("action", choices=("path", "stats", "clear"))
    cache.add_argument("--json", action="store_true", help="Output JSON")

    uninstall = sub.add_parser("uninstall", aliases=["remove", "rm"], help="Remove a skill from agent directories")
    uninstall.add_argument("name", help="Installed skill name")
    _add_scope(uninstall)
    uninstall.add_argument("--json", action="store_true", help="Output JSON")

    ls = sub.add_parser("list", aliases=["ls"], help="List skills installed for agents")
    _add_scope(ls)
    ls.add_argument("--json", action="store_true", help="Output JSON")

    resolve = sub.add_parser("resolve", help="Show how a reference is interpreted (no network)")
    resolve.add_argument("ref")
    resolve.add_argument("--json", action="store_true", help="Output JSON")

    agents = sub.add_parser("agents", help="List supported agents")
    agents.add_argument("--detected", action="store_true", help="Only agents found on this machine")
    agents.add_argument("--json", action="store_true", help="Output JSON")

    return p


def _print_reports(reports: list[SkillInstallReport], *, as_json: bool) -> int:
    if as_json:
        payload = [
            {
                "ref": r.ref,
                "name": r.name,
                "repo_url": r.repo_url,
                "resolved_ref": r.resolved_ref,
                "commit": r.commit,
                "error": r.error,
                "results": {a: _result_payload(res) for a, res in r.results.items()},
            }
            for r in reports
        ]
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0 if all(r.success for r in reports) else 1

    for report in reports:
        if report.error:
            print(f"error: {report.ref}: {report.error}", file=sys.stderr)
            continue
        print(f"{report.name} ({report.resolved_ref}{' @ ' + report.commit[:7] if report.commit else ''})")
        rows = [["AGENT", "STATUS", "PATH"]]
        for agent_id, res in report.results.items():
            if not res.success:
                status = f"failed: {res.error}"
            elif res.symlink_failed:
                status = "copied (symlink failed)"
            else:
                status = "linked" if res.mode == "symlink" else "copied"
            rows.append([agent_id, status, str(res.path)])
        _print_table(rows)
    return 0 if all(r.success for r in reports) else 1


def cmd_install(args: argparse.Namespace) -> int:
    cfg = _load_cfg(args)
    installer = _make_installer(args)
    mode = args.mode or cfg.install_mode
    if args.refs:
        agent_ids = _target_agents(args, cfg, installer.agents)
    else:
        agent_ids = _explicit_agents(args, installer.agents)
    manager = _make_manager(args, cfg, installer)
    try:
        if args.refs:
            reports = manager.install_many(args.refs, agent_ids, mode=mode)
        else:
            reports = manager.install_all(agent_ids, mode=mode)
    finally:
        _close_fetcher(manager)

    if not reports and not args.json:
        print(f"Nothing to install: {manager.lock.path} lists no skills.")
        return 0
    return _print_reports(reports, as_json=args.json)


def cmd_update(args: argparse.Namespace) -> int:
    cfg = _load_cfg(args)
    installer = _make_installer(args)
    agent_ids = _explicit_agents(args, installer.agents)
    manager = _make_manager(args, cfg, installer)
    try:
        reports = manager.update(args.name, agent_ids, mode=args.mode or cfg.install_mode)
    finally:
        _close_fetcher(manager)
    return _print_reports(reports, as_json=args.json)


def cmd_outdated(args: argparse.Namespace) -> int:
    cfg = _load_cfg(args)
    manager = _make_manager(args, cfg, _make_installer(args))
    infos = manager.check_outdated()

    if args.json:
        print(json.dumps([asdict(i) for i in infos], indent=2, sort_keys=True))
        return 0
    if not infos:
        print("No locked skills.")
        return 0
    rows = [["SKILL", "CURRENT", "LATEST", "STATUS"]]
    for info in infos:
        rows.append([info.name, info.current, info.latest, "outdated" if info.update_available else "up to date"])
    _print_table(rows)
    return 0


def cmd_cache(args: argparse.Namespace) -> int:
    cfg = _load_cfg(args)
    cache = RepoCache(cfg.cache_path / "repos")
    if args.action == "clear":
        cache.clear()
        payload: dict[str, Any] = {"path": str(cache.root), "cleared": True}
    elif args.action == "stats":
        payload = {"path": str(cache.root), **asdict(cache.stats())}
    else:
        payload = {"path": str(cache.root)}

    if args.json:
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0
    if args.action == "clear":
        print(f"Cleared {cache.root}")
    elif args.action == "stats":
        print(f"{payload['repos']} repo(s), {payload['snapshots']} snapshot(s) in {cache.root}")
    else:
        print(cache.root)
    return 0


def cmd_uninstall(args: argparse.Namespace) -> int:
    cfg = _load_cfg(args)
    installer = _make_installer(args)
    agent_ids = _target_agents(args, cfg, installer.agents)
    manager = _make_manager(args, cfg, installer)
    results = manager.uninstall(args.name, agent_ids)

    if args.json:
        print(json.dumps({"name": args.name, "removed": results}, indent=2, sort_keys=True))
        return 0
    for agent_id, removed in results.items():
        print(f"{agent_id}: {'removed' if removed else 'not installed'}")
    return 0


def cmd_list(args: argparse.Namespace) -> int:
    cfg = _load_cfg(args)
    installer = _make_installer(args)
    agent_ids = _target_agents(args, cfg, installer.agents)
    listing = {agent_id: installer.list_installed_skills(agent_id) for agent_id in agent_ids}

    if args.json:
        print(json.dumps(listing, indent=2, sort_keys=True))
        return 0
    rows = [["AGENT", "SKILL"]]
    for agent_id, names in listing.items():
        for name in names:
            rows.append([agent_id, name])
    if len(rows) == 1:
        print("No skills installed.")
        return 0
    _print_table(rows)
    return 0


def cmd_resolve(args: argparse.Namespace) -> int:
    cfg = _load_cfg(args)
    resolver = cfg.resolver()
    parsed = resolver.parse_ref(args.ref)
    version = parse_version(parsed.version)
    payload = {
        "parsed": asdict(parsed),
        "version": asdict(version),
        "repo_url": resolver.build_repo_url(parsed),
    }
    if args.json:
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0
    rows = [["FIELD", "VALUE"]]
    for key in ("registry", "owner", "repo", "sub_path", "version", "skill_name", "git_url"):
        value = payload["parsed"][key]
        rows.append([key, "" if value is None else str(value)])
    rows.append(["version_kind", version.kind])
    rows.append(["version_value", version.value])
    rows.append(["repo_url", payload["repo_url"]])
    _print_table(rows)
    return 0


def cmd_agents(args: argparse.Namespace) -> int:
    table = default_agents()
    ids = detect_installed_agents(table, PathExistsProbe()) if args.detected else all_agent_ids(table)
    if args.json:
        payload = [
            {
                "id": agent_id,
                "display_name": table[agent_id].display_name,
                "skills_dir": table[agent_id].skills_dir,
                "global_skills_dir": str(table[agent_id].global_skills_dir),
            }
            for agent_id in ids
        ]
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0
    rows = [["ID", "NAME", "PROJECT DIR", "GLOBAL DIR"]]
    for agent_id in ids:
        spec = table[agent_id]
        rows.append([agent_id, spec.display_name, spec.skills_dir, str(spec.global_skills_dir)])
    _print_table(rows)
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")
    try:
        if args.cmd in ("install", "i"):
            return cmd_install(args)
        if args.cmd in ("update", "up"):
            return cmd_update(args)
        if args.cmd == "outdated":
            return cmd_outdated(args)
        if args.cmd == "cache":
            return cmd_cache(args)
        if args.cmd in ("uninstall", "remove", "rm"):
            return cmd_uninstall(args)
        if args.cmd in ("list", "ls"):
            return cmd_list(args)
        if args.cmd == "resolve":
            return cmd_resolve(args)
        if args.cmd == "agents":
            return cmd_agents(args)
        raise AssertionError("unreachable")
    except SkillpmError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
