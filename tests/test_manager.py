import json
import tempfile
import unittest
from pathlib import Path

from unittest.mock import patch

from skillpm.agents import default_agents
from skillpm.cache import COMMIT_FILENAME, RepoCache
from skillpm.errors import FetchError, SkillpmError
from skillpm.fetch import FetchedTree, ResolvedRef
from skillpm.installer import Installer
from skillpm.manager import LockFile, OutdatedInfo, SkillManager, skill_name_for
from skillpm.refs import ParsedVersion, parse_ref


class _FakeFetcher:
    """Serves a canned multi-skill repository for any URL."""

    def __init__(self, *, fail_for: set[str] | None = None, denied: set[str] | None = None) -> None:
        self.fail_for = fail_for or set()
        self.denied = denied or set()
        self.latest = ResolvedRef(ref="v1.0.0", commit="a" * 40)
        self.resolved: list[tuple[str, ParsedVersion]] = []
        self.fetched: list[tuple[str, ResolvedRef]] = []

    def resolve_version(self, repo_url: str, version: ParsedVersion) -> ResolvedRef:
        self.resolved.append((repo_url, version))
        if repo_url in self.fail_for:
            raise FetchError(f"Failed to clone repository: {repo_url}")
        if version.kind == "latest":
            return self.latest
        return ResolvedRef(ref=version.value, commit=version.value if version.kind == "commit" else None)

    def fetch(self, repo_url: str, resolved: ResolvedRef, dest: Path) -> FetchedTree:
        self.fetched.append((repo_url, resolved))
        if repo_url in self.denied:
            raise PermissionError(13, "Permission denied", str(dest))
        for name, description in (("pdf", "PDF tools"), ("docx", "Word tools")):
            skill = dest / name
            skill.mkdir(parents=True)
            (skill / "SKILL.md").write_text(f"---\nname: {name}\ndescription: {description}\n---\n", encoding="utf-8")
        return FetchedTree(path=dest, commit=resolved.commit or "a" * 40)


class ManagerTestCase(unittest.TestCase):
    def setUp(self) -> None:
        td = tempfile.TemporaryDirectory()
        self.addCleanup(td.cleanup)
        self.root = Path(td.name).resolve()
        self.project = self.root / "project"
        self.project.mkdir()
        self.fetcher = _FakeFetcher(
            fail_for={"https://github.com/acme/broken"},
            denied={"https://github.com/acme/locked"},
        )
        self.installer = Installer(
            agents=default_agents(self.root / "home"),
            cwd=self.project,
            home=self.root / "home",
        )
        self.lock = LockFile(self.project / "skills.lock")
        self.manager = SkillManager(
            installer=self.installer,
            fetcher=self.fetcher,
            work_dir=self.root / "cache" / "work",
            lock=self.lock,
        )


class TestSkillNames(unittest.TestCase):
    def test_name_precedence(self) -> None:
        self.assertEqual(skill_name_for(parse_ref("acme/skills/packages/pdf#other")), "other")
        self.assertEqual(skill_name_for(parse_ref("acme/skills/packages/pdf")), "pdf")
        self.assertEqual(skill_name_for(parse_ref("acme/pdf-skill")), "pdf-skill")


class TestInstall(ManagerTestCase):
    def test_install_sub_path(self) -> None:
        report = self.manager.install("acme/skills/pdf@v1.0.0", ["claude-code", "codex"])

        self.assertTrue(report.success)
        self.assertEqual(report.name, "pdf")
        self.assertEqual(report.repo_url, "https://github.com/acme/skills")
        self.assertEqual(report.resolved_ref, "v1.0.0")
        self.assertEqual(report.commit, "a" * 40)
        self.assertEqual(self.fetcher.resolved[0][1].kind, "exact")
        self.assertTrue((self.project / ".claude" / "skills" / "pdf" / "SKILL.md").is_file())
        self.assertTrue((self.project / ".codex" / "skills" / "pdf" / "SKILL.md").is_file())
        # The fetched working tree is discarded once installed.
        self.assertEqual(list((self.root / "cache" / "work").iterdir()), [])

    def test_install_by_fragment_records_lock(self) -> None:
        self.manager.install("acme/skills@latest#docx", ["codex"])

        entries = json.loads((self.project / "skills.lock").read_text(encoding="utf-8"))
        self.assertEqual(entries["lockfile_version"], 1)
        entry = entries["skills"]["docx"]
        self.assertEqual(entry["source"], "acme/skills@latest#docx")
        self.assertEqual(entry["resolved"], "https://github.com/acme/skills")
        self.assertEqual(entry["ref"], "v1.0.0")
        self.assertEqual(entry["commit"], "a" * 40)
        self.assertEqual(entry["agents"], ["codex"])
        self.assertTrue(entry["installed_at"].endswith("Z"))

    def test_failed_agents_are_not_recorded(self) -> None:
        report = self.manager.install("acme/skills#pdf", ["codex", "bogus"])
        self.assertFalse(report.success)
        self.assertFalse(report.results["bogus"].success)
        self.assertEqual(self.lock.load()["pdf"]["agents"], ["codex"])

    def test_nothing_recorded_when_every_agent_fails(self) -> None:
        self.manager.install("acme/skills#pdf", ["bogus"])
        self.assertEqual(self.lock.load(), {})

    def test_install_many_continues_after_errors(self) -> None:
        reports = self.manager.install_many(
            ["acme/broken", "acme/skills#missing", "acme/skills#pdf"],
            ["codex"],
        )
        self.assertEqual([r.success for r in reports], [False, False, True])
        self.assertIn("acme/broken", reports[0].error)
        self.assertIn("not found", reports[1].error)
        self.assertEqual(reports[2].name, "pdf")
        self.assertEqual(sorted(self.lock.load()), ["pdf"])

    def test_install_many_survives_filesystem_errors(self) -> None:
        reports = self.manager.install_many(["acme/locked", "acme/skills#pdf"], ["codex"])

        self.assertFalse(reports[0].success)
        self.assertIn("Permission denied", reports[0].error)
        self.assertTrue(reports[1].success)
        self.assertTrue(self.installer.is_installed("pdf", "codex"))

    def test_lock_keeps_agents_from_earlier_installs(self) -> None:
        self.manager.install("acme/skills#pdf", ["codex"])
        self.manager.install("acme/skills#pdf", ["claude-code"])
        self.assertEqual(self.lock.load()["pdf"]["agents"], ["codex", "claude-code"])


class TestUninstall(ManagerTestCase):
    def test_uninstall_removes_links_and_lock_entry(self) -> None:
        self.manager.install("acme/skills#pdf", ["claude-code", "codex"])
        results = self.manager.uninstall("pdf", ["claude-code", "codex", "cursor"])

        self.assertEqual(results, {"claude-code": True, "codex": True, "cursor": False})
        self.assertFalse(self.installer.is_installed_in_canonical("pdf"))
        self.assertEqual(self.lock.load(), {})

    def test_partial_uninstall_keeps_lock_entry(self) -> None:
        self.manager.install("acme/skills#pdf", ["claude-code", "codex"])
        results = self.manager.uninstall("pdf", ["codex"])

        self.assertEqual(results, {"codex": True})
        self.assertTrue(self.installer.is_installed("pdf", "claude-code"))
        self.assertEqual(self.lock.load()["pdf"]["agents"], ["claude-code"])


class TestLockWorkflows(ManagerTestCase):
    def test_install_all_uses_locked_ref_and_agents(self) -> None:
        self.manager.install("acme/skills#pdf", ["codex"])
        self.installer.uninstall_from_agents("pdf", ["codex"])

        (report,) = self.manager.install_all()

        self.assertTrue(report.success)
        self.assertEqual(list(report.results), ["codex"])
        self.assertEqual(self.fetcher.resolved[-1][1], ParsedVersion(kind="exact", value="main", raw="main"))
        self.assertTrue(self.installer.is_installed("pdf", "codex"))

    def test_install_all_pins_commits(self) -> None:
        sha = "c" * 40
        self.manager.install(f"acme/skills@commit:{sha}#pdf", ["codex"])

        self.manager.install_all(["claude-code"])

        self.assertEqual(self.fetcher.resolved[-1][1].kind, "commit")
        self.assertEqual(self.fetcher.fetched[-1][1], ResolvedRef(ref=sha, commit=sha))
        self.assertTrue(self.installer.is_installed("pdf", "claude-code"))

    def test_update_re_resolves_source(self) -> None:
        self.manager.install("acme/skills@latest#pdf", ["codex"])
        self.fetcher.latest = ResolvedRef(ref="v1.1.0", commit="b" * 40)

        (report,) = self.manager.update("pdf")

        self.assertTrue(report.success)
        self.assertEqual(report.resolved_ref, "v1.1.0")
        entry = self.lock.load()["pdf"]
        self.assertEqual((entry["ref"], entry["commit"]), ("v1.1.0", "b" * 40))
        self.assertEqual(entry["source"], "acme/skills@latest#pdf")

    def test_update_unknown_skill(self) -> None:
        with self.assertRaises(SkillpmError):
            self.manager.update("nope")

    def test_lock_is_required(self) -> None:
        manager = SkillManager(installer=self.installer, fetcher=self.fetcher, work_dir=self.root / "work")
        with self.assertRaises(SkillpmError):
            manager.update()
        with self.assertRaises(SkillpmError):
            manager.check_outdated()

    def test_check_outdated(self) -> None:
        self.manager.install("acme/skills@latest#pdf", ["codex"])
        self.manager.install("acme/skills#docx", ["codex"])
        self.lock.record("ghost", {"source": "acme/broken", "ref": "v0.1.0"})

        self.assertEqual(
            self.manager.check_outdated(),
            [
                OutdatedInfo(name="docx", current="main", latest="v1.0.0", update_available=True),
                OutdatedInfo(name="ghost", current="v0.1.0", latest="unknown", update_available=False),
                OutdatedInfo(name="pdf", current="v1.0.0", latest="v1.0.0", update_available=False),
            ],
        )

        self.fetcher.latest = ResolvedRef(ref="v1.0.0", commit="d" * 40)
        pdf = [i for i in self.manager.check_outdated() if i.name == "pdf"][0]
        self.assertTrue(pdf.update_available)


class TestRepoCacheReuse(ManagerTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.cache = RepoCache(self.root / "cache" / "repos")
        self.manager.cache = self.cache

    def test_resolved_commit_is_served_from_cache(self) -> None:
        first = self.manager.install("acme/skills@latest", ["codex"])
        second = self.manager.install("acme/skills@latest", ["codex"])

        self.assertEqual(len(self.fetcher.fetched), 1)
        self.assertEqual(second.commit, first.commit)
        snapshot = self.cache.snapshot_dir(parse_ref("acme/skills"), "v1.0.0")
        self.assertEqual((snapshot / COMMIT_FILENAME).read_text(encoding="utf-8").strip(), "a" * 40)
        canonical = self.installer.get_canonical_path("skills")
        self.assertTrue((canonical / "pdf" / "SKILL.md").is_file())
        self.assertFalse((canonical / COMMIT_FILENAME).exists())

    def test_moved_tag_and_branches_are_fetched_again(self) -> None:
        self.manager.install("acme/skills@latest#pdf", ["codex"])
        self.fetcher.latest = ResolvedRef(ref="v1.0.0", commit="e" * 40)
        self.manager.install("acme/skills@latest#pdf", ["codex"])
        self.manager.install("acme/skills#pdf", ["codex"])
        self.manager.install("acme/skills#pdf", ["codex"])
        self.assertEqual(len(self.fetcher.fetched), 4)

    def test_cache_write_failure_does_not_fail_install(self) -> None:
        with patch.object(RepoCache, "store", side_effect=OSError("disk full")):
            report = self.manager.install("acme/skills@latest#pdf", ["codex"])
        self.assertTrue(report.success)

    def test_stats_and_clear(self) -> None:
        self.manager.install("acme/skills@latest#pdf", ["codex"])
        stats = self.cache.stats()
        self.assertEqual((stats.repos, stats.snapshots, stats.registries), (1, 1, ["github"]))
        self.cache.clear()
        self.assertFalse(self.cache.root.exists())


class TestLockFile(unittest.TestCase):
    def test_record_and_remove(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            lock = LockFile(Path(td) / "skills.lock")
            self.assertEqual(lock.load(), {})
            lock.record("b", {"source": "x/b"})
            lock.record("a", {"source": "x/a"})
            raw = json.loads(lock.path.read_text(encoding="utf-8"))
            self.assertEqual(list(raw["skills"]), ["a", "b"])
            self.assertTrue(lock.remove("a"))
            self.assertFalse(lock.remove("a"))
            self.assertEqual(lock.load(), {"b": {"source": "x/b"}})


if __name__ == "__main__":
    unittest.main()
