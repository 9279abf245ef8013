"""Tests for the sync pipeline (lock store, planner, executor)."""

import json
import os
import tempfile
from pathlib import Path

import pytest
import yaml

from agentsync.errors import ConfigurationError, LockFileError
from agentsync.registry.loader import load_registry
from agentsync.sync.executor import ItemOutcome, RunStatus, execute_plan, sync_project
from agentsync.sync.hashing import hash_bytes
from agentsync.sync.lock import LockFile, LockStore
from agentsync.sync.planner import SyncAction, plan_project
from agentsync.sync.settings_merge import MANAGED_KEY


class Workspace:
    """A source registry plus one consumer project on disk."""

    def __init__(self, tmpdir: str):
        self.root = Path(tmpdir)
        self.source = self.root / "source"
        self.project_dir = self.root / "project"
        self.registry_path = self.source / "registry.yaml"
        self.projects_path = self.source / "projects.yaml"
        self.source.mkdir()
        self.project_dir.mkdir()
        self.artifacts: dict = {}
        self.bundles: dict = {"core": {"includes": []}}
        self.project: dict = {"path": str(self.project_dir), "bundle": "core"}

    def add(self, identifier: str, content: str, in_bundle: bool = True, **fields) -> None:
        category, name = identifier.split("/")
        source_path = fields.pop("source_path", f"{category}/{name}.md")
        path = self.source / source_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        entry = {
            "version": fields.pop("version", "1.0.0"),
            "hash": fields.pop("hash", hash_bytes(content.encode())),
            "source_path": source_path,
        }
        entry.update(fields)
        self.artifacts.setdefault(category, {})[name] = entry
        if in_bundle:
            self.bundles["core"]["includes"].append(identifier)

    def edit(self, identifier: str, content: str, version: str = "1.1.0", hash: str = "") -> None:
        category, name = identifier.split("/")
        entry = self.artifacts[category][name]
        (self.source / entry["source_path"]).write_text(content)
        entry["version"] = version
        entry["hash"] = hash or hash_bytes(content.encode())

    def load(self):
        self.registry_path.write_text(
            yaml.safe_dump({"version": "r1", "artifacts": self.artifacts, "bundles": self.bundles})
        )
        self.projects_path.write_text(yaml.safe_dump({"projects": {"p1": self.project}}))
        return load_registry(self.registry_path, self.projects_path)

    def sync(self, force: bool = False, dry_run: bool = False):
        return sync_project(self.load(), "p1", force=force, dry_run=dry_run)

    def plan(self):
        registry = self.load()
        project = registry.projects["p1"]
        return plan_project(project, registry, LockStore(project.path).load())

    def lock(self) -> LockFile:
        return LockStore(self.project_dir).load()

    def target(self, relative: str) -> Path:
        return self.project_dir / relative


def _actions(plan) -> dict:
    return {item.identifier: item.action for item in plan.items}


# --- Lock store ---


def test_lock_store_empty_when_missing():
    with tempfile.TemporaryDirectory() as tmpdir:
        lock = LockStore(tmpdir, "p").load()
        assert lock.project == "p"
        assert lock.installed == {}


def test_lock_store_round_trip():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = LockStore(tmpdir, "p")
        lock = LockFile(project="p", registry_version="r1")
        lock.record("agents/foo", version="1.0.0", hash="aaaa1111")
        store.save(lock)

        data = json.loads(store.lock_path.read_text())
        assert data["lock_version"] == 1
        assert data["installed"]["agents/foo"]["hash"] == "aaaa1111"
        assert data["installed"]["agents/foo"]["installed_at"]

        loaded = store.load()
        assert loaded.registry_version == "r1"
        assert loaded.get("agents/foo").version == "1.0.0"
        assert loaded.get("agents/foo").live_baseline == "aaaa1111"


def test_lock_store_malformed():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = LockStore(tmpdir)
        store.lock_path.parent.mkdir(parents=True)
        store.lock_path.write_text("{not json")
        with pytest.raises(LockFileError):
            store.load()


# --- End-to-end ---


def test_install_then_update_scenario():
    with tempfile.TemporaryDirectory() as tmpdir:
        ws = Workspace(tmpdir)
        ws.add("agents/foo", "foo v1\n", version="v1", hash="aaaa1111")

        plan, report = ws.sync()
        assert _actions(plan) == {"agents/foo": SyncAction.INSTALL}
        assert report.status == RunStatus.SUCCESS
        assert ws.target("agents/foo.md").read_text() == "foo v1\n"
        entry = ws.lock().get("agents/foo")
        assert (entry.version, entry.hash) == ("v1", "aaaa1111")

        ws.edit("agents/foo", "foo v2\n", version="v2", hash="bbbb2222")
        plan, report = ws.sync()
        assert _actions(plan) == {"agents/foo": SyncAction.UPDATE}
        assert report.ok
        assert ws.target("agents/foo.md").read_text() == "foo v2\n"
        assert ws.lock().get("agents/foo").hash == "bbbb2222"


def test_second_sync_is_up_to_date_and_writes_nothing():
    with tempfile.TemporaryDirectory() as tmpdir:
        ws = Workspace(tmpdir)
        ws.add("agents/foo", "foo\n")
        ws.add("templates/pr", "pr\n", target_path=".github/pr.md")
        ws.sync()

        lock_path = LockStore(ws.project_dir).lock_path
        mtimes = {p: p.stat().st_mtime_ns for p in (lock_path, ws.target(".github/pr.md"))}

        plan, report = ws.sync()
        assert set(_actions(plan).values()) == {SyncAction.UP_TO_DATE}
        assert not report.lock_written
        assert {p: p.stat().st_mtime_ns for p in mtimes} == mtimes


def test_target_path_used():
    with tempfile.TemporaryDirectory() as tmpdir:
        ws = Workspace(tmpdir)
        ws.add("templates/pr", "pr\n", target_path=".github/pr.md")
        ws.sync()
        assert ws.target(".github/pr.md").read_text() == "pr\n"
        assert not ws.target("templates/pr.md").exists()


# --- Planner decision table ---


def test_unexpected_existing_file_is_conflict():
    with tempfile.TemporaryDirectory() as tmpdir:
        ws = Workspace(tmpdir)
        ws.add("agents/foo", "foo\n")
        ws.target("agents").mkdir()
        ws.target("agents/foo.md").write_text("hand written\n")

        assert _actions(ws.plan()) == {"agents/foo": SyncAction.CONFLICT}

        _, report = ws.sync()
        assert report.by_outcome(ItemOutcome.UNRESOLVED)
        assert report.status == RunStatus.PARTIAL
        assert ws.target("agents/foo.md").read_text() == "hand written\n"


def test_local_edit_is_locally_modified():
    with tempfile.TemporaryDirectory() as tmpdir:
        ws = Workspace(tmpdir)
        ws.add("agents/foo", "foo\n")
        ws.sync()
        ws.target("agents/foo.md").write_text("tweaked\n")

        assert _actions(ws.plan()) == {"agents/foo": SyncAction.LOCALLY_MODIFIED}
        _, report = ws.sync()
        assert not report.ok
        assert ws.target("agents/foo.md").read_text() == "tweaked\n"


def test_both_sides_changed_is_conflict():
    with tempfile.TemporaryDirectory() as tmpdir:
        ws = Workspace(tmpdir)
        ws.add("agents/foo", "foo\n")
        ws.sync()
        ws.target("agents/foo.md").write_text("tweaked\n")
        ws.edit("agents/foo", "foo v2\n")

        assert _actions(ws.plan()) == {"agents/foo": SyncAction.CONFLICT}


def test_deleted_installed_file_is_locally_modified():
    with tempfile.TemporaryDirectory() as tmpdir:
        ws = Workspace(tmpdir)
        ws.add("agents/foo", "foo\n")
        ws.sync()
        ws.target("agents/foo.md").unlink()

        assert _actions(ws.plan()) == {"agents/foo": SyncAction.LOCALLY_MODIFIED}


def test_force_applies_local_modifications_and_conflicts():
    with tempfile.TemporaryDirectory() as tmpdir:
        ws = Workspace(tmpdir)
        ws.add("agents/foo", "foo\n")
        ws.add("agents/bar", "bar\n")
        ws.sync()
        ws.target("agents/foo.md").write_text("tweaked\n")
        ws.target("agents/bar.md").write_text("tweaked\n")
        ws.edit("agents/bar", "bar v2\n")

        _, report = ws.sync(force=True)
        assert report.ok
        assert {r.identifier for r in report.by_outcome(ItemOutcome.APPLIED)} == {
            "agents/bar",
            "agents/foo",
        }
        assert ws.target("agents/foo.md").read_text() == "foo\n"
        assert ws.target("agents/bar.md").read_text() == "bar v2\n"


def test_protected_path_never_written_even_with_force():
    with tempfile.TemporaryDirectory() as tmpdir:
        ws = Workspace(tmpdir)
        ws.add("docs/claude", "managed\n", target_path="CLAUDE.md")
        ws.project["protected"] = ["CLAUDE.md"]
        ws.target("CLAUDE.md").write_text("project owned\n")

        assert _actions(ws.plan()) == {"docs/claude": SyncAction.PROTECTED_SKIP}

        for force in (False, True):
            _, report = ws.sync(force=force)
            assert report.ok
            assert ws.target("CLAUDE.md").read_text() == "project owned\n"
        assert ws.lock().get("docs/claude") is None


def test_scalar_protected_path_is_rejected_before_any_write():
    with tempfile.TemporaryDirectory() as tmpdir:
        ws = Workspace(tmpdir)
        ws.add("docs/claude", "managed\n", target_path="CLAUDE.md")
        ws.project["protected"] = "CLAUDE.md"
        ws.target("CLAUDE.md").write_text("project owned\n")

        with pytest.raises(ConfigurationError):
            ws.sync(force=True)
        assert ws.target("CLAUDE.md").read_text() == "project owned\n"


def test_protected_overrides_missing_file():
    with tempfile.TemporaryDirectory() as tmpdir:
        ws = Workspace(tmpdir)
        ws.add("docs/claude", "managed\n", target_path="CLAUDE.md")
        ws.project["protected"] = ["./CLAUDE.md"]

        ws.sync(force=True)
        assert not ws.target("CLAUDE.md").exists()


def test_prune_removes_lock_entry_but_keeps_file():
    with tempfile.TemporaryDirectory() as tmpdir:
        ws = Workspace(tmpdir)
        ws.add("agents/foo", "foo\n")
        ws.add("agents/bar", "bar\n")
        ws.sync()

        ws.project["excluded"] = ["agents/bar"]
        plan, report = ws.sync()
        assert _actions(plan) == {
            "agents/bar": SyncAction.PRUNE,
            "agents/foo": SyncAction.UP_TO_DATE,
        }
        assert report.by_outcome(ItemOutcome.PRUNED)[0].identifier == "agents/bar"
        assert ws.lock().get("agents/bar") is None
        assert ws.target("agents/bar.md").exists()


def test_plan_is_sorted_and_complete():
    with tempfile.TemporaryDirectory() as tmpdir:
        ws = Workspace(tmpdir)
        for identifier in ("skills/zeta", "agents/beta", "agents/alpha"):
            ws.add(identifier, identifier + "\n")
        ws.add("templates/extra", "extra\n", in_bundle=False)
        ws.project["additional"] = ["templates/extra"]

        plan = ws.plan()
        assert [i.identifier for i in plan.items] == [
            "agents/alpha",
            "agents/beta",
            "skills/zeta",
            "templates/extra",
        ]


# --- Executor behaviour ---


def test_dry_run_writes_nothing():
    with tempfile.TemporaryDirectory() as tmpdir:
        ws = Workspace(tmpdir)
        ws.add("agents/foo", "foo\n")

        plan, report = ws.sync(dry_run=True)
        assert report.by_outcome(ItemOutcome.PLANNED)[0].identifier == "agents/foo"
        assert not ws.target("agents/foo.md").exists()
        assert not LockStore(ws.project_dir).exists()


@pytest.mark.skipif(os.name == "nt" or os.geteuid() == 0, reason="needs POSIX permissions")
def test_io_failure_is_recorded_and_retried():
    with tempfile.TemporaryDirectory() as tmpdir:
        ws = Workspace(tmpdir)
        ws.add("agents/foo", "foo\n")
        ws.add("skills/bar", "bar\n")
        blocked = ws.target("skills")
        blocked.mkdir()
        blocked.chmod(0o500)
        try:
            _, report = ws.sync()
            assert report.status == RunStatus.PARTIAL
            failed = report.by_outcome(ItemOutcome.FAILED)
            assert [r.identifier for r in failed] == ["skills/bar"]
            assert failed[0].error
            assert ws.lock().get("agents/foo") is not None
            assert ws.lock().get("skills/bar") is None
        finally:
            blocked.chmod(0o700)

        plan, report = ws.sync()
        assert _actions(plan) == {
            "agents/foo": SyncAction.UP_TO_DATE,
            "skills/bar": SyncAction.INSTALL,
        }
        assert report.ok


def test_rerun_after_partial_failure_retries_only_failed_items():
    with tempfile.TemporaryDirectory() as tmpdir:
        ws = Workspace(tmpdir)
        ws.add("agents/foo", "foo\n")
        ws.add("skills/bar", "bar\n")
        source = ws.source / "skills" / "bar.md"
        source.unlink()

        _, report = ws.sync()
        assert report.status == RunStatus.PARTIAL
        assert [r.identifier for r in report.by_outcome(ItemOutcome.FAILED)] == ["skills/bar"]

        source.write_text("bar\n")
        plan, report = ws.sync()
        assert _actions(plan) == {
            "agents/foo": SyncAction.UP_TO_DATE,
            "skills/bar": SyncAction.INSTALL,
        }
        assert [r.identifier for r in report.by_outcome(ItemOutcome.APPLIED)] == ["skills/bar"]
        assert report.ok


def test_missing_source_file_fails_only_that_item():
    with tempfile.TemporaryDirectory() as tmpdir:
        ws = Workspace(tmpdir)
        ws.add("agents/foo", "foo\n")
        ws.add("agents/gone", "gone\n")
        registry = ws.load()
        (ws.source / "agents" / "gone.md").unlink()

        project = registry.projects["p1"]
        store = LockStore(project.path, project.name)
        lock = store.load()
        plan = plan_project(project, registry, lock)
        report = execute_plan(plan, project, registry, lock, lock_store=store)

        assert report.status == RunStatus.PARTIAL
        assert [r.identifier for r in report.by_outcome(ItemOutcome.FAILED)] == ["agents/gone"]
        assert [r.identifier for r in report.by_outcome(ItemOutcome.APPLIED)] == ["agents/foo"]


def test_all_failures_is_failure_status():
    with tempfile.TemporaryDirectory() as tmpdir:
        ws = Workspace(tmpdir)
        ws.add("agents/gone", "gone\n")
        registry = ws.load()
        (ws.source / "agents" / "gone.md").unlink()

        _, report = sync_project(registry, "p1")
        assert report.status == RunStatus.FAILURE


# --- Settings merge through sync ---


def _settings(*commands: str) -> str:
    hooks = [{"type": "command", "command": c} for c in commands]
    return json.dumps({"hooks": {"PreToolUse": [{"matcher": "Bash", "hooks": hooks}]}})


def test_settings_merge_through_sync():
    with tempfile.TemporaryDirectory() as tmpdir:
        ws = Workspace(tmpdir)
        ws.add(
            "settings/hooks",
            _settings("guard"),
            source_path="settings/settings.json",
            target_path=".claude/settings.json",
            merge_strategy="settings_merge",
        )
        settings_path = ws.target(".claude/settings.json")
        settings_path.parent.mkdir()
        settings_path.write_text(_settings("project-hook"))

        # No managed entries yet, so the existing file is merged into
        plan, report = ws.sync()
        assert _actions(plan) == {"settings/hooks": SyncAction.INSTALL}
        assert report.ok

        written = json.loads(settings_path.read_text())
        hooks = written["hooks"]["PreToolUse"][0]["hooks"]
        assert [h["command"] for h in hooks] == ["project-hook", "guard"]
        assert hooks[1][MANAGED_KEY] is True

        # Project adds its own hook: still up to date
        written["hooks"]["PreToolUse"][0]["hooks"].insert(0, {"type": "command", "command": "mine"})
        settings_path.write_text(json.dumps(written))
        assert _actions(ws.plan()) == {"settings/hooks": SyncAction.UP_TO_DATE}

        # Registry change updates only the managed entries
        ws.edit("settings/hooks", _settings("guard-v2"))
        plan, report = ws.sync()
        assert _actions(plan) == {"settings/hooks": SyncAction.UPDATE}
        hooks = json.loads(settings_path.read_text())["hooks"]["PreToolUse"][0]["hooks"]
        assert [h["command"] for h in hooks] == ["mine", "project-hook", "guard-v2"]

        plan, _ = ws.sync()
        assert _actions(plan) == {"settings/hooks": SyncAction.UP_TO_DATE}


def test_settings_managed_entry_edit_is_local_modification():
    with tempfile.TemporaryDirectory() as tmpdir:
        ws = Workspace(tmpdir)
        ws.add(
            "settings/hooks",
            _settings("guard"),
            source_path="settings/settings.json",
            target_path=".claude/settings.json",
            merge_strategy="settings_merge",
        )
        ws.sync()

        settings_path = ws.target(".claude/settings.json")
        written = json.loads(settings_path.read_text())
        written["hooks"]["PreToolUse"][0]["hooks"][0]["command"] = "edited"
        settings_path.write_text(json.dumps(written))

        assert _actions(ws.plan()) == {"settings/hooks": SyncAction.LOCALLY_MODIFIED}


def test_misshapen_settings_document_does_not_abort_the_run():
    with tempfile.TemporaryDirectory() as tmpdir:
        ws = Workspace(tmpdir)
        ws.add("agents/foo", "foo\n")
        ws.add(
            "settings/hooks",
            _settings("guard"),
            source_path="settings/settings.json",
            target_path=".claude/settings.json",
            merge_strategy="settings_merge",
        )
        settings_path = ws.target(".claude/settings.json")
        settings_path.parent.mkdir()
        settings_path.write_text(json.dumps({"hooks": []}))

        plan, report = ws.sync(force=True)
        assert _actions(plan)["settings/hooks"] == SyncAction.CONFLICT
        assert [r.identifier for r in report.by_outcome(ItemOutcome.FAILED)] == ["settings/hooks"]
        assert [r.identifier for r in report.by_outcome(ItemOutcome.APPLIED)] == ["agents/foo"]
        assert report.status == RunStatus.PARTIAL
        assert ws.lock().get("agents/foo") is not None
        assert json.loads(settings_path.read_text()) == {"hooks": []}

        settings_path.write_text(json.dumps({"hooks": {}}))
        plan, report = ws.sync()
        assert _actions(plan) == {
            "agents/foo": SyncAction.UP_TO_DATE,
            "settings/hooks": SyncAction.INSTALL,
        }
        assert report.ok
