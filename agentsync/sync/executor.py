"""Sync executor — apply a plan to a project and record the outcome.

Items are applied one at a time in identifier order. A failure on one
artifact is recorded and the run moves on; the lock document is rewritten
once at the end with whatever succeeded, so a rerun only retries what failed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from agentsync.registry.models import Artifact, MergeStrategy, Project, Registry
from agentsync.sync.hashing import hash_bytes
from agentsync.sync.lock import LockFile, LockStore, utc_now
from agentsync.sync.planner import PlanItem, SyncAction, SyncPlan, plan_project
from agentsync.sync.settings_merge import apply_settings_merge

logger = logging.getLogger(__name__)


class ItemOutcome(Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    UNRESOLVED = "unresolved"
    PRUNED = "pruned"
    FAILED = "failed"
    PLANNED = "planned"  # Dry run: would have been applied


class RunStatus(Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"


@dataclass
class ItemResult:
    """Outcome of one plan item."""

    identifier: str
    action: SyncAction
    outcome: ItemOutcome
    target_path: str = ""
    detail: str = ""
    error: str = ""


@dataclass
class SyncReport:
    """Per-item results plus the overall status of a run."""

    project: str
    results: list[ItemResult] = field(default_factory=list)
    forced: bool = False
    dry_run: bool = False
    lock_written: bool = False
    lock_error: str = ""

    def by_outcome(self, outcome: ItemOutcome) -> list[ItemResult]:
        return [r for r in self.results if r.outcome == outcome]

    @property
    def status(self) -> RunStatus:
        attempted = [
            r for r in self.results if r.outcome in (ItemOutcome.APPLIED, ItemOutcome.FAILED)
        ]
        failed = self.by_outcome(ItemOutcome.FAILED)
        if (failed and len(failed) == len(attempted)) or (
            self.lock_error and not self.by_outcome(ItemOutcome.APPLIED)
        ):
            return RunStatus.FAILURE
        if failed or self.lock_error or self.by_outcome(ItemOutcome.UNRESOLVED):
            return RunStatus.PARTIAL
        return RunStatus.SUCCESS

    @property
    def ok(self) -> bool:
        return self.status == RunStatus.SUCCESS

    def summary(self) -> str:
        counts: dict[str, int] = {}
        for r in self.results:
            counts[r.outcome.value] = counts.get(r.outcome.value, 0) + 1
        parts = ", ".join(f"{n} {k}" for k, n in sorted(counts.items())) or "nothing to do"
        return f"{self.project}: {self.status.value} ({parts})"


def _atomic_write_bytes(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    try:
        tmp.write_bytes(data)
        tmp.replace(path)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise


def install_artifact(artifact: Artifact, registry: Registry, project: Project) -> str:
    """Write one artifact into a project. Returns the installed fingerprint."""
    source = registry.source_file(artifact)
    target = project.path / artifact.target

    if artifact.merge_strategy is MergeStrategy.SETTINGS_MERGE:
        return apply_settings_merge(source, target)

    data = source.read_bytes()
    _atomic_write_bytes(target, data)
    return hash_bytes(data)


def execute_plan(
    plan: SyncPlan,
    project: Project,
    registry: Registry,
    lock: LockFile,
    lock_store: LockStore | None = None,
    force: bool = False,
    dry_run: bool = False,
) -> SyncReport:
    """Apply every item of a plan and return per-item results.

    ``force`` applies locally modified and conflicting items as updates.
    Protected targets are never written, forced or not.
    """
    report = SyncReport(project=project.name, forced=force, dry_run=dry_run)

    try:
        for item in sorted(plan.items, key=lambda i: i.identifier):
            report.results.append(_apply_item(item, project, registry, lock, force, dry_run))
    finally:
        # Whatever was applied before an unexpected error is still recorded
        if lock_store is not None and any(
            r.outcome in (ItemOutcome.APPLIED, ItemOutcome.PRUNED) for r in report.results
        ):
            _save_lock(report, lock, lock_store, project, registry)

    logger.info(report.summary())
    return report


def _save_lock(
    report: SyncReport,
    lock: LockFile,
    lock_store: LockStore,
    project: Project,
    registry: Registry,
) -> None:
    lock.project = project.name
    lock.registry_version = registry.version
    lock.synced_at = utc_now()
    try:
        lock_store.save(lock)
        report.lock_written = True
    except OSError as e:
        logger.error("Could not write lock file for %s: %s", project.name, e)
        report.lock_error = str(e)


def _apply_item(
    item: PlanItem,
    project: Project,
    registry: Registry,
    lock: LockFile,
    force: bool,
    dry_run: bool,
) -> ItemResult:
    result = ItemResult(
        identifier=item.identifier,
        action=item.action,
        outcome=ItemOutcome.SKIPPED,
        target_path=item.target_path,
        detail=item.reason,
    )

    if item.action in (SyncAction.UP_TO_DATE, SyncAction.PROTECTED_SKIP):
        return result

    if item.action is SyncAction.PRUNE:
        if dry_run:
            result.outcome = ItemOutcome.PLANNED
        else:
            lock.remove(item.identifier)
            result.outcome = ItemOutcome.PRUNED
        return result

    if not item.needs_write(force):
        result.outcome = ItemOutcome.UNRESOLVED
        return result

    if project.is_protected(item.target_path):
        result.detail = f"{item.target_path} is protected"
        return result

    if dry_run:
        result.outcome = ItemOutcome.PLANNED
        return result

    artifact = registry.lookup(item.identifier)
    try:
        installed_hash = install_artifact(artifact, registry, project)
    except (OSError, ValueError) as e:
        logger.error("Failed to sync %s into %s: %s", item.identifier, project.name, e)
        result.outcome = ItemOutcome.FAILED
        result.error = str(e)
        return result

    lock.record(
        item.identifier,
        version=artifact.version,
        hash=artifact.hash,
        installed_hash=installed_hash,
    )
    result.outcome = ItemOutcome.APPLIED
    logger.debug("%s %s -> %s", item.action.value, item.identifier, item.target_path)
    return result


def sync_project(
    registry: Registry,
    project_name: str,
    force: bool = False,
    dry_run: bool = False,
) -> tuple[SyncPlan, SyncReport]:
    """Resolve, plan and execute a sync for one project."""
    project = registry.get_project(project_name)
    store = LockStore(project.path, project.name)
    lock = store.load()
    plan = plan_project(project, registry, lock)
    report = execute_plan(
        plan,
        project,
        registry,
        lock,
        lock_store=store,
        force=force,
        dry_run=dry_run,
    )
    return plan, report
