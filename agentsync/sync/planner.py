"""Sync planner — classify each artifact into a sync action.

Three fingerprints drive the decision for every resolved artifact:

- R: the registry hash (current source)
- L: the lock hash (source as last installed)
- V: the live hash of the installed file, compared against what was written

Protected targets always plan as ``protected_skip``. Lock entries whose
artifact left the resolved set plan as ``prune``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from agentsync.registry.models import Artifact, MergeStrategy, Project, Registry
from agentsync.registry.resolver import resolved_set
from agentsync.sync.hashing import hash_file
from agentsync.sync.lock import LockFile
from agentsync.sync.settings_merge import managed_fingerprint, managed_projection, read_settings

logger = logging.getLogger(__name__)


class SyncAction(Enum):
    INSTALL = "install"
    UPDATE = "update"
    UP_TO_DATE = "up_to_date"
    LOCALLY_MODIFIED = "locally_modified"
    CONFLICT = "conflict"
    PROTECTED_SKIP = "protected_skip"
    PRUNE = "prune"


# Actions that need --force to be applied
FORCE_ACTIONS = {SyncAction.LOCALLY_MODIFIED, SyncAction.CONFLICT}
WRITE_ACTIONS = {SyncAction.INSTALL, SyncAction.UPDATE}


@dataclass
class PlanItem:
    """One artifact and what sync intends to do with it."""

    identifier: str
    action: SyncAction
    target_path: str = ""
    reason: str = ""
    registry_hash: str = ""
    lock_hash: str = ""
    live_hash: str | None = None

    def needs_write(self, force: bool = False) -> bool:
        return self.action in WRITE_ACTIONS or (force and self.action in FORCE_ACTIONS)


@dataclass
class SyncPlan:
    """Ordered plan for a single project."""

    project: str
    items: list[PlanItem] = field(default_factory=list)

    def by_action(self, action: SyncAction) -> list[PlanItem]:
        return [i for i in self.items if i.action == action]

    def counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for item in self.items:
            counts[item.action.value] = counts.get(item.action.value, 0) + 1
        return counts

    def unresolved(self, force: bool = False) -> list[PlanItem]:
        """Items a run with this force setting would leave unapplied."""
        if force:
            return []
        return [i for i in self.items if i.action in FORCE_ACTIONS]


def live_hash(artifact: Artifact, target_file: Path) -> str | None:
    """Fingerprint of the installed copy, or None if nothing is installed.

    For the settings document only the managed entries count, so hooks a
    project adds on its own never look like a local modification.
    """
    if not target_file.exists():
        return None
    if artifact.merge_strategy is MergeStrategy.SETTINGS_MERGE:
        try:
            return managed_fingerprint(read_settings(target_file))
        except (json.JSONDecodeError, ValueError):
            logger.warning("Unparseable settings document: %s", target_file)
    return hash_file(target_file)


def _has_foreign_content(artifact: Artifact, target_file: Path) -> bool:
    """Whether an unlocked target already holds content sync would clobber."""
    if not target_file.exists():
        return False
    if artifact.merge_strategy is MergeStrategy.SETTINGS_MERGE:
        try:
            return bool(managed_projection(read_settings(target_file)))
        except (json.JSONDecodeError, ValueError):
            return True
    return True


def classify(
    artifact: Artifact,
    project: Project,
    lock: LockFile,
) -> PlanItem:
    """Apply the decision table to a single resolved artifact."""
    identifier = artifact.identifier
    target = artifact.target
    item = PlanItem(identifier=identifier, action=SyncAction.UP_TO_DATE, target_path=target)
    item.registry_hash = artifact.hash

    if project.is_protected(target):
        item.action = SyncAction.PROTECTED_SKIP
        item.reason = f"{target} is protected"
        return item

    target_file = project.path / target
    entry = lock.get(identifier)

    if entry is None:
        if _has_foreign_content(artifact, target_file):
            item.live_hash = live_hash(artifact, target_file)
            item.action = SyncAction.CONFLICT
            item.reason = "target exists but was never installed by sync"
        else:
            item.action = SyncAction.INSTALL
            item.reason = "not installed"
        return item

    item.lock_hash = entry.hash
    item.live_hash = live_hash(artifact, target_file)
    live_matches = item.live_hash == entry.live_baseline
    registry_matches = artifact.hash == entry.hash

    if item.live_hash is None and registry_matches:
        # Installed file was deleted by hand
        item.action = SyncAction.LOCALLY_MODIFIED
        item.reason = "installed file is missing"
    elif live_matches and registry_matches:
        item.action = SyncAction.UP_TO_DATE
    elif live_matches:
        item.action = SyncAction.UPDATE
        item.reason = f"{entry.version} -> {artifact.version}"
    elif registry_matches:
        item.action = SyncAction.LOCALLY_MODIFIED
        item.reason = "installed copy was edited"
    else:
        item.action = SyncAction.CONFLICT
        item.reason = "installed copy was edited and the registry changed"
    return item


def plan_project(project: Project, registry: Registry, lock: LockFile) -> SyncPlan:
    """Build the full plan for a project, sorted by identifier."""
    wanted = resolved_set(project, registry)
    items = [classify(registry.lookup(i), project, lock) for i in wanted]

    for identifier in set(lock.installed) - wanted:
        artifact = registry.artifacts.get(identifier)
        items.append(
            PlanItem(
                identifier=identifier,
                action=SyncAction.PRUNE,
                target_path=artifact.target if artifact else "",
                reason="no longer in the resolved set",
                lock_hash=lock.installed[identifier].hash,
            )
        )

    items.sort(key=lambda i: i.identifier)
    plan = SyncPlan(project=project.name, items=items)
    logger.debug("Planned %s: %s", project.name, plan.counts())
    return plan
