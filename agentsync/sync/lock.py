"""Lock store — per-project record of what was last installed.

Each project keeps one JSON lock document. It is read once at the start of
a run and rewritten in full at the end, never patched field by field.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from agentsync.config import LOCK_FILE, LOCK_VERSION, STATE_DIR
from agentsync.errors import LockFileError

logger = logging.getLogger(__name__)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class LockEntry:
    """What was installed for one artifact."""

    version: str
    hash: str  # Registry hash at install time
    installed_at: str = ""
    installed_hash: str = ""  # Fingerprint of what was written; see planner

    @property
    def live_baseline(self) -> str:
        """The hash the on-disk file is compared against."""
        return self.installed_hash or self.hash


@dataclass
class LockFile:
    """A project's full lock document."""

    project: str
    registry_version: str = ""
    synced_at: str = ""
    lock_version: int = LOCK_VERSION
    installed: dict[str, LockEntry] = field(default_factory=dict)

    def get(self, identifier: str) -> LockEntry | None:
        return self.installed.get(identifier)

    def record(
        self,
        identifier: str,
        version: str,
        hash: str,
        installed_hash: str = "",
    ) -> LockEntry:
        entry = LockEntry(
            version=version,
            hash=hash,
            installed_at=utc_now(),
            installed_hash=installed_hash or hash,
        )
        self.installed[identifier] = entry
        return entry

    def remove(self, identifier: str) -> LockEntry | None:
        return self.installed.pop(identifier, None)

    def to_dict(self) -> dict:
        return {
            "lock_version": self.lock_version,
            "project": self.project,
            "synced_at": self.synced_at,
            "registry_version": self.registry_version,
            "installed": {
                identifier: {
                    "version": entry.version,
                    "hash": entry.hash,
                    "installed_hash": entry.installed_hash,
                    "installed_at": entry.installed_at,
                }
                for identifier, entry in sorted(self.installed.items())
            },
        }

    @classmethod
    def from_dict(cls, data: dict) -> LockFile:
        installed = {}
        for identifier, entry in (data.get("installed") or {}).items():
            installed[identifier] = LockEntry(
                version=str(entry["version"]),
                hash=entry["hash"],
                installed_at=entry.get("installed_at", ""),
                installed_hash=entry.get("installed_hash", ""),
            )
        return cls(
            project=data.get("project", ""),
            registry_version=data.get("registry_version", ""),
            synced_at=data.get("synced_at", ""),
            lock_version=data.get("lock_version", LOCK_VERSION),
            installed=installed,
        )


class LockStore:
    """Reads and writes the lock document for one project."""

    def __init__(self, project_path: str | Path, project_name: str = ""):
        self.project_path = Path(project_path)
        self.project_name = project_name
        self.lock_path = self.project_path / STATE_DIR / LOCK_FILE

    def exists(self) -> bool:
        return self.lock_path.exists()

    def load(self) -> LockFile:
        """Load the lock document, or an empty one if none exists yet."""
        if not self.lock_path.exists():
            return LockFile(project=self.project_name)
        try:
            with open(self.lock_path, encoding="utf-8") as f:
                data = json.load(f)
            return LockFile.from_dict(data)
        except (json.JSONDecodeError, KeyError, TypeError, AttributeError) as e:
            raise LockFileError(f"Malformed lock file {self.lock_path}: {e}") from None

    def save(self, lock: LockFile) -> None:
        """Rewrite the whole lock document atomically."""
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.lock_path.with_name(self.lock_path.name + ".tmp")
        tmp.write_text(json.dumps(lock.to_dict(), indent=2) + "\n", encoding="utf-8")
        tmp.replace(self.lock_path)
        logger.debug("Wrote lock file %s (%d entries)", self.lock_path, len(lock.installed))
