"""Hash engine — short, stable content fingerprints.

A fingerprint is the first eight hex characters of the SHA-256 digest of
the raw file bytes. No line-ending or encoding normalisation is applied, so
the same bytes hash the same on every platform. Changing this scheme means
rehashing the whole registry.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path

from agentsync.registry.models import Registry

logger = logging.getLogger(__name__)

HASH_LENGTH = 8
_CHUNK_SIZE = 1024 * 1024


def hash_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()[:HASH_LENGTH]


def hash_file(path: str | Path) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            h.update(chunk)
    return h.hexdigest()[:HASH_LENGTH]


@dataclass(frozen=True)
class HashMismatch:
    """A registry artifact whose stored hash does not match its source file."""

    identifier: str
    expected: str
    actual: str | None  # None when the source file is missing or unreadable

    def summary(self) -> str:
        if self.actual is None:
            return (
                f"{self.identifier}: source file missing or unreadable "
                f"(registry hash {self.expected or '-'})"
            )
        return f"{self.identifier}: registry hash {self.expected or '-'}, file hash {self.actual}"


def compute_hashes(registry: Registry) -> dict[str, str | None]:
    """Hash every artifact's source file. Missing files map to None."""
    hashes: dict[str, str | None] = {}
    for identifier in sorted(registry.artifacts):
        path = registry.source_file(registry.artifacts[identifier])
        try:
            hashes[identifier] = hash_file(path)
        except OSError as e:
            logger.warning("Cannot read source for %s: %s (%s)", identifier, path, e)
            hashes[identifier] = None
    return hashes


def verify(registry: Registry) -> list[HashMismatch]:
    """Recompute every source hash and report those that differ from the registry."""
    mismatches = []
    for identifier, actual in compute_hashes(registry).items():
        expected = registry.artifacts[identifier].hash
        if actual != expected:
            mismatches.append(HashMismatch(identifier=identifier, expected=expected, actual=actual))
    return mismatches


def update(registry: Registry) -> Registry:
    """Return a registry whose hashes match the current source files.

    Artifacts with a missing source file keep their stored hash.
    """
    fresh = {
        identifier: actual
        for identifier, actual in compute_hashes(registry).items()
        if actual is not None
    }
    changed = [i for i, h in fresh.items() if registry.artifacts[i].hash != h]
    for identifier in changed:
        logger.info("Rehashed %s: %s", identifier, fresh[identifier])
    return registry.with_hashes(fresh)
