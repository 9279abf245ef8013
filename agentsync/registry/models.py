"""Registry data models — artifacts, bundles, projects and the registry value."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path, PurePosixPath

from agentsync.errors import ArtifactNotFound, ConfigurationError


class MergeStrategy(Enum):
    """How an artifact's content reaches its target file."""

    COPY = "copy"
    SETTINGS_MERGE = "settings_merge"


def make_identifier(category: str, name: str) -> str:
    return f"{category}/{name}"


def normalize_target(path: str) -> str:
    """Canonical form for target paths so protected-path checks compare equal."""
    return PurePosixPath(path.replace("\\", "/")).as_posix().lstrip("/")


@dataclass(frozen=True)
class Artifact:
    """A single versioned, hashed unit of syncable content."""

    category: str
    name: str
    version: str
    source_path: str
    hash: str = ""
    target_path: str = ""  # Defaults to source_path
    description: str = ""
    dependencies: tuple[str, ...] = ()
    merge_strategy: MergeStrategy = MergeStrategy.COPY

    @property
    def identifier(self) -> str:
        return make_identifier(self.category, self.name)

    @property
    def target(self) -> str:
        return normalize_target(self.target_path or self.source_path)


@dataclass(frozen=True)
class Bundle:
    """A named set of artifact identifiers, optionally extending a parent."""

    name: str
    includes: tuple[str, ...] = ()
    extends: str | None = None


@dataclass(frozen=True)
class Project:
    """A sync target on the local filesystem."""

    name: str
    bundle: str
    path: Path
    additional: tuple[str, ...] = ()
    excluded: tuple[str, ...] = ()
    protected: frozenset[str] = frozenset()

    def is_protected(self, target_path: str) -> bool:
        return normalize_target(target_path) in self.protected


@dataclass(frozen=True)
class Registry:
    """Immutable, validated view of the registry and project documents.

    Loaded once per invocation and passed explicitly to the resolver,
    planner and executor.
    """

    version: str
    source_root: Path
    artifacts: dict[str, Artifact] = field(default_factory=dict)
    bundles: dict[str, Bundle] = field(default_factory=dict)
    projects: dict[str, Project] = field(default_factory=dict)
    _bundle_cache: dict[str, frozenset[str]] = field(
        default_factory=dict, repr=False, compare=False
    )

    # -- lookup -------------------------------------------------------------

    def lookup(self, identifier: str) -> Artifact:
        try:
            return self.artifacts[identifier]
        except KeyError:
            raise ArtifactNotFound(identifier) from None

    def get_project(self, name: str) -> Project:
        try:
            return self.projects[name]
        except KeyError:
            raise ConfigurationError(f"Unknown project: {name}") from None

    def source_file(self, artifact: Artifact) -> Path:
        return self.source_root / artifact.source_path

    def by_category(self) -> dict[str, list[Artifact]]:
        grouped: dict[str, list[Artifact]] = {}
        for identifier in sorted(self.artifacts):
            artifact = self.artifacts[identifier]
            grouped.setdefault(artifact.category, []).append(artifact)
        return grouped

    # -- bundles ------------------------------------------------------------

    def resolve_bundle(self, name: str) -> frozenset[str]:
        """Return the union of a bundle's includes and its ancestors' includes."""
        cached = self._bundle_cache.get(name)
        if cached is not None:
            return cached

        chain = self.bundle_chain(name)
        resolved: set[str] = set()
        for bundle in chain:
            for identifier in bundle.includes:
                self.lookup(identifier)
                resolved.add(identifier)

        result = frozenset(resolved)
        self._bundle_cache[name] = result
        return result

    def bundle_chain(self, name: str) -> list[Bundle]:
        """Walk the extends chain from ``name`` to its root.

        Raises ConfigurationError on unknown bundles and on cycles.
        """
        chain: list[Bundle] = []
        visited: set[str] = set()
        current: str | None = name
        while current is not None:
            if current in visited:
                path = " -> ".join([b.name for b in chain] + [current])
                raise ConfigurationError(f"Cyclic bundle inheritance: {path}")
            bundle = self.bundles.get(current)
            if bundle is None:
                raise ConfigurationError(f"Unknown bundle: {current}")
            visited.add(current)
            chain.append(bundle)
            current = bundle.extends
        return chain

    # -- integrity ----------------------------------------------------------

    def orphans(self) -> frozenset[str]:
        """Artifacts no bundle resolves to and no project adds."""
        reachable: set[str] = set()
        for name in self.bundles:
            reachable |= self.resolve_bundle(name)
        for project in self.projects.values():
            reachable.update(project.additional)
        return frozenset(set(self.artifacts) - reachable)

    def with_hashes(self, hashes: dict[str, str]) -> Registry:
        """Return a copy of the registry with artifact hashes replaced."""
        artifacts = {
            identifier: replace(artifact, hash=hashes.get(identifier, artifact.hash))
            for identifier, artifact in self.artifacts.items()
        }
        return replace(self, artifacts=artifacts, _bundle_cache={})
