"""Load and validate the registry and project documents.

Both documents are YAML (JSON is accepted, being a YAML subset). Validation
collects every issue it finds before failing so a curator sees the whole
picture at once; nothing is written to any project until loading succeeds.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml

from agentsync.errors import ConfigurationError
from agentsync.registry.models import (
    Artifact,
    Bundle,
    MergeStrategy,
    Project,
    Registry,
    make_identifier,
    normalize_target,
)

logger = logging.getLogger(__name__)

REQUIRED_ARTIFACT_FIELDS = ("version", "source_path")
VALID_MERGE_STRATEGIES = {s.value for s in MergeStrategy}


def load_registry(
    registry_path: str | Path,
    projects_path: str | Path | None = None,
) -> Registry:
    """Load, validate and build the registry value.

    Raises ConfigurationError listing every structural problem found.
    """
    registry_path = Path(registry_path)
    registry_data = read_document(registry_path)

    projects_data: dict = {}
    projects_root = registry_path.resolve().parent
    if projects_path is not None:
        projects_path = Path(projects_path)
        projects_root = projects_path.resolve().parent
        if projects_path.exists():
            projects_data = read_document(projects_path)
        else:
            logger.debug("No projects document at %s", projects_path)

    issues = validate_registry_data(registry_data, projects_data)
    if issues:
        raise ConfigurationError(issues)

    registry = Registry(
        version=str(registry_data.get("version", "")),
        source_root=registry_path.resolve().parent,
        artifacts=_build_artifacts(registry_data),
        bundles=_build_bundles(registry_data),
        projects=_build_projects(projects_data, projects_root),
    )
    logger.debug(
        "Loaded registry %s: %d artifacts, %d bundles, %d projects",
        registry.version or "(unversioned)",
        len(registry.artifacts),
        len(registry.bundles),
        len(registry.projects),
    )
    return registry


def read_document(path: Path) -> dict:
    """Parse a YAML document, which must be a mapping (or empty)."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigurationError(f"File not found: {path}") from None
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from None

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path}: top level must be a mapping")
    return data


def write_document(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f, sort_keys=False, default_flow_style=False)
    tmp.replace(path)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_registry_data(registry_data: dict, projects_data: dict | None = None) -> list[str]:
    """Check structural integrity of the raw documents.

    Returns a list of issues. Empty list means valid.
    """
    issues: list[str] = []
    projects_data = projects_data or {}

    artifacts = registry_data.get("artifacts") or {}
    bundles = registry_data.get("bundles") or {}
    projects = projects_data.get("projects") or {}

    if not isinstance(artifacts, dict):
        return ["'artifacts' must be a mapping of category -> name -> fields"]
    if not isinstance(bundles, dict):
        return ["'bundles' must be a mapping of bundle name -> definition"]
    if not isinstance(projects, dict):
        return ["'projects' must be a mapping of project name -> definition"]

    # Artifacts
    known: set[str] = set()
    for category, entries in artifacts.items():
        if not isinstance(entries, dict):
            issues.append(f"artifacts.{category}: expected a mapping of artifacts")
            continue
        for name, fields in entries.items():
            identifier = make_identifier(category, name)
            known.add(identifier)
            if not isinstance(fields, dict):
                issues.append(f"{identifier}: expected a mapping of fields")
                continue
            for required in REQUIRED_ARTIFACT_FIELDS:
                if not fields.get(required):
                    issues.append(f"{identifier}: missing required field '{required}'")
            strategy = fields.get("merge_strategy")
            if strategy and strategy not in VALID_MERGE_STRATEGIES:
                issues.append(
                    f"{identifier}: unknown merge_strategy '{strategy}' "
                    f"(expected one of {sorted(VALID_MERGE_STRATEGIES)})"
                )

    # Bundles
    for name, bundle in bundles.items():
        if not isinstance(bundle, dict):
            issues.append(f"bundles.{name}: expected a mapping")
            continue
        parent = bundle.get("extends")
        if parent is not None and not isinstance(parent, str):
            issues.append(f"bundles.{name}: extends must be a bundle name")
        elif parent is not None and parent not in bundles:
            issues.append(f"bundles.{name}: extends unknown bundle '{parent}'")
        includes = bundle.get("includes") or []
        if not _is_string_list(includes):
            issues.append(f"bundles.{name}: includes must be a list of artifact identifiers")
            continue
        for identifier in includes:
            if identifier not in known:
                issues.append(f"bundles.{name}: includes unknown artifact '{identifier}'")

    issues.extend(_find_cycles(bundles))

    # Projects
    for name, project in projects.items():
        if not isinstance(project, dict):
            issues.append(f"projects.{name}: expected a mapping")
            continue
        if not project.get("path"):
            issues.append(f"projects.{name}: missing required field 'path'")
        bundle = project.get("bundle")
        if not bundle:
            issues.append(f"projects.{name}: missing required field 'bundle'")
        elif not isinstance(bundle, str):
            issues.append(f"projects.{name}: bundle must be a bundle name")
        elif bundle not in bundles:
            issues.append(f"projects.{name}: uses unknown bundle '{bundle}'")
        if not isinstance(project.get("path") or "", str):
            issues.append(f"projects.{name}: path must be a string")
        if not _is_string_list(project.get("protected") or []):
            issues.append(f"projects.{name}.protected: must be a list of target paths")
        for key in ("additional", "excluded"):
            values = project.get(key) or []
            if not _is_string_list(values):
                issues.append(f"projects.{name}.{key}: must be a list of artifact identifiers")
                continue
            for identifier in values:
                if identifier not in known:
                    issues.append(f"projects.{name}.{key}: unknown artifact '{identifier}'")

    return issues


def _is_string_list(value: object) -> bool:
    return isinstance(value, list) and all(isinstance(v, str) for v in value)


def _find_cycles(bundles: dict) -> list[str]:
    """Walk every extends chain with a visited set; report each cycle once."""
    issues: list[str] = []
    reported: set[frozenset[str]] = set()

    for start in bundles:
        visited: list[str] = []
        current = start
        while isinstance(current, str) and isinstance(bundles.get(current), dict):
            if current in visited:
                cycle = visited[visited.index(current):]
                key = frozenset(cycle)
                if key not in reported:
                    reported.add(key)
                    path = " -> ".join(cycle + [current])
                    issues.append(f"Cyclic bundle inheritance: {path}")
                break
            visited.append(current)
            current = bundles[current].get("extends")

    return issues


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def _build_artifacts(data: dict) -> dict[str, Artifact]:
    artifacts: dict[str, Artifact] = {}
    for category, entries in (data.get("artifacts") or {}).items():
        for name, fields in entries.items():
            artifact = Artifact(
                category=category,
                name=name,
                version=str(fields["version"]),
                source_path=fields["source_path"],
                hash=str(fields.get("hash") or ""),
                target_path=fields.get("target_path") or "",
                description=fields.get("description", ""),
                dependencies=tuple(fields.get("dependencies") or ()),
                merge_strategy=MergeStrategy(fields.get("merge_strategy") or "copy"),
            )
            artifacts[artifact.identifier] = artifact
    return artifacts


def _build_bundles(data: dict) -> dict[str, Bundle]:
    return {
        name: Bundle(
            name=name,
            includes=tuple(bundle.get("includes") or ()),
            extends=bundle.get("extends"),
        )
        for name, bundle in (data.get("bundles") or {}).items()
    }


def _build_projects(data: dict, root: Path) -> dict[str, Project]:
    projects: dict[str, Project] = {}
    for name, project in (data.get("projects") or {}).items():
        path = Path(project["path"]).expanduser()
        if not path.is_absolute():
            path = root / path
        projects[name] = Project(
            name=name,
            bundle=project["bundle"],
            path=path,
            additional=tuple(project.get("additional") or ()),
            excluded=tuple(project.get("excluded") or ()),
            protected=frozenset(normalize_target(p) for p in project.get("protected") or ()),
        )
    return projects


# ---------------------------------------------------------------------------
# Document edits (used by update-hashes, add, remove)
# ---------------------------------------------------------------------------


def write_hashes(registry_path: str | Path, registry: Registry) -> None:
    """Persist a registry's artifact hashes back into its YAML document.

    Only the ``hash`` fields are touched; all other keys are preserved.
    """
    registry_path = Path(registry_path)
    data = read_document(registry_path)
    for artifact in registry.artifacts.values():
        fields = data["artifacts"][artifact.category][artifact.name]
        fields["hash"] = artifact.hash
    write_document(registry_path, data)


def add_project(
    projects_path: str | Path,
    name: str,
    bundle: str,
    path: str,
    additional: list[str] | None = None,
    excluded: list[str] | None = None,
    protected: list[str] | None = None,
) -> None:
    """Register a new project in the projects document."""
    projects_path = Path(projects_path)
    data = read_document(projects_path) if projects_path.exists() else {}
    projects = data.setdefault("projects", {}) or {}
    data["projects"] = projects
    if name in projects:
        raise ConfigurationError(f"Project already exists: {name}")

    entry: dict = {"path": path, "bundle": bundle}
    if additional:
        entry["additional"] = list(additional)
    if excluded:
        entry["excluded"] = list(excluded)
    if protected:
        entry["protected"] = list(protected)
    projects[name] = entry
    write_document(projects_path, data)


def remove_project(projects_path: str | Path, name: str) -> None:
    """Remove a project from the projects document.

    The project's installed files and lock document are left in place.
    """
    projects_path = Path(projects_path)
    data = read_document(projects_path)
    projects = data.get("projects") or {}
    if name not in projects:
        raise ConfigurationError(f"Unknown project: {name}")
    del projects[name]
    write_document(projects_path, data)
