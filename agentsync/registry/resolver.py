"""Bundle resolver — the closed set of artifacts a project should receive."""

from __future__ import annotations

from agentsync.registry.models import Project, Registry


def resolved_set(project: Project, registry: Registry) -> frozenset[str]:
    """Compute ``(resolve(bundle) | additional) - excluded`` for a project.

    Additions are applied before exclusions, so an excluded identifier never
    reaches the project even if its own ``additional`` list names it.
    Unknown identifiers raise ArtifactNotFound rather than being dropped.
    """
    identifiers = set(registry.resolve_bundle(project.bundle))

    for identifier in project.additional:
        registry.lookup(identifier)
        identifiers.add(identifier)

    for identifier in project.excluded:
        registry.lookup(identifier)
        identifiers.discard(identifier)

    return frozenset(identifiers)
