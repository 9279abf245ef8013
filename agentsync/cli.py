"""agentsync CLI — the main entry point for artifact distribution."""

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from agentsync import __version__
from agentsync.config import PROJECTS_ENV, REGISTRY_ENV, SyncSettings
from agentsync.errors import ConfigurationError
from agentsync.log import configure_logging

console = Console()

EXIT_UNRESOLVED = 1
EXIT_CONFIG = 2

_ACTION_STYLES = {
    "install": "green",
    "update": "cyan",
    "up_to_date": "dim",
    "locally_modified": "yellow",
    "conflict": "red",
    "protected_skip": "magenta",
    "prune": "blue",
}

_OUTCOME_STYLES = {
    "applied": "green",
    "skipped": "dim",
    "unresolved": "yellow",
    "pruned": "blue",
    "failed": "red",
    "planned": "cyan",
}


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--registry", "-r", "registry_path", envvar=REGISTRY_ENV, default=None,
    help="Registry document (default: sync/registry.yaml)",
)
@click.option(
    "--projects", "-p", "projects_path", envvar=PROJECTS_ENV, default=None,
    help="Projects document (default: sync/projects.yaml)",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, registry_path: str | None, projects_path: str | None, verbose: bool):
    """agentsync — keep shared agent artifacts in sync across projects.

    Artifacts are versioned and hashed in a central registry, grouped into
    inheritable bundles, and installed into each project according to its
    bundle, additions, exclusions and protected paths.
    """
    configure_logging(verbose)
    ctx.obj = SyncSettings.from_options(registry_path, projects_path)


def _load(ctx: click.Context):
    """Load the registry or exit with a configuration error."""
    from agentsync.registry.loader import load_registry

    settings: SyncSettings = ctx.obj
    try:
        return load_registry(settings.registry_path, settings.projects_path)
    except ConfigurationError as e:
        _config_failure(ctx, e)


def _config_failure(ctx: click.Context, error: ConfigurationError):
    console.print("[red]Configuration error:[/]")
    for issue in error.issues:
        console.print(f"  [red]x[/] {issue}")
    ctx.exit(EXIT_CONFIG)


def _project_names(ctx: click.Context, registry, project: str | None) -> list[str]:
    if project is None:
        return sorted(registry.projects)
    if project not in registry.projects:
        _config_failure(ctx, ConfigurationError(f"Unknown project: {project}"))
    return [project]


# ── Sync ─────────────────────────────────────────────────────────────


@main.command()
@click.argument("project", required=False)
@click.option("--all", "all_projects", is_flag=True, help="Sync every registered project")
@click.option("--force", is_flag=True, help="Overwrite locally modified and conflicting files")
@click.option("--dry-run", is_flag=True, help="Show what would change without writing")
@click.pass_context
def sync(ctx: click.Context, project: str | None, all_projects: bool, force: bool, dry_run: bool):
    """Install and update artifacts in a project.

    Protected paths are never written, even with --force.
    """
    from agentsync.sync.executor import ItemOutcome, sync_project

    if not project and not all_projects:
        raise click.UsageError("Give a PROJECT name or --all")

    registry = _load(ctx)
    names = _project_names(ctx, registry, None if all_projects else project)

    exit_code = 0
    for name in names:
        mode = " (dry run)" if dry_run else ""
        console.print(f"\n[bold blue]agentsync[/] — Syncing: {name}{mode}\n")
        try:
            _, report = sync_project(registry, name, force=force, dry_run=dry_run)
        except ConfigurationError as e:
            _config_failure(ctx, e)

        changes = [r for r in report.results if r.outcome != ItemOutcome.SKIPPED]
        if changes:
            table = Table(title=f"{name} ({len(report.results)} artifacts)")
            table.add_column("Artifact", style="cyan")
            table.add_column("Action")
            table.add_column("Outcome")
            table.add_column("Detail")
            for r in changes:
                action_style = _ACTION_STYLES.get(r.action.value, "")
                outcome_style = _OUTCOME_STYLES.get(r.outcome.value, "")
                table.add_row(
                    r.identifier,
                    f"[{action_style}]{r.action.value}[/]",
                    f"[{outcome_style}]{r.outcome.value}[/]",
                    r.error or r.detail,
                )
            console.print(table)
        else:
            console.print("  [green]v[/] Everything up to date")

        unresolved = report.by_outcome(ItemOutcome.UNRESOLVED)
        if unresolved:
            console.print(
                f"\n[yellow]{len(unresolved)} unresolved[/] — reconcile by hand or rerun with --force"
            )
        if report.lock_error:
            console.print(f"[red]Lock file not written:[/] {report.lock_error}")

        console.print(f"\n{report.summary()}")
        if not report.ok:
            exit_code = EXIT_UNRESOLVED

    ctx.exit(exit_code)


# ── Status ───────────────────────────────────────────────────────────


@main.command()
@click.argument("project", required=False)
@click.pass_context
def status(ctx: click.Context, project: str | None):
    """Show the sync plan for one or all projects without writing anything."""
    from agentsync.sync.lock import LockStore
    from agentsync.sync.planner import plan_project

    registry = _load(ctx)
    names = _project_names(ctx, registry, project)

    if not names:
        console.print("[yellow]No projects registered.[/]")
        return

    exit_code = 0
    for name in names:
        proj = registry.projects[name]
        try:
            lock = LockStore(proj.path, name).load()
        except ConfigurationError as e:
            _config_failure(ctx, e)
        plan = plan_project(proj, registry, lock)

        table = Table(title=f"{name} — bundle '{proj.bundle}'")
        table.add_column("Artifact", style="cyan")
        table.add_column("Action")
        table.add_column("Target")
        table.add_column("Reason")
        for item in plan.items:
            style = _ACTION_STYLES.get(item.action.value, "")
            table.add_row(
                item.identifier,
                f"[{style}]{item.action.value}[/]",
                item.target_path,
                item.reason,
            )
        console.print(table)

        counts = ", ".join(f"{n} {a}" for a, n in sorted(plan.counts().items()))
        console.print(f"  {counts or 'no artifacts'}")
        if plan.unresolved():
            exit_code = EXIT_UNRESOLVED

    ctx.exit(exit_code)


# ── Verify ───────────────────────────────────────────────────────────


@main.command()
@click.argument("project", required=False)
@click.pass_context
def verify(ctx: click.Context, project: str | None):
    """Check registry hashes against source files, and optionally a project for drift."""
    from agentsync.sync.hashing import verify as verify_hashes
    from agentsync.sync.lock import LockStore
    from agentsync.sync.planner import SyncAction, plan_project

    registry = _load(ctx)
    console.print("\n[bold blue]agentsync[/] — Verifying registry hashes\n")

    failed = False
    mismatches = verify_hashes(registry)
    if mismatches:
        failed = True
        console.print(f"[red]{len(mismatches)} hash mismatch(es):[/]")
        for m in mismatches:
            console.print(f"  [red]x[/] {m.summary()}")
        console.print("\nRun 'agentsync update-hashes' after intentional edits.")
    else:
        console.print(f"  [green]v[/] {len(registry.artifacts)} artifact hashes match")

    orphans = registry.orphans()
    if orphans:
        failed = True
        console.print(f"\n[yellow]{len(orphans)} orphaned artifact(s)[/] (in no bundle or project):")
        for identifier in sorted(orphans):
            console.print(f"  [yellow]![/] {identifier}")

    if project:
        _project_names(ctx, registry, project)
        proj = registry.projects[project]
        try:
            lock = LockStore(proj.path, proj.name).load()
        except ConfigurationError as e:
            _config_failure(ctx, e)
        plan = plan_project(proj, registry, lock)
        drifted = sorted(
            plan.by_action(SyncAction.LOCALLY_MODIFIED) + plan.by_action(SyncAction.CONFLICT),
            key=lambda i: i.identifier,
        )
        console.print(f"\n[bold]Installed files in {project}:[/]")
        if drifted:
            failed = True
            for item in drifted:
                console.print(f"  [red]DRIFT[/] {item.identifier} ({item.target_path}): {item.reason}")
        else:
            console.print("  [green]v[/] No drift from the lock file")

    ctx.exit(EXIT_UNRESOLVED if failed else 0)


@main.command(name="update-hashes")
@click.pass_context
def update_hashes(ctx: click.Context):
    """Recompute every artifact hash and write it back to the registry."""
    from agentsync.registry.loader import write_hashes
    from agentsync.sync.hashing import update, verify as verify_hashes

    registry = _load(ctx)
    stale = verify_hashes(registry)
    missing = [m for m in stale if m.actual is None]
    for m in missing:
        console.print(f"  [red]x[/] {m.summary()}")

    changed = [m for m in stale if m.actual is not None]
    if not changed:
        console.print("[green]All hashes are current.[/]")
        ctx.exit(EXIT_UNRESOLVED if missing else 0)

    write_hashes(ctx.obj.registry_path, update(registry))
    for m in changed:
        console.print(f"  [cyan]{m.identifier}[/] {m.expected or '-'} -> {m.actual}")
    console.print(f"\n[green]Updated {len(changed)} hash(es).[/]")
    ctx.exit(EXIT_UNRESOLVED if missing else 0)


# ── List ─────────────────────────────────────────────────────────────


@main.command(name="list")
@click.pass_context
def list_artifacts(ctx: click.Context):
    """List artifacts by category, bundles and projects."""
    registry = _load(ctx)
    orphans = registry.orphans()

    table = Table(title=f"Registry {registry.version} ({len(registry.artifacts)} artifacts)")
    table.add_column("Artifact", style="cyan")
    table.add_column("Version")
    table.add_column("Hash", style="dim")
    table.add_column("Strategy")
    table.add_column("Description")
    for category, artifacts in registry.by_category().items():
        for artifact in artifacts:
            name = artifact.identifier
            if name in orphans:
                name += " [yellow](orphan)[/]"
            table.add_row(
                name,
                artifact.version,
                artifact.hash,
                artifact.merge_strategy.value,
                artifact.description[:50],
            )
    console.print(table)

    bundles = Table(title="Bundles")
    bundles.add_column("Bundle", style="cyan")
    bundles.add_column("Extends")
    bundles.add_column("Resolved", justify="right")
    for name in sorted(registry.bundles):
        bundle = registry.bundles[name]
        bundles.add_row(name, bundle.extends or "", str(len(registry.resolve_bundle(name))))
    console.print(bundles)

    if registry.projects:
        projects = Table(title="Projects")
        projects.add_column("Project", style="cyan")
        projects.add_column("Bundle")
        projects.add_column("Path")
        for name in sorted(registry.projects):
            proj = registry.projects[name]
            projects.add_row(name, proj.bundle, str(proj.path))
        console.print(projects)


@main.command()
@click.pass_context
def orphans(ctx: click.Context):
    """Report artifacts that no bundle or project can ever install."""
    registry = _load(ctx)
    found = sorted(registry.orphans())
    if not found:
        console.print("[green]No orphaned artifacts.[/]")
        return

    console.print(Panel(
        "\n".join(found),
        title=f"{len(found)} orphaned artifact(s)",
        subtitle="add them to a bundle or remove them from the registry",
    ))
    ctx.exit(EXIT_UNRESOLVED)


# ── Projects ─────────────────────────────────────────────────────────


@main.command()
@click.argument("name")
@click.option("--bundle", "-b", required=True, help="Bundle the project uses")
@click.option("--path", "project_path", required=True, help="Project root directory")
@click.option("--additional", "-a", multiple=True, help="Extra artifact identifier")
@click.option("--exclude", "-x", multiple=True, help="Artifact identifier to leave out")
@click.option("--protect", multiple=True, help="Target path sync must never write")
@click.pass_context
def add(
    ctx: click.Context,
    name: str,
    bundle: str,
    project_path: str,
    additional: tuple,
    exclude: tuple,
    protect: tuple,
):
    """Register a project as a sync target."""
    from agentsync.registry.loader import add_project

    registry = _load(ctx)
    issues = []
    if bundle not in registry.bundles:
        issues.append(f"Unknown bundle: {bundle}")
    for identifier in (*additional, *exclude):
        if identifier not in registry.artifacts:
            issues.append(f"Unknown artifact: {identifier}")
    if issues:
        _config_failure(ctx, ConfigurationError(issues))

    try:
        add_project(
            ctx.obj.projects_path,
            name,
            bundle=bundle,
            path=project_path,
            additional=list(additional),
            excluded=list(exclude),
            protected=list(protect),
        )
    except ConfigurationError as e:
        _config_failure(ctx, e)
    console.print(f"  Added project [cyan]{name}[/] (bundle '{bundle}')")


@main.command()
@click.argument("name")
@click.pass_context
def remove(ctx: click.Context, name: str):
    """Unregister a project. Installed files and its lock file are kept."""
    from agentsync.registry.loader import remove_project

    try:
        remove_project(ctx.obj.projects_path, name)
    except ConfigurationError as e:
        _config_failure(ctx, e)
    console.print(f"  Removed project [cyan]{name}[/]")


if __name__ == "__main__":
    main()
