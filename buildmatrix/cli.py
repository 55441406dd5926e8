"""Thin CLI wrapper for buildmatrix.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from buildmatrix import __version__
from buildmatrix.config import get_settings, print_settings_json
from buildmatrix.errors import BuildMatrixError

if TYPE_CHECKING:
    from buildmatrix.orchestrator import Orchestrator

app = typer.Typer(
    name="buildmatrix",
    help="Feature-matrix builds, checks and signed packages for a Cargo workspace",
    no_args_is_help=True,
)
console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"buildmatrix version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Feature-matrix builds, checks and signed packages for a Cargo workspace."""
    logging.basicConfig(
        level=get_settings().log_level,
        format="%(name)s: %(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


def _orchestrator() -> Orchestrator:
    from buildmatrix.orchestrator import Orchestrator, create_registry

    return Orchestrator(create_registry(get_settings()))


def _print_json(data: object) -> None:
    """Print JSON without wrapping or markup so it parses back."""
    console.print(
        json.dumps(data, indent=2), markup=False, highlight=False, soft_wrap=True
    )


def _fail(error: BuildMatrixError, json_output: bool) -> typer.Exit:
    """Report an error and return the exit to raise."""
    if json_output:
        _print_json({"error": error.to_dict()})
    else:
        console.print(f"[red]Error ({error.code}): {escape(str(error))}[/red]")
        log_path = getattr(error, "log_path", None)
        if log_path:
            console.print(f"  Log: {log_path}")
    return typer.Exit(code=1)


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        _print_json(json.loads(print_settings_json(settings)))
        return

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Workspace:           {settings.workspace_dir}")
    console.print(f"  Units file:          {settings.units_file or '(cargo metadata)'}")
    console.print(f"  Cache directory:     {settings.cache_dir}")
    console.print(f"  Artifacts directory: {settings.artifacts_dir}")
    console.print(f"  Database URL:        {settings.db_url}")
    console.print()
    console.print("[bold]Toolchains:[/bold]")
    console.print(f"  Distribution URL:    {settings.rust_dist_url}")
    console.print(f"  Host triple:         {settings.host_triple}")
    console.print(f"  MSRV:                {settings.msrv_version}")
    console.print()
    console.print("[bold]Signing:[/bold]")
    console.print(f"  Certificate:         {settings.signing_cert}")
    console.print(f"  Key:                 {settings.signing_key}")
    console.print(f"  Signer:              {settings.signer_path}")
    console.print()
    console.print("[bold]Operational:[/bold]")
    console.print(f"  Offline mode:        {settings.offline}")
    console.print(f"  Log level:           {settings.log_level}")
    console.print(f"  Max builds:          {settings.max_concurrent_builds}")
    console.print(f"  Build jobs:          {settings.build_jobs}")
    console.print()
    console.print("[bold]Timeouts (seconds):[/bold]")
    console.print(f"  Download timeout:    {settings.download_timeout}")
    console.print(f"  Build timeout:       {settings.build_timeout}")
    console.print(f"  Cross build timeout: {settings.cross_build_timeout}")


@app.command()
def build(
    unit: Annotated[str, typer.Argument(help="Build unit name")],
    platform: Annotated[
        str | None,
        typer.Option(
            "--platform", "-p", help="Target platform (default: unit's default)"
        ),
    ] = None,
    toolchain: Annotated[
        str,
        typer.Option("--toolchain", "-t", help="Toolchain: stable, nightly or msrv"),
    ] = "stable",
    feature_set: Annotated[
        str,
        typer.Option("--feature-set", "-f", help="Feature set name"),
    ] = "default",
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build a unit for a platform and produce its deliverable."""
    try:
        orchestrator = _orchestrator()
        if not json_output:
            console.print(
                f"[blue]Building {unit} ({toolchain}, {feature_set}, "
                f"{platform or 'default platform'})...[/blue]"
            )
        result = orchestrator.build(
            unit, platform=platform, toolchain=toolchain, feature_set=feature_set
        )
    except BuildMatrixError as e:
        raise _fail(e, json_output) from None

    if json_output:
        _print_json(result.to_dict())
        return

    outcome = result.outcome
    hit = " (dependencies cached)" if outcome.deps_cache_hit else ""
    console.print(f"[green]✓ Built {outcome.key.label}{hit}[/green]")
    console.print(f"  Binary: {outcome.artifact_path}")
    console.print(f"  Log: {outcome.log_path}")
    if result.package.signed:
        console.print(f"[green]✓ Signed package: {result.package.path}[/green]")


@app.command()
def check(
    toolchain: Annotated[
        str,
        typer.Argument(help="Toolchain: stable, nightly or msrv"),
    ] = "stable",
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Run audit, deny, fmt and the clippy matrix for a toolchain.

    Every check runs; the command exits non-zero if any of them failed.
    """
    try:
        report = _orchestrator().check(toolchain)
    except BuildMatrixError as e:
        raise _fail(e, json_output) from None

    if json_output:
        _print_json(report.to_tree())
    else:
        tree = report.to_tree()[report.toolchain]
        console.print(f"[bold]Checks for {report.toolchain}:[/bold]")
        for kind, status in tree.items():
            if isinstance(status, dict):
                continue
            color = "green" if status == "passed" else "red"
            console.print(f"  [{color}]{kind}: {status}[/{color}]")
        console.print("  clippy:")
        for unit_name, by_fs in tree["clippy"].items():
            for fs_name, status in by_fs.items():
                color = "green" if status == "passed" else "red"
                console.print(f"    [{color}]{unit_name} {fs_name}: {status}[/{color}]")

        failed = report.failed_cells()
        if failed:
            console.print()
            console.print(f"[red]{len(failed)} check(s) failed[/red]")
            for r in failed:
                if r.log_path:
                    console.print(f"  {r.kind.value} log: {r.log_path}")

    if not report.passed:
        raise typer.Exit(code=1)


@app.command()
def matrix(
    unit: Annotated[str, typer.Argument(help="Build unit name")],
    toolchain: Annotated[
        str | None,
        typer.Option("--toolchain", "-t", help="Toolchain used to read metadata"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List the feature sets a unit is built and linted with."""
    try:
        feature_sets = _orchestrator().matrix(unit, toolchain=toolchain)
    except BuildMatrixError as e:
        raise _fail(e, json_output) from None

    if json_output:
        _print_json([fs.to_dict() for fs in feature_sets])
    else:
        console.print(f"[bold]{unit}: {len(feature_sets)} feature set(s)[/bold]")
        for fs in feature_sets:
            console.print(f"  {fs.name}")


toolchains_app = typer.Typer(help="Manage Rust toolchains")
app.add_typer(toolchains_app, name="toolchains")


@toolchains_app.command("list")
def toolchains_list(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List resolved toolchains."""
    from buildmatrix.db import get_session
    from buildmatrix.toolchains.service import list_toolchains

    registry = _orchestrator().registry
    with get_session(registry.session_factory) as session:
        records = list_toolchains(session)
        output = [
            {
                "name": r.name,
                "channel": r.channel,
                "state": r.state,
                "root_dir": r.root_dir,
                "manifest_sha256": r.manifest_sha256,
                "targets": r.targets or [],
                "last_used_at": r.last_used_at.isoformat()
                if r.last_used_at
                else None,
            }
            for r in records
        ]

    if json_output:
        _print_json(output)
        return
    if not output:
        console.print("[yellow]No toolchains resolved yet[/yellow]")
        return
    for t in output:
        color = {"ready": "green", "pending": "yellow", "broken": "red"}.get(
            t["state"], "white"
        )
        console.print(f"  [{color}]{t['name']} ({t['channel']})[/{color}]")
        console.print(f"    State: {t['state']}")
        console.print(f"    Root: {t['root_dir']}")


@toolchains_app.command("resolve")
def toolchains_resolve(
    name: Annotated[str, typer.Argument(help="Toolchain: stable, nightly or msrv")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Resolve (download if needed) a toolchain."""
    try:
        resolved = _orchestrator().registry.toolchains.resolve(name)
    except BuildMatrixError as e:
        raise _fail(e, json_output) from None

    if json_output:
        output = {
            "name": resolved.name,
            "channel": resolved.channel,
            "root_dir": str(resolved.root_dir),
            "components": list(resolved.components),
            "targets": list(resolved.targets),
        }
        _print_json(output)
    else:
        console.print(f"[green]✓ Toolchain ready: {resolved.name}[/green]")
        console.print(f"  Channel: {resolved.channel}")
        console.print(f"  Root: {resolved.root_dir}")


platforms_app = typer.Typer(help="Inspect build platforms")
app.add_typer(platforms_app, name="platforms")


@platforms_app.command("list")
def platforms_list(
    unit: Annotated[
        str | None,
        typer.Option("--unit", "-u", help="Only platforms this unit is offered for"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List the native platform and registered foreign platforms."""
    orchestrator = _orchestrator()
    if unit is None:
        platforms = orchestrator.registry.platforms
        descriptors = [platforms.native(), *platforms.foreign()]
    else:
        try:
            descriptors = orchestrator.unit_platforms(unit)
        except BuildMatrixError as e:
            raise _fail(e, json_output) from None
    if json_output:
        _print_json([p.to_dict() for p in descriptors])
        return
    for p in descriptors:
        target = p.rust_target or "host"
        console.print(f"  {p.name}: target={target}, packager={p.packager.value}")


cache_app = typer.Typer(help="Inspect and prune caches")
app.add_typer(cache_app, name="cache")


@cache_app.command("info")
def cache_info(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show cache directories, sizes and dependency entries."""
    from buildmatrix.toolchains.fetch import get_cache_size

    registry = _orchestrator().registry
    settings = registry.settings
    entries = registry.build_graph.deps_cache.entries()
    info = {
        "cache_dir": str(settings.cache_dir),
        "exists": settings.cache_dir.exists(),
        "total_size_bytes": get_cache_size(settings.cache_dir),
        "toolchains_size_bytes": get_cache_size(settings.cache_dir / "toolchains"),
        "cross_size_bytes": get_cache_size(settings.cache_dir / "cross"),
        "deps_entries": entries,
    }
    if json_output:
        _print_json(info)
        return
    console.print("[bold]Cache Information:[/bold]")
    console.print()
    console.print(f"  Cache directory:  {info['cache_dir']}")
    console.print(f"  Exists:           {info['exists']}")
    console.print(f"  Total size:       {info['total_size_bytes']} bytes")
    console.print(f"  Toolchains:       {info['toolchains_size_bytes']} bytes")
    console.print(f"  Cross toolchains: {info['cross_size_bytes']} bytes")
    console.print(f"  Dependency entries: {len(entries)}")


@cache_app.command("prune")
def cache_prune(
    dry_run: Annotated[
        bool,
        typer.Option(
            "--dry-run", "-n", help="Show what would be pruned without pruning"
        ),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Drop dependency artifacts and unreferenced toolchain installs."""
    from buildmatrix.db import get_session
    from buildmatrix.toolchains.service import prune_toolchains

    registry = _orchestrator().registry
    deps = registry.build_graph.deps_cache.prune(dry_run=dry_run)
    with get_session(registry.session_factory) as session:
        toolchains = prune_toolchains(session, registry.settings, dry_run=dry_run)

    if json_output:
        output = {"dry_run": dry_run, "deps": deps, "toolchains": toolchains}
        _print_json(output)
        return
    if not deps and not toolchains:
        console.print("[yellow]Nothing to prune[/yellow]")
        return
    prefix = "[DRY RUN] Would prune" if dry_run else "Pruned"
    console.print(
        f"[bold]{prefix} {len(deps)} dependency entr(ies) and "
        f"{len(toolchains)} toolchain root(s)[/bold]"
    )
    for name in [*deps, *toolchains]:
        console.print(f"  - {name}")


builds_app = typer.Typer(help="Inspect build history")
app.add_typer(builds_app, name="builds")


@builds_app.command("list")
def builds_list(
    unit: Annotated[
        str | None,
        typer.Option("--unit", "-u", help="Filter by unit"),
    ] = None,
    toolchain: Annotated[
        str | None,
        typer.Option("--toolchain", "-t", help="Filter by toolchain"),
    ] = None,
    status: Annotated[
        str | None,
        typer.Option("--status", "-s", help="Filter by status"),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum results"),
    ] = 20,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List recorded builds and lint runs, newest first."""
    from buildmatrix.builds.service import list_builds
    from buildmatrix.db import get_session
    from buildmatrix.types import BuildStatus

    status_filter: BuildStatus | None = None
    if status:
        try:
            status_filter = BuildStatus(status)
        except ValueError:
            valid = ", ".join(s.value for s in BuildStatus)
            console.print(f"[red]Invalid status: {status}[/red]")
            console.print(f"Valid values: {valid}")
            raise typer.Exit(code=1) from None

    registry = _orchestrator().registry
    with get_session(registry.session_factory) as session:
        records = list_builds(
            session, unit=unit, toolchain=toolchain, status=status_filter, limit=limit
        )
        output = [
            {
                "id": b.id,
                "toolchain": b.toolchain,
                "unit": b.unit,
                "feature_set": b.feature_set,
                "platform": b.platform,
                "kind": b.kind,
                "status": b.status,
                "log_path": b.log_path,
                "error_message": b.error_message,
            }
            for b in records
        ]

    if json_output:
        _print_json(output)
        return
    if not output:
        console.print("[yellow]No builds found[/yellow]")
        return
    for b in output:
        color = {"succeeded": "green", "failed": "red"}.get(b["status"], "yellow")
        console.print(
            f"  [{color}]#{b['id']} {b['unit']} ({b['toolchain']}, "
            f"{b['feature_set']}, {b['platform']}) {b['kind']}: "
            f"{b['status']}[/{color}]"
        )
        if b["error_message"]:
            console.print(f"      Error: {b['error_message']}")


if __name__ == "__main__":
    app()
