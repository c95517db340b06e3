"""
Build inspection and maintenance commands.
"""

from __future__ import annotations

import json
from typing import List, Optional

import click
from rich.table import Table

from ..context import CLIContext, console, handle_error, pass_context, run
from ...core.errors import InvalidParameterError
from ...core.types import Build, BuildStatus, format_timestamp


def _coverage_cell(build: Build) -> str:
    if build.coverage is None:
        return "-"
    s = build.coverage.summary
    gate = "pass" if build.coverage.quality_gate.passed else "fail"
    return f"{s.component_coverage:.0%} ({gate})"


def render_builds(builds: List[Build], title: str) -> None:
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("#", justify="right")
    table.add_column("Build ID")
    table.add_column("Version")
    table.add_column("Status")
    table.add_column("Created")
    table.add_column("Coverage")

    for b in builds:
        status = "[green]active[/green]" if b.is_active else "[dim]archived[/dim]"
        table.add_row(
            str(b.build_number),
            b.id,
            b.version_id,
            status,
            format_timestamp(b.created_at),
            _coverage_cell(b),
        )
    console.print(table)


def render_build(build: Build) -> None:
    console.print(f"\n[bold cyan]Build #{build.build_number}[/bold cyan]  {build.id}")
    console.print(f"Project:  {build.project_id}")
    console.print(f"Version:  {build.version_id}")
    console.print(f"Status:   {build.status.value}")
    console.print(f"Archive:  {build.zip_url}")
    console.print(f"Created:  {format_timestamp(build.created_at)} by {build.created_by}")
    if build.archived_at:
        console.print(f"Archived: {format_timestamp(build.archived_at)} by {build.archived_by}")
    if build.coverage:
        s = build.coverage.summary
        console.print(f"Coverage: {build.coverage.report_url}")
        console.print(
            f"  components {s.components_with_stories}/{s.total_components}, "
            f"component {s.component_coverage:.0%}, prop {s.prop_coverage:.0%}, "
            f"variant {s.variant_coverage:.0%}, pass rate {s.pass_rate:.0%}, "
            f"failing {s.failing_stories}"
        )
        gate = build.coverage.quality_gate
        console.print(f"  quality gate: {'passed' if gate.passed else 'failed'}")
        for check in gate.checks:
            mark = "✓" if check.passed else "✗"
            console.print(f"    {mark} {check.name}: {check.actual} (threshold {check.threshold})")
    console.print()


@click.group()
def builds():
    """Inspect and manage tracked builds."""


@builds.command("list")
@click.argument("project")
@click.option("--status", type=click.Choice([s.value for s in BuildStatus]), default=None)
@click.option("--limit", default=50, type=int)
@click.option("--json", "as_json", is_flag=True)
@pass_context
def list_builds(ctx: CLIContext, project: str, status: Optional[str], limit: int, as_json: bool):
    """List builds for PROJECT, newest first."""
    try:
        async def fetch():
            async with ctx.metadata_store() as store:
                return await store.get_project_builds(
                    project,
                    status_filter=BuildStatus(status) if status else None,
                    limit=limit,
                )

        result = run(fetch())

        if as_json:
            click.echo(json.dumps([b.to_public_dict() for b in result], indent=2))
            return

        if not result:
            console.print(f"[yellow]No builds for project '{project}'[/yellow]")
            return

        render_builds(result, f"Builds: {project}")

    except Exception as e:
        handle_error(e, ctx.debug)


@builds.command("show")
@click.argument("project")
@click.argument("build_id")
@click.option("--json", "as_json", is_flag=True)
@pass_context
def show_build(ctx: CLIContext, project: str, build_id: str, as_json: bool):
    """Show one build."""
    try:
        async def fetch():
            async with ctx.metadata_store() as store:
                return await store.get_build(project, build_id)

        build = run(fetch())
        if build is None:
            raise InvalidParameterError(f"Build {build_id} not found in project {project}", parameter="build_id")

        if as_json:
            click.echo(json.dumps(build.to_public_dict(), indent=2))
        else:
            render_build(build)

    except Exception as e:
        handle_error(e, ctx.debug)


@builds.command("latest")
@click.argument("project")
@click.option("--json", "as_json", is_flag=True)
@pass_context
def latest_build(ctx: CLIContext, project: str, as_json: bool):
    """Show the highest-numbered active build."""
    try:
        async def fetch():
            async with ctx.metadata_store() as store:
                return await store.get_latest_build(project)

        build = run(fetch())
        if build is None:
            if as_json:
                click.echo("null")
            else:
                console.print(f"[yellow]No active builds for project '{project}'[/yellow]")
            return

        if as_json:
            click.echo(json.dumps(build.to_public_dict(), indent=2))
        else:
            render_build(build)

    except Exception as e:
        handle_error(e, ctx.debug)


@builds.command("archive")
@click.argument("project")
@click.argument("build_id")
@click.option("--user", default="cli", show_default=True, help="Recorded as archivedBy.")
@pass_context
def archive_build(ctx: CLIContext, project: str, build_id: str, user: str):
    """Archive a build (it stops being 'latest')."""
    try:
        async def archive():
            async with ctx.metadata_store() as store:
                await store.archive_build(project, build_id, user)

        run(archive())
        console.print(f"[green]✓ Archived build {build_id}[/green]")

    except Exception as e:
        handle_error(e, ctx.debug)


@builds.command("delete")
@click.argument("project")
@click.argument("build_id")
@click.option("--yes", is_flag=True, help="Skip confirmation.")
@pass_context
def delete_build(ctx: CLIContext, project: str, build_id: str, yes: bool):
    """Delete a build record. Its number is never reused."""
    try:
        if not yes:
            click.confirm(f"Delete build {build_id} from {project}?", abort=True)

        async def delete():
            async with ctx.metadata_store() as store:
                await store.delete_build(project, build_id)

        run(delete())
        console.print(f"[green]✓ Deleted build {build_id}[/green]")

    except click.Abort:
        raise
    except Exception as e:
        handle_error(e, ctx.debug)
