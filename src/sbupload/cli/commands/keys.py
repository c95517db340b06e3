"""
Per-project API key management.
"""

from __future__ import annotations

import json
from datetime import timedelta
from typing import Optional

import click
from rich.table import Table

from ..context import CLIContext, console, handle_error, pass_context, run
from ...core.types import format_timestamp, utc_now


@click.group()
def keys():
    """Create, list and revoke upload API keys."""


@keys.command("create")
@click.argument("project")
@click.option("--name", required=True, help="Human-readable label.")
@click.option("--created-by", default="cli", show_default=True)
@click.option("--expires-days", type=int, default=None, help="Expire after N days.")
@click.option("--json", "as_json", is_flag=True)
@pass_context
def create_key(
    ctx: CLIContext,
    project: str,
    name: str,
    created_by: str,
    expires_days: Optional[int],
    as_json: bool,
):
    """Create a key for PROJECT. The raw key is shown only once."""
    try:
        if expires_days is not None and expires_days <= 0:
            raise ValueError("--expires-days must be positive")
        expires_at = utc_now() + timedelta(days=expires_days) if expires_days else None

        async def create():
            async with ctx.api_key_store() as store:
                return await store.create_api_key(project, name, created_by, expires_at)

        created = run(create())

        if as_json:
            click.echo(json.dumps({**created.api_key.to_public_dict(), "key": created.raw_key}, indent=2))
            return

        console.print(f"[green]✓ Created key {created.api_key.id}[/green] for {project}")
        console.print(f"\n  [bold]{created.raw_key}[/bold]\n")
        console.print("[yellow]Store this key now; it cannot be shown again.[/yellow]")

    except Exception as e:
        handle_error(e, ctx.debug)


@keys.command("list")
@click.argument("project")
@click.option("--json", "as_json", is_flag=True)
@pass_context
def list_keys(ctx: CLIContext, project: str, as_json: bool):
    """List keys for PROJECT, newest first."""
    try:
        async def fetch():
            async with ctx.api_key_store() as store:
                return await store.list_api_keys(project)

        result = run(fetch())

        if as_json:
            click.echo(json.dumps([k.to_public_dict() for k in result], indent=2))
            return

        if not result:
            console.print(f"[yellow]No API keys for project '{project}'[/yellow]")
            return

        table = Table(title=f"API keys: {project}", show_header=True, header_style="bold cyan")
        table.add_column("ID")
        table.add_column("Name")
        table.add_column("Prefix")
        table.add_column("Status")
        table.add_column("Created")
        table.add_column("Last used")
        table.add_column("Expires")

        now = utc_now()
        for k in result:
            if k.status.value == "revoked":
                status = "[red]revoked[/red]"
            elif k.is_expired(now):
                status = "[yellow]expired[/yellow]"
            else:
                status = "[green]active[/green]"
            table.add_row(
                k.id,
                k.name,
                f"{k.prefix}...",
                status,
                format_timestamp(k.created_at),
                format_timestamp(k.last_used_at) if k.last_used_at else "-",
                format_timestamp(k.expires_at) if k.expires_at else "never",
            )
        console.print(table)

    except Exception as e:
        handle_error(e, ctx.debug)


@keys.command("revoke")
@click.argument("project")
@click.argument("key_id")
@click.option("--user", default="cli", show_default=True, help="Recorded as revokedBy.")
@pass_context
def revoke_key(ctx: CLIContext, project: str, key_id: str, user: str):
    """Revoke a key. Requests using it are rejected from now on."""
    try:
        async def revoke():
            async with ctx.api_key_store() as store:
                await store.revoke_api_key(project, key_id, user)

        run(revoke())
        console.print(f"[green]✓ Revoked key {key_id}[/green]")

    except Exception as e:
        handle_error(e, ctx.debug)
