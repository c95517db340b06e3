"""
sbupload CLI entry point.
"""

import logging
from pathlib import Path

import click

from .context import CLIContext, console, handle_error, pass_context
from .commands.builds import builds
from .commands.keys import keys
from .. import __version__
from ..core.errors import ConfigError
from ..config import (
    DEFAULT_CONFIG_PATH,
    BlobConfig,
    MetadataBackend,
    MetadataConfig,
    Settings,
    build_api_key_store,
    build_blob_store,
    build_metadata_store,
    save_settings,
)

logger = logging.getLogger(__name__)


@click.group()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="Config file (default: ./.sbupload/config.yaml).")
@click.option("--log-level", default="INFO", show_default=True,
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
@click.option("--debug", is_flag=True, help="Show tracebacks on error.")
@click.version_option(version=__version__, prog_name="sbupload")
@click.pass_context
def cli(ctx, config_path, log_level, debug):
    """
    sbupload - Storybook build archive upload service.

    Stores archives, numbers builds per project and tracks coverage.
    """
    ctx.obj = CLIContext(config_path, log_level, debug)


@cli.command()
@click.option("--force", is_flag=True, help="Overwrite an existing config file.")
@pass_context
def init(ctx: CLIContext, force: bool):
    """Initialize a local workspace (SQLite metadata, local blobs)."""
    try:
        config_path = ctx.config_path or Path.cwd() / DEFAULT_CONFIG_PATH
        workspace = config_path.parent

        if config_path.exists() and not force:
            console.print(f"\n[yellow]⚠️  {config_path} already exists[/yellow]")
            console.print("\n   Use --force to reinitialize\n")
            return

        console.print("\n[bold]Initializing sbupload workspace...[/bold]\n")

        settings = Settings(
            metadata=MetadataConfig(
                backend=MetadataBackend.SQLITE,
                path=workspace / "metadata.db",
            ),
            blob=BlobConfig(path=workspace / "blobs"),
        )

        workspace.mkdir(parents=True, exist_ok=True)
        settings.blob.path.mkdir(parents=True, exist_ok=True)
        (workspace / ".gitignore").write_text("blobs/\n*.db\n*.db-wal\n*.db-shm\n")
        save_settings(settings, config_path)

        store = build_metadata_store(settings)
        ok, message = store.verify_schema()
        if not ok:
            raise ConfigError(message)

        console.print(f"✓ Wrote {config_path}")
        console.print(f"✓ Created blob directory {settings.blob.path}")
        console.print(f"✓ Initialized metadata database {settings.metadata.path}")
        console.print("\n[bold green]Workspace initialized![/bold green]")
        console.print("\nNext steps:")
        console.print("  1. Create a key: sbupload keys create <project> --name ci")
        console.print("  2. Serve:        sbupload serve\n")

    except Exception as e:
        handle_error(e, ctx.debug)


@cli.command()
@click.option("--host", default=None, help="Override server.host.")
@click.option("--port", default=None, type=int, help="Override server.port.")
@pass_context
def serve(ctx: CLIContext, host, port):
    """Run the upload HTTP service."""
    from aiohttp import web

    from ..api.app import create_app

    try:
        settings = ctx.settings
        app = create_app(
            build_blob_store(settings),
            metadata_store=build_metadata_store(settings),
            api_key_store=build_api_key_store(settings),
            server_config=settings.server,
        )
    except Exception as e:
        handle_error(e, ctx.debug)
        return

    host = host or settings.server.host
    port = port or settings.server.port
    logger.info(f"Serving on http://{host}:{port}")
    web.run_app(app, host=host, port=port, print=None)


cli.add_command(builds)
cli.add_command(keys)

if __name__ == "__main__":
    cli()
