"""
Shared CLI plumbing: settings, logging, store access, error reporting.
"""

from __future__ import annotations

import asyncio
import logging
import sys
import traceback
from pathlib import Path
from typing import Optional

import click
from rich.console import Console

from ..config import Settings, build_api_key_store, build_metadata_store, load_settings
from ..core.errors import ConfigError, ExitCode, SBUploadError

console = Console()


class CLIContext:
    def __init__(self, config_path: Optional[str], log_level: str, debug: bool):
        self.config_path = Path(config_path) if config_path else None
        self.debug = debug
        self._settings: Optional[Settings] = None

        logging.basicConfig(
            level=getattr(logging, log_level.upper()),
            format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        )

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = load_settings(self.config_path)
        return self._settings

    def metadata_store(self):
        store = build_metadata_store(self.settings)
        if store is None:
            raise ConfigError(
                "No metadata backend configured. Set metadata.backend in the config "
                "file or SBUPLOAD_METADATA_BACKEND."
            )
        return store

    def api_key_store(self):
        store = build_api_key_store(self.settings)
        if store is None:
            raise ConfigError("API keys need a sqlite or firestore metadata backend.")
        return store


pass_context = click.make_pass_decorator(CLIContext)


def run(coro):
    """Drive one async store operation from a synchronous command."""
    return asyncio.run(coro)


def handle_error(exc: Exception, debug: bool) -> None:
    if isinstance(exc, SBUploadError):
        console.print(f"[red]{exc.category.value}:[/red] {exc.message}")
        if debug:
            console.print(exc.format())
        sys.exit(exc.exit_code.value)

    if isinstance(exc, ValueError):
        console.print(f"[red]Invalid input:[/red] {exc}")
        sys.exit(ExitCode.USER_ERROR.value)

    if debug:
        console.print("[red]Unexpected error:[/red]")
        traceback.print_exc()
    else:
        console.print(f"[red]Unexpected error:[/red] {exc}")
        console.print("Run with --debug for traceback.")
    sys.exit(ExitCode.INTERNAL_ERROR.value)
