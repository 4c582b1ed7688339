"""Shared utilities for all CLI command modules.

Provides the Rich console instance, option helpers, and the wiring
that turns CLI flags plus config files into engine objects.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from .. import MELODY_HOME
from ..capabilities import CapabilitySet, local_capabilities
from ..config import MelodySettings, load_settings
from ..crypto import KeyCache, default_keys
from ..errors import MelodyError
from ..models import OperationResult
from ..paths import PathResolver
from ..templates import Template, TemplateLibrary

console = Console()

SECRET_ENV = "MELODY_SECRET"


@dataclass
class Context:
    """Everything a capture or restore command needs."""

    home: Path
    settings: MelodySettings
    resolver: PathResolver
    capabilities: CapabilitySet
    keys: KeyCache
    library: TemplateLibrary


def build_context(
    home: str,
    machine: Optional[str] = None,
    workers: Optional[int] = None,
    timeout: Optional[float] = None,
    environment: Optional[str] = None,
) -> Context:
    """Load settings for a machine and build the engine collaborators."""
    home_path = Path(home).expanduser()
    settings = load_settings(
        home_path,
        machine,
        overrides={
            "max_workers": workers,
            "timeout_seconds": timeout,
            "environment": environment,
        },
    )
    resolver = PathResolver(
        home_path,
        environment=settings.environment,
        mount_root=settings.mount_root,
    )
    return Context(
        home=home_path,
        settings=settings,
        resolver=resolver,
        capabilities=local_capabilities(settings.registry_root, settings.applications_root),
        keys=default_keys,
        library=TemplateLibrary(home_path),
    )


def ensure_key(ctx: Context, template: Template) -> None:
    """Derive the encryption key if the template has sensitive rules.

    The secret comes from $MELODY_SECRET, or a hidden prompt.
    """
    if not template.sensitive_count or ctx.keys.initialized:
        return
    secret = os.environ.get(SECRET_ENV)
    if not secret:
        secret = click.prompt("Encryption secret", hide_input=True)
    ctx.keys.init(secret.encode("utf-8"), key_id=ctx.settings.key_id)


def fail(exc: MelodyError) -> None:
    """Print an error and exit with status 1."""
    console.print(f"[red]{exc}[/]")
    raise SystemExit(1)


def print_result(title: str, result: OperationResult) -> None:
    """Render an OperationResult: counts plus a failure table."""
    status = "[green]OK[/]" if result.ok else "[red]FAILURES[/]"
    console.print(
        f"\n[bold]{title}[/] {status}  "
        f"total [bold]{result.total}[/]  "
        f"succeeded [green]{result.succeeded}[/]  "
        f"failed [red]{len(result.failed)}[/]  "
        f"missing [yellow]{result.missing}[/]"
    )
    if not result.failed:
        return
    table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
    table.add_column("Rule", style="cyan")
    table.add_column("Error", style="red")
    table.add_column("Reason", style="dim")
    for f in result.failed:
        table.add_row(f.rule_id, f.error, f.reason)
    console.print(table)


home_option = click.option(
    "--home",
    default=MELODY_HOME,
    type=click.Path(),
    help="Storage root (shared/ and <machine>/ live here).",
)
machine_option = click.option(
    "--machine", "-m",
    default=None,
    help="Machine id (defaults to this host's name).",
)
