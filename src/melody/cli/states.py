"""State document commands: list."""

from __future__ import annotations

from typing import Optional

import click
from rich.table import Table

from ..errors import MelodyError
from ..models import Scope
from ..store import StateStore
from ._common import build_context, console, fail, home_option, machine_option


def register_state_commands(main: click.Group) -> None:
    """Register the states command group."""

    @main.group()
    def states():
        """Inspect captured state documents."""

    @states.command("list")
    @click.option("--template", "-t", "template_name", default=None, help="Only this template.")
    @home_option
    @machine_option
    def states_list(template_name: Optional[str], home: str, machine: Optional[str]):
        """List shared and machine state documents, newest first."""
        try:
            ctx = build_context(home, machine)
            store = StateStore(ctx.resolver)
            paths = store.list_states(Scope.SHARED, template_name=template_name)
            paths += store.list_states(Scope.MACHINE, ctx.settings.machine_id, template_name)
            rows = [store.describe(p) for p in paths]
        except MelodyError as exc:
            fail(exc)
            return

        if not rows:
            console.print("\n[dim]No state documents found.[/]\n")
            return

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Template", style="cyan")
        table.add_column("Version")
        table.add_column("Scope")
        table.add_column("Machine")
        table.add_column("Captured", style="dim")
        table.add_column("Rules", justify="right")
        table.add_column("Missing", justify="right")

        for r in rows:
            table.add_row(
                r["template"], r["version"], r["scope"], r["machine_id"],
                r["captured_at"][:19], str(r["rules"]), str(r["missing"]),
            )

        console.print(f"\n[bold]{len(rows)}[/] state document(s):\n")
        console.print(table)
        console.print()
