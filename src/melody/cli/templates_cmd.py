"""Template commands: validate, list, show."""

from __future__ import annotations

from pathlib import Path

import click
from rich.panel import Panel
from rich.table import Table

from ..errors import TemplateValidationError
from ..templates import TemplateLibrary, dump_template, load_template_file
from ._common import console, home_option


def register_template_commands(main: click.Group) -> None:
    """Register the validate command and the templates group."""

    @main.command("validate")
    @click.argument("template_file", type=click.Path(exists=True, dir_okay=False))
    def validate(template_file: str):
        """Validate a template file without touching the system.

        Examples:

            melody validate templates/ssh.yaml
        """
        try:
            template = load_template_file(template_file)
        except TemplateValidationError as exc:
            console.print(f"[bold red]INVALID[/] {template_file}")
            for problem in exc.problems:
                console.print(f"  [red]- {problem}[/]")
            raise SystemExit(1)

        console.print(Panel(
            f"[bold green]Valid template[/]\n"
            f"Name: {template.name}\n"
            f"Version: {template.version}\n"
            f"Scope: {template.scope.value}\n"
            f"Rules: {len(template.rules)} ({template.sensitive_count} sensitive)",
            title=Path(template_file).name,
            border_style="green",
        ))

    @main.group()
    def templates():
        """Browse the template library.

        Searches <home>/templates first, then the built-in templates.
        """

    @templates.command("list")
    @home_option
    def templates_list(home: str):
        """List available templates."""
        library = TemplateLibrary(Path(home))
        found = library.list_templates()

        if not found:
            console.print("\n[dim]No templates found.[/]\n")
            return

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Name", style="cyan")
        table.add_column("Version")
        table.add_column("Scope")
        table.add_column("Rules", justify="right")
        table.add_column("Description", style="dim")

        for t in found:
            table.add_row(t.name, t.version, t.scope.value, str(len(t.rules)), t.description or "")

        console.print(f"\n[bold]{len(found)}[/] template(s):\n")
        console.print(table)
        for path, exc in library.errors.items():
            console.print(f"[yellow]Skipped {path}: {exc}[/]")
        console.print()

    @templates.command("show")
    @click.argument("name")
    @home_option
    def templates_show(name: str, home: str):
        """Print a template as YAML."""
        try:
            template = TemplateLibrary(Path(home)).find(name)
        except TemplateValidationError as exc:
            console.print(f"[red]{exc}[/]")
            raise SystemExit(1)
        click.echo(dump_template(template))
