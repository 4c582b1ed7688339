"""Path commands: resolve, translate."""

from __future__ import annotations

from pathlib import Path

import click

from ..errors import PathResolutionError
from ..paths import PathResolver
from ._common import console, home_option


def register_path_commands(main: click.Group) -> None:
    """Register the paths command group."""

    @main.group()
    def paths():
        """Inspect how logical paths map onto disk."""

    @paths.command("resolve")
    @click.argument("logical")
    @click.option("--scope", type=click.Choice(["shared", "machine"]), default="shared")
    @click.option("--machine", "-m", default=None, help="Machine id for machine scope.")
    @home_option
    def paths_resolve(logical: str, scope: str, machine: str, home: str):
        """Show where LOGICAL lives in the backup tree.

        Examples:

            melody paths resolve registry/theme.json --scope machine -m GAMING-RIG
        """
        try:
            click.echo(PathResolver(Path(home)).resolve(logical, scope, machine))
        except PathResolutionError as exc:
            console.print(f"[red]{exc}[/]")
            raise SystemExit(1)

    @paths.command("translate")
    @click.argument("path")
    @click.option("--to", "direction", type=click.Choice(["virtual", "native"]), required=True)
    @click.option("--mount-root", default="/mnt", help="Subsystem drive mount root.")
    def paths_translate(path: str, direction: str, mount_root: str):
        """Translate PATH between native and subsystem forms.

        Examples:

            melody paths translate 'C:\\Users\\me' --to virtual

            melody paths translate /mnt/c/Users/me --to native
        """
        resolver = PathResolver(Path("."), mount_root=mount_root)
        try:
            if direction == "virtual":
                click.echo(resolver.to_virtual(path))
            else:
                click.echo(resolver.to_native(path))
        except PathResolutionError as exc:
            console.print(f"[red]{exc}[/]")
            raise SystemExit(1)
