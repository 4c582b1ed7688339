"""
Melody CLI — capture and restore machine state from templates.

The main Click group is defined here and all subcommands are
registered via register functions from their own modules.

Entry point: melody.cli:main
"""

from __future__ import annotations

import logging

import click

from .. import __version__

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="melody")
@click.option("--verbose", "-v", is_flag=True, help="Log engine activity to stderr.")
def main(verbose: bool):
    """Melody Recovery — template-driven machine state backup.

    Shared settings travel everywhere. Machine settings stay home.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format=LOG_FORMAT,
    )


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .templates_cmd import register_template_commands
from .run import register_run_commands
from .states import register_state_commands
from .paths_cmd import register_path_commands

register_template_commands(main)
register_run_commands(main)
register_state_commands(main)
register_path_commands(main)
