"""Capture and restore commands."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import click

from ..capture import CaptureEngine
from ..errors import MelodyError
from ..restore import RestoreOrchestrator
from ..store import StateStore
from ._common import (
    build_context,
    console,
    ensure_key,
    fail,
    home_option,
    machine_option,
    print_result,
)

EXIT_PARTIAL = 2

workers_option = click.option("--workers", "-w", type=int, default=None, help="Concurrent rule workers.")
timeout_option = click.option("--timeout", type=float, default=None, help="Seconds allowed per system call.")
env_option = click.option(
    "--environment",
    type=click.Choice(["native", "virtualized"]),
    default=None,
    help="Run against native paths or a WSL-style /mnt mount.",
)


def register_run_commands(main: click.Group) -> None:
    """Register capture and restore."""

    @main.command("capture")
    @click.argument("template")
    @home_option
    @machine_option
    @workers_option
    @timeout_option
    @env_option
    def capture(
        template: str,
        home: str,
        machine: Optional[str],
        workers: Optional[int],
        timeout: Optional[float],
        environment: Optional[str],
    ):
        """Capture system state described by TEMPLATE.

        TEMPLATE is a template file or a library template name. The new
        state document is written under the template's scope.

        Examples:

            melody capture ssh

            melody capture ./my-apps.yaml --machine GAMING-RIG
        """
        try:
            ctx = build_context(home, machine, workers, timeout, environment)
            tmpl = ctx.library.find(template)
            ensure_key(ctx, tmpl)
            engine = CaptureEngine(
                ctx.capabilities,
                ctx.resolver,
                ctx.keys,
                max_workers=ctx.settings.max_workers,
                timeout=ctx.settings.timeout_seconds,
                key_id=ctx.settings.key_id,
            )
            console.print(f"\n[cyan]Capturing {tmpl.name} v{tmpl.version}...[/]")
            report = engine.capture(tmpl, ctx.settings.machine_id)
            path = StateStore(ctx.resolver).save(report.document, tmpl.document_scope)
        except MelodyError as exc:
            fail(exc)
            return

        print_result("Capture", report.result)
        console.print(f"State: [cyan]{path}[/]\n")
        if not report.result.ok:
            raise SystemExit(EXIT_PARTIAL)

    @main.command("restore")
    @click.argument("template")
    @click.option("--state", "state_file", type=click.Path(exists=True, dir_okay=False),
                  default=None, help="State document to restore (default: latest).")
    @click.option("--from-machine", default=None,
                  help="Restore the latest document captured on another machine.")
    @home_option
    @machine_option
    @workers_option
    @timeout_option
    @env_option
    def restore(
        template: str,
        state_file: Optional[str],
        from_machine: Optional[str],
        home: str,
        machine: Optional[str],
        workers: Optional[int],
        timeout: Optional[float],
        environment: Optional[str],
    ):
        """Restore state captured by TEMPLATE.

        Refuses to run if the state document was captured with a
        different template version.

        Examples:

            melody restore ssh

            melody restore terminal --state ~/.melody/shared/states/terminal/state-X.json
        """
        try:
            ctx = build_context(home, machine, workers, timeout, environment)
            tmpl = ctx.library.find(template)
            store = StateStore(ctx.resolver)
            if state_file:
                doc_path = Path(state_file)
            else:
                source_machine = from_machine or ctx.settings.machine_id
                doc_path = store.latest(tmpl.name, tmpl.document_scope, source_machine)
                if doc_path is None:
                    console.print(f"[red]No state captured for '{tmpl.name}'[/]")
                    raise SystemExit(1)
            document = store.load(doc_path)
            ensure_key(ctx, tmpl)
            orchestrator = RestoreOrchestrator(
                ctx.capabilities,
                ctx.resolver,
                ctx.keys,
                max_workers=ctx.settings.max_workers,
                timeout=ctx.settings.timeout_seconds,
            )
            console.print(f"\n[cyan]Restoring {tmpl.name} from {doc_path}...[/]")
            report = orchestrator.restore(tmpl, document, machine_id=ctx.settings.machine_id)
        except MelodyError as exc:
            fail(exc)
            return

        print_result(f"Restore {report.state.value}", report.result)
        console.print()
        if not report.completed:
            raise SystemExit(EXIT_PARTIAL)
