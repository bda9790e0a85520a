"""Typer CLI for pvc-inspect."""

from __future__ import annotations

import signal
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path
from typing import Annotated

import typer

from pvc_inspect import __version__
from pvc_inspect.claims import format_claims, list_claims
from pvc_inspect.cluster import Kubectl
from pvc_inspect.config import (
    DEFAULT_NAMESPACE,
    DEFAULT_TEMPLATE,
    InspectConfig,
    SessionSpec,
)
from pvc_inspect.exceptions import (
    ClaimNotFoundError,
    ConfigError,
    CreationError,
    InspectError,
    MountError,
    TemplateError,
    TunnelError,
    WorkloadNotReadyError,
)
from pvc_inspect.session import InspectionSession
from pvc_inspect.sweeper import Sweeper
from pvc_inspect.templates import BUILTIN_TEMPLATES

app = typer.Typer(
    name="pvc-inspect",
    help="Mount a PVC on a throwaway pod, shell into it, and mount it locally if desired.",
    add_completion=False,
    context_settings={"help_option_names": ["-h", "--help"]},
)


def version_callback(value: bool) -> None:
    """Print version information and exit."""
    if value:
        typer.echo(f"pvc-inspect {__version__}")
        raise typer.Exit()


def list_templates_callback(value: bool) -> None:
    """Print the built-in templates and exit."""
    if value:
        width = max(len(name) for name in BUILTIN_TEMPLATES)
        for name, template in sorted(BUILTIN_TEMPLATES.items()):
            marker = " (default)" if name == DEFAULT_TEMPLATE else ""
            typer.echo(f"{name.ljust(width)}  {template.description}{marker}")
        raise typer.Exit()


@contextmanager
def _exit_on_signals() -> Iterator[None]:
    """Turn SIGINT/SIGTERM into SystemExit so that cleanup code runs."""
    previous = {
        signal.SIGINT: signal.signal(signal.SIGINT, lambda s, f: sys.exit(130)),
        signal.SIGTERM: signal.signal(signal.SIGTERM, lambda s, f: sys.exit(143)),
    }
    try:
        yield
    finally:
        for sig, handler in previous.items():
            if handler is not None:
                signal.signal(sig, handler)


def _failed_phase(error: InspectError) -> str:
    """Name the session phase an error belongs to."""
    phases: list[tuple[type[InspectError], str]] = [
        (TemplateError, "template"),
        (ClaimNotFoundError, "claim lookup"),
        (CreationError, "pod creation"),
        (WorkloadNotReadyError, "waiting for pod"),
        (TunnelError, "port forwarding"),
        (MountError, "local mount"),
    ]
    for error_type, phase in phases:
        if isinstance(error, error_type):
            return phase
    return "session"


def _run_cleanup(
    kubectl: Kubectl,
    config: InspectConfig,
    namespace: str | None,
    cleanup_min: int,
    wait: bool,
) -> int:
    sweeper = Sweeper(
        kubectl,
        delete_timeout=config.delete_timeout,
        watch_retries=config.watch_retries,
    )
    result = sweeper.sweep(
        namespace=namespace,
        min_age=timedelta(minutes=cleanup_min),
        wait=wait,
    )
    typer.echo(result.summary())
    for error in result.errors:
        typer.echo(f"Failed: {error}", err=True)
    return 1 if result.failed else 0


def _show_claims(kubectl: Kubectl, namespace: str) -> None:
    claims = list_claims(kubectl, namespace)
    if not claims:
        typer.echo(f"No volume claims found in namespace {namespace}.")
        return
    typer.echo(f"Volume claims in namespace {namespace}:")
    typer.echo(format_claims(claims))
    typer.echo("Provide the name of the volume claim to inspect.", err=True)


@app.command()
def main(
    name: Annotated[
        str | None,
        typer.Argument(help="Name of the PVC to inspect. If not provided, a list will be shown."),
    ] = None,
    namespace: Annotated[
        str | None,
        typer.Option(
            "--namespace", "-n",
            help="Namespace of the PVC (default: default; --cleanup: all namespaces).",
        ),
    ] = None,
    context: Annotated[
        str | None,
        typer.Option("--context", help="Kubeconfig context to use."),
    ] = None,
    mountpoint: Annotated[
        Path | None,
        typer.Option("--mountpoint", "-m", help="Mount the volume locally via SSHFS."),
    ] = None,
    template: Annotated[
        str,
        typer.Option("--template", "-t", help="Built-in pod template to use."),
    ] = DEFAULT_TEMPLATE,
    template_file: Annotated[
        Path | None,
        typer.Option("--template-file", help="Pod manifest (YAML/JSON) to use instead."),
    ] = None,
    port: Annotated[
        int | None,
        typer.Option("--port", help="Local port for the tunnel (default: any free port)."),
    ] = None,
    rw: Annotated[
        bool,
        typer.Option("--rw", help="Mount the volume in read/write mode rather than read only."),
    ] = False,
    nowait: Annotated[
        bool,
        typer.Option("--nowait", help="Do not wait until the pod has been deleted."),
    ] = False,
    ready_timeout: Annotated[
        int | None,
        typer.Option("--ready-timeout", help="Seconds to wait for the pod to be ready."),
    ] = None,
    cleanup: Annotated[
        bool,
        typer.Option("--cleanup", help="Cleanup stale pvc-inspect pods and exit."),
    ] = False,
    cleanup_min: Annotated[
        int,
        typer.Option("--cleanup-min", help="Age in minutes to cleanup pods."),
    ] = 4 * 60,
    list_templates: Annotated[
        bool,
        typer.Option(
            "--list-templates",
            callback=list_templates_callback,
            is_eager=True,
            help="List built-in templates and exit.",
        ),
    ] = False,
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-V",
            callback=version_callback,
            is_eager=True,
            help="Show pvc-inspect version and exit.",
        ),
    ] = False,
) -> None:
    """Mount a PVC on a throwaway pod, shell into it, and mount it locally if desired."""
    try:
        config = InspectConfig.from_env()
    except ConfigError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(2) from None
    if context:
        config.context = context
    if ready_timeout is not None:
        config.ready_timeout = ready_timeout

    kubectl = Kubectl(
        context=config.context,
        binary=config.kubectl,
        timeout=config.command_timeout,
    )

    if cleanup:
        try:
            exit_code = _run_cleanup(kubectl, config, namespace, cleanup_min, wait=not nowait)
        except InspectError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(2) from None
        raise typer.Exit(exit_code)

    ns = namespace or DEFAULT_NAMESPACE

    if name is None:
        typer.echo("No PVC name provided, listing...", err=True)
        try:
            _show_claims(kubectl, ns)
        except InspectError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(2) from None
        return

    spec = SessionSpec(
        claim=name,
        namespace=ns,
        template=template,
        template_file=template_file,
        mountpoint=mountpoint,
        read_write=rw,
        wait_for_deletion=not nowait,
        local_port=port,
    )
    session = InspectionSession(kubectl, spec, config)

    with _exit_on_signals():
        try:
            exit_code = session.run()
        except InspectError as e:
            typer.echo(f"Error ({_failed_phase(e)}): {e}", err=True)
            report = session.report
            if report is not None and report.delete_requested:
                typer.echo("The inspection pod was removed.", err=True)
            exit_code = 2

    report = session.report
    if report is not None and report.stranded:
        exit_code = 2
    raise typer.Exit(exit_code)
