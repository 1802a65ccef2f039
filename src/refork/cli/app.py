"""
Root Typer application for the refork CLI.

``refork serve`` binds the listeners in the monitor, loads the WSGI
application and runs the control loop until shutdown; its exit status
is the loop's (0 after a requested shutdown, 1 when no mold could be
kept alive, 2 on bad configuration).  ``refork probe`` checks that some
worker answers HTTP on an address.
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as pkg_version
from pathlib import Path

import typer
from rich.markup import escape

from refork.cli.utils import console, err_console, fail, parse_thresholds
from refork.core.errors import ConfigError
from refork.core.logging import configure_logging, get_logger

app = typer.Typer(
    name="refork",
    help="refork: pre-forking WSGI supervisor that reforks warm workers into new molds.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

EXIT_CONFIG = 2


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        try:
            v = pkg_version("refork")
        except PackageNotFoundError:
            from refork import __version__ as v
        typer.echo(f"refork {v}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """refork CLI: serve a WSGI application and probe it."""


# ── serve ────────────────────────────────────────────────────────────────


@app.command("serve")
def serve(
    application: str | None = typer.Argument(None, help="WSGI application as module:callable"),
    config_path: Path | None = typer.Option(None, "--config", "-c", help="Python config module"),
    workers: int | None = typer.Option(None, "--workers", "-w", help="Number of worker processes"),
    listen: list[str] | None = typer.Option(None, "--listen", "-l", help="host:port, port or unix:/path (repeatable)"),
    refork_after: str | None = typer.Option(None, "--refork-after", help="Thresholds, e.g. 50,100,none"),
    threshold_mode: str | None = typer.Option(None, "--threshold-mode", help="per_generation or per_worker"),
    spawn_timeout: float | None = typer.Option(None, "--spawn-timeout", help="Seconds a child may take to boot"),
    backoff_delay: float | None = typer.Option(None, "--backoff-delay", help="Seconds before retrying a failed refork"),
    log_level: str | None = typer.Option(None, "--log-level", help="DEBUG, INFO, WARNING, ERROR"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit JSON log lines"),
) -> None:
    """Run the supervisor in the foreground."""
    from refork.core.settings import load_config
    from refork.runtime.fork import ForkBackend
    from refork.runtime.listeners import bind_all, bound_address
    from refork.runtime.wsgi import load_app
    from refork.supervision.control import ControlLoop

    try:
        config = load_config(
            config_path,
            app=application,
            worker_processes=workers,
            listen=listen or None,
            refork_after=parse_thresholds(refork_after),
            refork_threshold_mode=threshold_mode,
            spawn_timeout=spawn_timeout,
            backoff_delay=backoff_delay,
            log_level=log_level,
            log_format="json" if json_logs else None,
        )
    except ConfigError as e:
        raise fail(e, EXIT_CONFIG) from e

    settings = config.settings
    configure_logging(level=settings.log_level, json_format=settings.log_format == "json")
    logger = get_logger("refork.cli")

    try:
        wsgi_app = load_app(settings.app) if settings.app else None
        listeners = bind_all(settings.listen)
    except ConfigError as e:
        raise fail(e, EXIT_CONFIG) from e

    if wsgi_app is None:
        logger.warning("no_application", hint="workers will not accept connections")
    for sock in listeners:
        logger.info("listening", address=bound_address(sock))

    backend = ForkBackend(settings, hooks=config.hooks, app=wsgi_app, listeners=listeners)
    loop = ControlLoop(settings, backend)
    try:
        code = loop.run()
    finally:
        for sock in listeners:
            sock.close()
    raise typer.Exit(code=code)


# ── probe ────────────────────────────────────────────────────────────────


@app.command("probe")
def probe(
    address: str = typer.Argument(..., help="host:port, port or unix:/path"),
    timeout: float = typer.Option(1.0, "--timeout", "-t", help="Seconds to wait for a response"),
    path: str = typer.Option("/", "--path", help="Request path"),
) -> None:
    """Exit 0 if some worker answers HTTP on ADDRESS, 1 otherwise."""
    from refork.runtime.probe import probe as run_probe

    try:
        healthy = run_probe(address, timeout=timeout, path=path)
    except ConfigError as e:
        raise fail(e, EXIT_CONFIG) from e
    if healthy:
        console.print(f"[green]ok[/green] {escape(address)}")
        return
    err_console.print(f"[red]unreachable[/red] {escape(address)}")
    raise typer.Exit(code=1)
