#!/usr/bin/env python3
"""Main CLI entry point for the connector runner using Typer.

stdout belongs to the event protocol, so every human-facing message here
goes to stderr.
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import typer
from typing_extensions import Annotated

from .. import __version__
from ..capture.browser_factory import BrowserFactory
from ..config import RunnerConfiguration, load_configuration, print_configuration, setup_logging
from ..dispatcher import CommandDispatcher, ExitCode
from ..exceptions import ConfigurationError
from ..protocol.emitter import EventEmitter
from ..session.manager import SessionManager
from ..session.sandbox import ConnectorSandbox

logger = logging.getLogger(__name__)


app = typer.Typer(
    name="connector-runner",
    help="Connector Runner - browser automation sidecar for data connectors",
    add_completion=False,
)


@app.callback()
def main():
    """
    Connector Runner - browser automation sidecar for data connectors.

    Reads JSON-line commands on stdin and writes JSON-line events on stdout.
    """
    pass


@app.command(name="version")
def show_version():
    """Show version information."""
    typer.echo(f"Connector Runner v{__version__}")


def build_dispatcher(config: RunnerConfiguration, emitter: Optional[EventEmitter] = None) -> CommandDispatcher:
    """Wire emitter, browser factory, sandbox and session manager from configuration."""
    emitter = emitter or EventEmitter()
    factory = BrowserFactory(config.browser.to_browser_config())
    sandbox = ConnectorSandbox(
        entry_point=config.sandbox.entry_point,
        unwrap_results=config.sandbox.unwrap_results,
    )
    manager = SessionManager(
        emitter,
        factory,
        sandbox,
        capture_enabled=config.capture.enabled,
        wait_until=config.browser.wait_until,
        completion_linger_ms=config.session.completion_linger_ms,
        shutdown_timeout_s=config.session.shutdown_timeout_s,
        prompt_poll_interval_ms=config.session.prompt_poll_interval_ms,
    )
    return CommandDispatcher(manager, emitter, exit_after_run=config.session.exit_after_run)


@app.command()
def serve(
    config_file: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Path to configuration file (YAML or JSON)")
    ] = None,

    exit_after_run: Annotated[
        Optional[bool],
        typer.Option("--exit-after-run/--no-exit-after-run", help="Exit once the first run finishes")
    ] = None,

    headful: Annotated[
        bool,
        typer.Option("--headful", help="Open visible browser windows for every run")
    ] = False,

    executable_path: Annotated[
        Optional[str],
        typer.Option("--executable-path", help="Browser executable to launch")
    ] = None,

    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Debug logging on stderr")
    ] = False,

    print_config: Annotated[
        bool,
        typer.Option("--print-config", help="Print effective configuration and exit")
    ] = False,
):
    """
    Serve commands from stdin until quit or end of input.

    Examples:

        # Typical sidecar launch by the parent process
        connector-runner serve

        # Single run, then exit with 0 (COMPLETE/STOPPED) or 1 (ERROR)
        echo '{"type":"run","runId":"r1","connectorPath":"c.py","url":"https://example.com"}' \\
            | connector-runner serve --exit-after-run
    """
    cli_overrides: Dict[str, Any] = {}
    if exit_after_run is not None:
        cli_overrides.setdefault("session", {})["exit_after_run"] = exit_after_run
    if headful:
        cli_overrides.setdefault("browser", {})["headful"] = True
    if executable_path:
        cli_overrides.setdefault("browser", {})["executable_path"] = executable_path
    if verbose:
        cli_overrides.setdefault("logging", {})["level"] = "DEBUG"

    try:
        config = load_configuration(config_file=config_file, cli_overrides=cli_overrides)
    except ConfigurationError as e:
        typer.echo(f"❌ Configuration error: {e.message}", err=True)
        raise typer.Exit(code=ExitCode.CONFIG_ERROR.value)

    if print_config:
        typer.echo("# Effective Configuration")
        typer.echo("# Loaded from: " + " -> ".join(config.loaded_from))
        typer.echo(print_configuration(config, "yaml"))
        raise typer.Exit()

    setup_logging(config)
    logger.info(f"Connector Runner v{__version__} starting (config: {' -> '.join(config.loaded_from)})")

    dispatcher = build_dispatcher(config)

    try:
        exit_code = asyncio.run(dispatcher.run())
    except KeyboardInterrupt:
        logger.info("Interrupted")
        raise typer.Exit(code=ExitCode.SUCCESS.value)

    sys.exit(int(exit_code))


def cli_main():
    """Entry point for console script."""
    app()


if __name__ == "__main__":
    app()
