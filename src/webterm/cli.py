"""CLI entry point for webterm."""

from __future__ import annotations

import logging
import shlex

import typer
import uvicorn

from webterm import __version__
from webterm.config import WebTermConfig

app = typer.Typer(
    name="webterm",
    help="Persistent named shells you can drive from a browser.",
    no_args_is_help=True,
)


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


@app.command()
def serve(
    host: str | None = typer.Option(
        None, "--host", "-H", help="Address to listen on (default: from env/config)."
    ),
    port: int | None = typer.Option(
        None, "--port", "-p", help="Port to listen on (default: from env/config)."
    ),
    shell: str | None = typer.Option(
        None,
        "--shell",
        "-s",
        help="Shell command line for new sessions (default: 'bash --login').",
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Serve the session API and terminal streams."""
    setup_logging(verbose)

    config = WebTermConfig.load(config_file)
    if host:
        config.server.host = host
    if port:
        config.server.port = port
    if shell:
        config.session.shell = shlex.split(shell)

    from webterm.server.app import create_app

    typer.echo(f"webterm v{__version__}")
    typer.echo(f"Listening on: http://{config.server.host}:{config.server.port}")
    typer.echo(f"Shell: {' '.join(config.session.shell)}")
    typer.echo("---")

    # Protocol-level pings every ping_interval; a peer that stays silent for
    # pong_wait in total is disconnected.
    uvicorn.run(
        create_app(config),
        host=config.server.host,
        port=config.server.port,
        log_level="debug" if verbose else config.server.log_level,
        ws_ping_interval=config.stream.ping_interval,
        ws_ping_timeout=config.stream.pong_wait - config.stream.ping_interval,
    )


@app.command()
def version() -> None:
    """Print the webterm version."""
    typer.echo(f"webterm v{__version__}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
