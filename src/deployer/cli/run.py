"""
CLI: ``deployer run``: start the deployer daemon.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer

from deployer.cli.utils import console, err_console
from deployer.core.errors import ConfigError


def run(
    config_file: Path | None = typer.Option(  # noqa: UP007
        None, "--config-file", "-c", help="Pipeline definition file [env: DEPLOYER_CONFIG_FILE]"
    ),
    broker_url: str | None = typer.Option(  # noqa: UP007
        None, "--broker-url", help="Broker URL [env: DEPLOYER_BROKER_URL]"
    ),
    queue: str | None = typer.Option(None, "--queue", "-q", help="Queue name [env: DEPLOYER_QUEUE]"),  # noqa: UP007
    debug: bool = typer.Option(False, "--debug", help="Debug logging with console output"),
    watch: bool = typer.Option(False, "--watch", help="Reload the pipeline file when it changes"),
    workers: int | None = typer.Option(  # noqa: UP007
        None, "--workers", "-w", help="Pipelines running at the same time"
    ),
    max_pending: int | None = typer.Option(  # noqa: UP007
        None, "--max-pending", help="Accepted requests waiting for a worker"
    ),
) -> None:
    """Consume deploy requests and run the configured pipelines.

    Unset options fall back to ``DEPLOYER_*`` environment variables.

    Example::

        deployer run --config-file deploy.yaml --broker-url redis://localhost:6379/0 --queue deploys
        DEPLOYER_CONFIG_WATCH=1 deployer run --workers 2
    """
    from deployer.core.settings import load_settings
    from deployer.service import DeployerService

    try:
        settings = load_settings(
            config_file=config_file,
            broker_url=broker_url,
            queue=queue,
            # Flags only override the environment when given.
            debug=debug or None,
            config_watch=watch or None,
            max_workers=workers,
            max_pending=max_pending,
        )
    except ConfigError as exc:
        err_console.print(f"[red]Configuration Error:[/red] {exc.message}")
        raise typer.Exit(code=1) from exc

    if settings.debug:
        console.print(
            f"[bold green]Starting deployer[/bold green] "
            f"(queue={settings.queue}, workers={settings.max_workers}, pending={settings.max_pending})"
        )

    service = DeployerService(settings)
    try:
        code = asyncio.run(service.run())
    except KeyboardInterrupt:
        code = 0
    raise typer.Exit(code=code)
