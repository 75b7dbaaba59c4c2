"""
CLI: ``deployer publish``: put a deploy request on the queue.
"""

from __future__ import annotations

import asyncio

import typer

from deployer.cli.utils import console, err_console
from deployer.core.errors import BrokerError
from deployer.messaging.broker import RedisBroker
from deployer.messaging.message import DeployRequest, parse_data_pairs


async def _publish(broker_url: str, queue: str, body: bytes) -> None:
    broker = RedisBroker(broker_url, queue)
    try:
        await broker.connect()
        await broker.publish(body)
    finally:
        await broker.close()


def publish(
    tag: str = typer.Option(..., "--tag", "-t", help="Deployable tag"),
    data: list[str] | None = typer.Option(  # noqa: UP007
        None, "--data", "-d", help="Request data as key=value (repeatable)"
    ),
    broker_url: str = typer.Option(..., "--broker-url", envvar="DEPLOYER_BROKER_URL", help="Broker URL"),
    queue: str = typer.Option(..., "--queue", "-q", envvar="DEPLOYER_QUEUE", help="Queue name"),
) -> None:
    """Publish one deploy request.

    Example::

        deployer publish --tag web --data version=1.4.2 --data env=prod
    """
    try:
        values = parse_data_pairs(data or [])
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--data") from exc

    request = DeployRequest.build(tag, values)
    try:
        asyncio.run(_publish(broker_url, queue, request.encode()))
    except BrokerError as exc:
        err_console.print(f"[red]Broker Error:[/red] {exc.message}")
        raise typer.Exit(code=1) from exc

    console.print(f"[green]✓[/green] Published [bold]{tag}[/bold] to {queue} ({len(values)} data key(s))")
