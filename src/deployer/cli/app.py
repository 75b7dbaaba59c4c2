"""
Root Typer application for the ``deployer`` command.
"""

from __future__ import annotations

import typer
from typer import Typer

from deployer import __version__

app = Typer(
    name="deployer",
    help="deployer: run configured deployment pipelines on queue messages.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"deployer {__version__}")
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
    """deployer CLI: run the daemon, publish requests, check pipeline files."""


# ── Sub-command registration ─────────────────────────────────────────────

from deployer.cli.config import app as config_app  # noqa: E402
from deployer.cli.publish import publish  # noqa: E402
from deployer.cli.run import run  # noqa: E402

app.command("run")(run)
app.command("publish")(publish)
app.add_typer(config_app, name="config", help="Pipeline file tools.")
