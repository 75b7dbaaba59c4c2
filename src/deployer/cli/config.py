"""
CLI: ``deployer config``: pipeline file inspection.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.table import Table

from deployer.cli.utils import console, err_console
from deployer.config.models import DeployablePipeline
from deployer.config.store import load_snapshot
from deployer.core.errors import ConfigError
from deployer.execution.substitution import find_placeholders

app = typer.Typer(no_args_is_help=True)


def data_references(pipeline: DeployablePipeline) -> set[str]:
    """Keys of every ``((data:...))`` placeholder in the pipeline's actions."""
    keys: set[str] = set()
    for action in pipeline.actions:
        for template in (action.work_dir, *action.command, *action.env.values()):
            keys.update(key for namespace, key in find_placeholders(template) if namespace == "data")
    return keys


@app.command("check")
def check(
    path: Path = typer.Argument(..., help="Pipeline definition file"),
) -> None:
    """Parse a pipeline file and summarise its deployables."""
    try:
        snapshot = load_snapshot(path)
    except ConfigError as exc:
        err_console.print(f"[red]Configuration Error:[/red] {exc.message}")
        raise typer.Exit(1) from exc

    table = Table(title=str(path))
    table.add_column("Tag", style="bold")
    table.add_column("Required data")
    table.add_column("Actions", justify="right")
    table.add_column("Data used")

    warnings: list[str] = []
    for pipeline in snapshot:
        used = data_references(pipeline)
        table.add_row(
            pipeline.tag,
            ", ".join(sorted(pipeline.required_data)) or "-",
            str(len(pipeline.actions)),
            ", ".join(sorted(used)) or "-",
        )
        # "tag" is always present in the request data.
        unchecked = used - pipeline.required_data - {"tag"}
        for key in sorted(unchecked):
            warnings.append(f"{pipeline.tag}: data:{key} is used but not in required-data")

    console.print(table)
    for warning in warnings:
        console.print(f"  [yellow]WARNING:[/yellow] {warning}")
    console.print(f"[green]✓[/green] {len(snapshot)} deployable(s)")
