"""Click-based CLI to run programs under the kernel bridge from a terminal."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import click

from kernel_bridge.cli.terminal import TerminalHost
from kernel_bridge.comms import render_bootstrap_html
from kernel_bridge.config import BridgeSettings, load_settings
from kernel_bridge.runner import CellExecutor, CommandExecutionError, ResourceError


@dataclass
class CLIState:
    settings: BridgeSettings


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path, dir_okay=False, exists=True),
    help="TOML settings file (defaults to $KERNEL_BRIDGE_CONFIG).",
)
@click.option("--verbose", is_flag=True, default=False, help="Log debug information to stderr.")
@click.pass_context
def app(ctx: click.Context, config_path: Path | None, verbose: bool) -> None:
    """Run programs connected to the kernel bridge."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = CLIState(settings=load_settings(config_path))


@app.command(context_settings={"ignore_unknown_options": True})
@click.option("--cwd", type=click.Path(path_type=Path, file_okay=False, exists=True))
@click.option("--timeout", type=float, default=None, help="Kill the program after N seconds.")
@click.argument("argv", nargs=-1, required=True, type=click.UNPROCESSED)
@click.pass_obj
def run(state: CLIState, cwd: Path | None, timeout: float | None, argv: tuple[str, ...]) -> None:
    """Execute ARGV, rendering its display records and prompts in the terminal."""

    executor = CellExecutor(TerminalHost(), settings=state.settings.pipes)
    try:
        result = executor.run(argv, cwd=cwd, timeout=timeout)
    except (CommandExecutionError, ResourceError) as exc:
        raise click.ClickException(str(exc)) from exc
    if result.timed_out:
        click.echo(f"Timed out after {timeout} seconds.", err=True)
    raise SystemExit(1 if result.exit_code is None else result.exit_code)


@app.command()
@click.option("--target-name", default=None, help="Comm target name the front-end opens.")
@click.pass_obj
def bootstrap(state: CLIState, target_name: str | None) -> None:
    """Print the HTML that bootstraps the control channel in a front-end."""

    click.echo(render_bootstrap_html(target_name or state.settings.comm.target_name))


if __name__ == "__main__":  # pragma: no cover
    app()
