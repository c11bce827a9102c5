"""CLI entrypoint for relaychain."""

import logging
import signal
import threading
from pathlib import Path

import rich_click as click

from relaychain import __version__
from relaychain.controllers import InstanceCliController, PlanCommand, RunCommand
from relaychain.errors import InstanceError

click.rich_click.USE_MARKDOWN = True
INSTANCE_CONTROLLER = InstanceCliController()


@click.group()
@click.version_option(version=__version__, prog_name="relaychain")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def relaychain(verbose: bool) -> None:
    """Run chained and load-balanced proxy instances."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@relaychain.command("plan")
@click.argument("profile_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--show-config/--no-show-config",
    default=False,
    show_default=True,
    help="Print the aggregate core config JSON.",
)
def plan(profile_file: Path, show_config: bool) -> None:
    """Show ports, backends and chaining for a profile file without starting anything."""

    try:
        lines = INSTANCE_CONTROLLER.plan(
            PlanCommand(profile_file=profile_file, show_config=show_config),
        )
    except (InstanceError, ValueError, TypeError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@relaychain.command("run")
@click.argument("profile_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--scratch-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory for generated configs. Defaults to RELAYCHAIN_SCRATCH_DIR.",
)
@click.option(
    "--duration",
    "duration_seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Stop after this many seconds instead of waiting for Ctrl+C.",
)
def run(profile_file: Path, scratch_dir: Path | None, duration_seconds: float | None) -> None:
    """Start an instance for a profile file and keep it running."""

    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda signum, frame: stop.set())
    try:
        lines = INSTANCE_CONTROLLER.run(
            RunCommand(
                profile_file=profile_file,
                scratch_dir=scratch_dir,
                duration_seconds=duration_seconds,
            ),
            stop_event=stop,
        )
    except InstanceError as error:
        where = f" (port {error.port})" if error.port is not None else ""
        raise click.ClickException(f"{error}{where}") from error
    except (ValueError, TypeError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    relaychain()
