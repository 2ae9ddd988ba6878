import asyncio
import dataclasses
import sys
from typing import Any, Callable, Optional

import click
from click_option_group import optgroup
from loguru import logger
from rich.console import Console
from rich.table import Table

from cd48.device import CD48
from cd48.device.host import list_serial_ports
from cd48.device.mock import MockSerialDevice, MockSerialHost
from cd48.meas.counting import summarize_rates
from cd48.types import CD48Error, CD48Options, CoincidenceOptions
from cd48.util.defaults import (
    COINCIDENCE_WINDOW,
    DEFAULT_COINCIDENCE_CHANNEL,
    DEFAULT_LOGLEVEL,
    DEFAULT_MEASUREMENT_DURATION,
    DEFAULT_SINGLES_A_CHANNEL,
    DEFAULT_SINGLES_B_CHANNEL,
    DEFAULT_VENDOR_ID,
)
from cd48.util.export import save_measurements, to_csv, to_json
from cd48.util.logging import (
    format_error_response,
    get_log_filename,
    shutdown_client_log,
    start_client_log,
)

# count rates (counts/s) of the simulated counter used by --mock
MOCK_RATES = [1200.0, 900.0, 0.0, 0.0, 35.0, 0.0, 0.0, 0.0]


def print_tree(cmd, prefix="", parent_ctx=None):
    """Print command tree starting from given command."""
    ctx = click.Context(cmd, info_name=cmd.name, parent=parent_ctx)

    # Only print root name if no parent
    if not parent_ctx:
        click.echo(cmd.name)

    for sub in sorted(cmd.list_commands(ctx)):
        sub_cmd = cmd.get_command(ctx, sub)
        click.echo(f"{prefix}└── {sub}")
        if isinstance(sub_cmd, click.Group):
            print_tree(sub_cmd, prefix + "    ", ctx)


def tree_option(f):
    """Add --tree option to command."""

    def callback(ctx, param, value):
        if not value or ctx.resilient_parsing:
            return
        print_tree(ctx.command)
        ctx.exit()

    return click.option(
        "--tree",
        is_flag=True,
        help="Show command tree from this point",
        expose_value=False,
        is_eager=True,
        callback=callback,
    )(f)


def device_options(f):
    """Connection and logging options shared by every device command."""
    options = [
        optgroup.group("Connection"),
        optgroup.option(
            "--mock",
            is_flag=True,
            default=False,
            help="Use a simulated in-memory CD48 instead of a serial port",
        ),
        optgroup.option(
            "--config",
            "config_path",
            type=click.Path(exists=True, dir_okay=False),
            default=None,
            help="JSON file with CD48Options fields",
        ),
        optgroup.option(
            "--retries",
            "-r",
            type=click.IntRange(min=0),
            default=None,
            help="Extra attempts for timed-out commands (default: 3)",
        ),
        optgroup.option(
            "--timeout",
            "-t",
            type=click.FloatRange(min=0, min_open=True),
            default=None,
            help="Command timeout in seconds (default: 1.0)",
        ),
        optgroup.group("Logging"),
        optgroup.option(
            "--log-to-file/--no-log-to-file",
            "-ltf/",
            default=True,
            help="Enable/disable logging to file (default: enabled)",
        ),
        optgroup.option(
            "--log-to-stdout/--no-log-to-stdout",
            "-lts/",
            default=False,
            help="Enable/disable console logging (default: disabled)",
        ),
        optgroup.option(
            "--log-path",
            "-lp",
            default="",
            help="Custom path for log file (default: ~/.cd48/client.log)",
        ),
        optgroup.option(
            "--log-level",
            "-ll",
            default=DEFAULT_LOGLEVEL,
            help="Logging level (TRACE, DEBUG, INFO, WARNING, ERROR) (default: INFO)",
        ),
    ]
    for option in reversed(options):
        f = option(f)
    return f


def build_options(
    config_path: Optional[str] = None,
    retries: Optional[int] = None,
    timeout: Optional[float] = None,
    mock: bool = False,
) -> CD48Options:
    """Options from an optional JSON file, overridden by CLI flags."""
    opts = CD48Options.from_json_file(config_path) if config_path else CD48Options()
    overrides: dict[str, Any] = {}
    if retries is not None:
        overrides["command_retries"] = retries
    if timeout is not None:
        overrides["command_timeout"] = timeout
    if mock:
        # no firmware to wait for
        overrides["connection_init_delay"] = 0.0
    return dataclasses.replace(opts, **overrides) if overrides else opts


def make_device(options: CD48Options, mock: bool) -> CD48:
    if mock:
        host = MockSerialHost([MockSerialDevice(rates=MOCK_RATES)])
        return CD48(options, host=host)
    return CD48(options)


def run_device_command(
    kwargs: dict[str, Any], body: Callable[[CD48], Any]
) -> Any:
    """Configure logging, connect, run `body(cd48)` and always disconnect.

    CD48 errors become a click error (exit code 1) with the error message.
    """
    log_to_file = kwargs.pop("log_to_file")
    start_client_log(
        log_to_file=log_to_file,
        log_to_stdout=kwargs.pop("log_to_stdout"),
        log_path=kwargs.pop("log_path"),
        log_level=kwargs.pop("log_level").upper(),
    )
    mock = kwargs.pop("mock")
    try:
        options = build_options(
            kwargs.pop("config_path"), kwargs.pop("retries"), kwargs.pop("timeout"), mock
        )

        async def main():
            async with make_device(options, mock) as cd48:
                return await body(cd48)

        return asyncio.run(main())
    except CD48Error as err:
        logger.error("{}: {}\n{}", type(err).__name__, err, format_error_response())
        message = str(err)
        if log_to_file:
            message += f" (log: {get_log_filename()})"
        raise click.ClickException(message) from err
    finally:
        shutdown_client_log()


def emit(measurements, fmt: str, output: Optional[str]) -> bool:
    """Write json/csv to `output` or stdout; False for the text format."""
    if output:
        try:
            path = save_measurements(
                output, measurements, None if fmt == "text" else fmt
            )
        except ValueError as err:
            raise click.ClickException(str(err)) from err
        click.echo(f"Saved to {path}")
        return True
    if fmt == "json":
        click.echo(to_json(measurements))
        return True
    if fmt == "csv":
        click.echo(to_csv(measurements), nl=False)
        return True
    return False


def format_options(f):
    f = click.option(
        "--output",
        "-o",
        type=click.Path(dir_okay=False, writable=True),
        default=None,
        help="Save results to this file (.json or .csv)",
    )(f)
    return click.option(
        "--format",
        "-f",
        "fmt",
        type=click.Choice(["text", "json", "csv"]),
        default="text",
        help="Output format (default: text)",
    )(f)


@click.group()
@tree_option
def cli():
    """cd48 - CD48 coincidence counter control.

    - Serial port discovery

    - Firmware and counter readout

    - Count-rate and coincidence-rate measurements with Poisson uncertainties
    """
    pass


@cli.command()
@click.option(
    "--all",
    "show_all",
    is_flag=True,
    default=False,
    help="Show every serial port, not only CD48 (vendor id 0x04B4) ones",
)
def ports(show_all: bool):
    """List serial ports with their USB ids.

    By default only ports with the CD48's USB vendor id are shown.
    """
    ports = list_serial_ports(None if show_all else DEFAULT_VENDOR_ID)

    if not ports:
        click.echo("No matching serial ports found")
        return

    table = Table(title="Serial ports")
    table.add_column("Port", style="cyan")
    table.add_column("VID:PID")
    table.add_column("Description")
    table.add_column("Manufacturer")
    for p in ports:
        ids = f"{p.vid:04X}:{p.pid:04X}" if p.vid is not None else "-"
        table.add_row(p.device, ids, p.description or "", p.manufacturer or "")
    Console(file=sys.stdout).print(table)


@cli.command()
@device_options
def version(**kwargs):
    """Show firmware version and compatibility."""

    async def body(cd48: CD48):
        return await cd48.get_firmware_info()

    info = run_device_command(kwargs, body)
    status = "compatible" if info.is_compatible else "NOT compatible"
    click.echo(f"{info.version_string}")
    click.echo(f"Firmware {info.version} ({status}, minimum {info.minimum_version})")


@cli.command()
@device_options
@format_options
def counts(fmt: str, output: Optional[str], **kwargs):
    """Read (and clear) all counters."""

    async def body(cd48: CD48):
        return await cd48.get_counts()

    data = run_device_command(kwargs, body)
    if emit(data, fmt, output):
        return
    for channel, n in enumerate(data.counts):
        click.echo(f"ch{channel}: {n}")
    click.echo(f"overflow: {data.overflow:#010b}")


@cli.command()
@click.option(
    "--channel", "-c", type=click.IntRange(0, 7), default=0, help="Counter channel"
)
@click.option(
    "--duration",
    "-d",
    type=click.FloatRange(min=0, min_open=True),
    default=DEFAULT_MEASUREMENT_DURATION,
    help="Measurement window in seconds (default: 1.0)",
)
@click.option(
    "--repeats",
    "-n",
    type=click.IntRange(min=1),
    default=1,
    help="Number of back-to-back windows (default: 1)",
)
@device_options
@format_options
def rate(
    channel: int,
    duration: float,
    repeats: int,
    fmt: str,
    output: Optional[str],
    **kwargs,
):
    """Measure the count rate on one channel."""

    async def body(cd48: CD48):
        return await cd48.measure_rate_series(channel, duration, repeats)

    series = run_device_command(kwargs, body)
    if emit(series, fmt, output):
        return
    for m in series:
        click.echo(
            f"ch{m.channel}: {m.rate:.3f} +/- {m.uncertainty.rate:.3f} /s "
            + f"({m.counts} counts in {m.duration}s)"
        )
    if len(series) > 1:
        stats = summarize_rates(series)
        click.echo(
            f"mean: {stats['mean']:.3f} /s, std: {stats['std']:.3f} /s, "
            + f"sem: {stats['sem']:.3f} /s (n={stats['n']})"
        )


@cli.command()
@click.option(
    "--duration",
    "-d",
    type=click.FloatRange(min=0, min_open=True),
    default=DEFAULT_MEASUREMENT_DURATION,
    help="Measurement window in seconds (default: 1.0)",
)
@click.option(
    "--channel-a",
    "-a",
    type=click.IntRange(0, 7),
    default=DEFAULT_SINGLES_A_CHANNEL,
    help="Singles channel of detector A (default: 0)",
)
@click.option(
    "--channel-b",
    "-b",
    type=click.IntRange(0, 7),
    default=DEFAULT_SINGLES_B_CHANNEL,
    help="Singles channel of detector B (default: 1)",
)
@click.option(
    "--coincidence-channel",
    "-cc",
    type=click.IntRange(0, 7),
    default=DEFAULT_COINCIDENCE_CHANNEL,
    help="Coincidence (A AND B) channel (default: 4)",
)
@click.option(
    "--window",
    "-w",
    type=click.FloatRange(min=0),
    default=COINCIDENCE_WINDOW,
    help="Coincidence window in seconds (default: 25e-9)",
)
@device_options
@format_options
def coincidence(
    duration: float,
    channel_a: int,
    channel_b: int,
    coincidence_channel: int,
    window: float,
    fmt: str,
    output: Optional[str],
    **kwargs,
):
    """Measure singles and coincidence rates, correcting for accidentals."""
    options = CoincidenceOptions(
        duration=duration,
        singles_a_channel=channel_a,
        singles_b_channel=channel_b,
        coincidence_channel=coincidence_channel,
        coincidence_window=window,
    )

    async def body(cd48: CD48):
        return await cd48.measure_coincidence_rate(options)

    m = run_device_command(kwargs, body)
    if emit(m, fmt, output):
        return
    u = m.uncertainty
    click.echo(f"rate A: {m.rate_a:.3f} +/- {u.rate_a:.3f} /s")
    click.echo(f"rate B: {m.rate_b:.3f} +/- {u.rate_b:.3f} /s")
    click.echo(
        f"coincidences: {m.coincidence_rate:.3f} +/- {u.coincidence_rate:.3f} /s"
    )
    click.echo(f"accidentals: {m.accidental_rate:.3g} +/- {u.accidental_rate:.3g} /s")
    click.echo(
        f"true coincidences: {m.true_coincidence_rate:.3f} "
        + f"+/- {u.true_coincidence_rate:.3f} /s"
    )
