"""Command line tool for Tapo devices speaking KLAP."""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Callable
from contextlib import asynccontextmanager
from functools import singledispatch, update_wrapper
from gettext import gettext
from typing import Any, NoReturn

import asyncclick as click
from rich import print as _echo
from rich.logging import RichHandler

from .client import TapoClient
from .credentials import Credentials
from .device import DeviceInfo
from .discover import DiscoveryResult, ScanProgress, SubnetScanner
from .json import DataClassJSONMixin
from .json import dumps as json_dumps

# Commands that don't talk to a single device
NO_HOST_COMMANDS = {"discover", "subnets"}


def echo(*args, **kwargs) -> None:
    """Print a message, unless JSON output was requested."""
    ctx = click.get_current_context().find_root()
    if "json" not in ctx.params or ctx.params["json"] is False:
        _echo(*args, **kwargs)


def error(msg: str) -> NoReturn:
    """Print an error and exit."""
    echo(f"[bold red]{msg}[/bold red]")
    sys.exit(1)


def json_formatter_cb(result: Any, **kwargs) -> None:
    """Format and output the result as JSON, if requested."""
    if not kwargs.get("json"):
        return

    @singledispatch
    def to_serializable(val):
        return str(val)

    @to_serializable.register(DataClassJSONMixin)
    def _dataclass_to_serializable(val: DataClassJSONMixin):
        return val.to_dict()

    print(json_dumps(result, indent=True, default=to_serializable))


def CatchAllExceptions(cls):
    """Capture all exceptions and print them nicely."""

    def _handle_exception(debug, exc) -> None:
        if isinstance(exc, click.ClickException):
            raise
        if isinstance(exc, click.exceptions.Exit):
            sys.exit(exc.exit_code)
        if isinstance(exc, click.exceptions.Abort):
            sys.exit(0)

        echo(f"Raised error: {exc}")
        if debug:
            raise
        echo("Run with --debug enabled to see stacktrace")
        sys.exit(1)

    class _CommandCls(cls):
        _debug = False

        async def make_context(self, info_name, args, parent=None, **extra):
            self._debug = any(arg in ("--debug", "-d") for arg in args)
            try:
                return await super().make_context(
                    info_name, args, parent=parent, **extra
                )
            except Exception as exc:
                _handle_exception(self._debug, exc)

        async def invoke(self, ctx):
            try:
                return await super().invoke(ctx)
            except Exception as exc:
                _handle_exception(self._debug, exc)

        def __call__(self, *args, **kwargs):
            """Run the coroutine in the event loop and print any exceptions."""
            try:
                asyncio.run(self.main(*args, **kwargs))
            except KeyboardInterrupt:
                click.echo(gettext("\nAborted!"), file=sys.stderr)
                sys.exit(1)

    return _CommandCls


def pass_handle(wrapped_function: Callable) -> Callable:
    """Pass the client and the handle of the --host device to the command."""

    @click.pass_context
    async def wrapper(ctx: click.Context, *args, **kwargs):
        host = ctx.find_root().params.get("host")
        if not host:
            error(f"--host is required for {ctx.info_name}")
        client: TapoClient = ctx.obj
        handle = await client.connect(host)
        return await ctx.invoke(wrapped_function, client, handle, *args, **kwargs)

    return update_wrapper(wrapper, wrapped_function)


def _print_info(info: DeviceInfo) -> None:
    echo(f"[bold]== {info.name} - {info.model} ==[/bold]")
    echo(f"\tDevice ID: {info.device_id}")
    echo(f"\tType: {info.device_type}")
    echo(
        "\tDevice state: "
        + ("[green]ON[/green]" if info.is_on else "[red]OFF[/red]")
    )
    if info.brightness is not None:
        echo(f"\tBrightness: {info.brightness}%")
    if info.color_temp:
        echo(f"\tColor temperature: {info.color_temp}K")
    elif info.hue is not None:
        echo(f"\tHue: {info.hue} Saturation: {info.saturation}%")
    if info.signal_level is not None:
        echo(f"\tSignal level: {info.signal_level}")
    if info.overheated:
        echo("\t[bold red]Overheated[/bold red]")


def _print_discovered(result: DiscoveryResult) -> None:
    known = " (already configured)" if result.already_known else ""
    if result.authenticated and result.info:
        echo(f"[green]{result.host}[/green]{known}")
        _print_info(result.info)
    else:
        echo(
            f"[yellow]{result.host}[/yellow]{known}: "
            f"unable to authenticate: {result.auth_error}"
        )


@click.group(
    invoke_without_command=True,
    cls=CatchAllExceptions(click.Group),
    result_callback=json_formatter_cb,
)
@click.option(
    "--host",
    envvar="TAPO_HOST",
    required=False,
    help="The host name or IP address of the device to connect to.",
)
@click.option(
    "--username",
    default=None,
    required=False,
    envvar="TAPO_USERNAME",
    help="Username/email address to authenticate to device.",
)
@click.option(
    "--password",
    default=None,
    required=False,
    envvar="TAPO_PASSWORD",
    help="Password to use to authenticate to device.",
)
@click.option(
    "--timeout",
    envvar="TAPO_TIMEOUT",
    default=10,
    type=int,
    required=False,
    show_default=True,
    help="Timeout for device communications.",
)
@click.option(
    "-d",
    "--debug",
    envvar="TAPO_DEBUG",
    default=False,
    is_flag=True,
    help="Print debug output",
)
@click.option(
    "--json/--no-json",
    envvar="TAPO_JSON",
    default=False,
    is_flag=True,
    help="Output results as JSON.",
)
@click.version_option(package_name="python-tapoklap")
@click.pass_context
async def cli(ctx, host, username, password, timeout, debug, json):
    """A tool for controlling Tapo plugs and bulbs over KLAP."""
    # no need to perform any checks if we are just displaying the help
    if "--help" in sys.argv:
        ctx.obj = object()
        return

    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(show_time=False)],
    )

    if bool(password) != bool(username):
        raise click.BadOptionUsage(
            "username", "Using authentication requires both --username and --password"
        )

    credentials = Credentials(username, password) if username else None

    @asynccontextmanager
    async def async_wrapped_client(client: TapoClient):
        try:
            yield client
        finally:
            await client.close()

    ctx.obj = await ctx.with_async_resource(
        async_wrapped_client(TapoClient(credentials=credentials, timeout=timeout))
    )

    if ctx.invoked_subcommand is None:
        if host is None:
            echo("No host name given, trying discovery..")
            return await ctx.invoke(discover)
        return await ctx.invoke(state)


@cli.command()
@click.option(
    "--subnet",
    "subnets",
    multiple=True,
    help="Additional subnet to scan, e.g. 192.168.5.0. Can be repeated.",
)
@click.pass_obj
async def discover(client: TapoClient, subnets: tuple[str, ...]):
    """Scan local subnets for Tapo devices."""

    def _on_progress(progress: ScanProgress) -> None:
        echo(
            f"Scanning {progress.subnet}"
            f" ({progress.subnet_index}/{progress.subnet_count}):"
            f" {progress.scanned}/{progress.total}"
            f" ({progress.found} found)"
        )

    results = await client.discover(subnets, on_progress=_on_progress)
    echo(f"Found {len(results)} device(s)")
    for result in results:
        _print_discovered(result)
    return results


@cli.command()
async def subnets():
    """List the subnets discover scans by default."""
    found = SubnetScanner.get_local_subnets()
    for subnet in found:
        echo(subnet)
    return found


@cli.command()
@pass_handle
async def state(client: TapoClient, handle: str):
    """Print out the device state."""
    info = await client.get_device_info(handle)
    _print_info(info)
    return info


@cli.command()
@pass_handle
async def on(client: TapoClient, handle: str):
    """Turn the device on."""
    echo(f"Turning on {handle}")
    await client.turn_on(handle)
    return await client.get_device_info(handle)


@cli.command()
@pass_handle
async def off(client: TapoClient, handle: str):
    """Turn the device off."""
    echo(f"Turning off {handle}")
    await client.turn_off(handle)
    return await client.get_device_info(handle)


@cli.command()
@click.argument("brightness", type=click.IntRange(0, 100))
@pass_handle
async def brightness(client: TapoClient, handle: str, brightness: int):
    """Set the brightness in percent."""
    echo(f"Setting brightness to {brightness}")
    await client.set_brightness(handle, brightness)
    return await client.get_device_info(handle)


@cli.command()
@click.argument("hue", type=click.IntRange(0, 360))
@click.argument("saturation", type=click.IntRange(0, 100))
@pass_handle
async def hsv(client: TapoClient, handle: str, hue: int, saturation: int):
    """Set the hue and saturation."""
    echo(f"Setting HSV: {hue} {saturation}")
    await client.set_hsv(handle, hue, saturation)
    return await client.get_device_info(handle)


@cli.command()
@click.argument("color")
@pass_handle
async def color(client: TapoClient, handle: str, color: str):
    """Set a color given as hex string, e.g. #ff8800."""
    echo(f"Setting color to {color}")
    try:
        await client.set_color(handle, color)
    except ValueError as ex:
        raise click.BadParameter(str(ex), param_hint="color") from ex
    return await client.get_device_info(handle)


@cli.command()
@click.argument("temperature", type=int)
@pass_handle
async def temperature(client: TapoClient, handle: str, temperature: int):
    """Set the color temperature in kelvin, clamped to 2000-9000."""
    echo(f"Setting color temperature to {temperature}")
    await client.set_color_temp(handle, temperature)
    return await client.get_device_info(handle)


if __name__ == "__main__":
    cli()
