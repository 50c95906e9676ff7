"""CLI commands for usbmux-client."""

import asyncio
from pathlib import Path

import click

from usbmux_client.config import Config, DaemonAddress
from usbmux_client.errors import ConnectionFailedError, UsbmuxError


def _address(config: Config, socket: str | None, host: str | None, port: int | None) -> DaemonAddress:
    """Resolve the daemon address, command-line overrides first."""
    if socket:
        return DaemonAddress(socket_path=socket)
    if host or port:
        return DaemonAddress(host=host or config.daemon.host, port=port or config.daemon.port)
    return config.daemon_address()


def _run(ctx: click.Context, coro_fn) -> None:
    """Run ``coro_fn(client)`` against a fresh client, reporting library errors cleanly."""
    from usbmux_client import logging as out
    from usbmux_client.client import UsbmuxClient

    obj = ctx.obj

    async def _main() -> None:
        async with UsbmuxClient(obj["config"], address=obj["address"]) as client:
            await coro_fn(client)

    try:
        asyncio.run(_main())
    except ConnectionFailedError as e:
        out.daemon_unreachable(str(obj["address"]), str(e.__cause__ or e))
        raise SystemExit(1) from None
    except UsbmuxError as e:
        out.error(str(e))
        raise SystemExit(1) from None


@click.group()
@click.version_option(package_name="usbmux-client")
@click.option("--config", "config_path", type=click.Path(path_type=Path), help="Config file")
@click.option("--socket", help="usbmuxd Unix socket path")
@click.option("--host", help="usbmuxd TCP host")
@click.option("--port", type=int, help="usbmuxd TCP port")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def main(
    ctx: click.Context,
    config_path: Path | None,
    socket: str | None,
    host: str | None,
    port: int | None,
    verbose: bool,
) -> None:
    """Query devices attached through usbmuxd."""
    from usbmux_client.logging import configure

    try:
        config = Config.load(config_path)
    except ValueError as e:
        raise click.ClickException(str(e)) from e

    configure(config, verbose=verbose)

    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    ctx.obj["config_path"] = config_path or config.config_path
    ctx.obj["address"] = _address(config, socket, host, port)


@main.command()
@click.pass_context
def devices(ctx: click.Context) -> None:
    """List attached devices."""
    from usbmux_client import logging as out

    async def _devices(client) -> None:
        found = await client.get_devices()
        if not found:
            out.no_devices()
            return
        for device_id, record in sorted(found.items(), key=lambda item: int(item[0])):
            out.device_line(device_id, record.properties)

    _run(ctx, _devices)


@main.command()
@click.argument("device_id", type=int)
@click.argument("key", required=False)
@click.pass_context
def query(ctx: click.Context, device_id: int, key: str | None) -> None:
    """Read lockdown values from a device.

    Prints KEY's value, or every value when KEY is omitted.
    """
    from usbmux_client import logging as out

    async def _query(client) -> None:
        if key is not None:
            out.value_line(key, await client.query_device_value(device_id, key))
            return
        values = await client.query_all_device_values(device_id)
        for name in sorted(values):
            out.value_line(name, values[name])

    _run(ctx, _query)


@main.group("config")
def config_group() -> None:
    """Manage the config file."""


@config_group.command("init")
@click.option("--force", is_flag=True, help="Overwrite an existing config file")
@click.pass_context
def config_init(ctx: click.Context, force: bool) -> None:
    """Write a config file with default values."""
    from usbmux_client import logging as out

    path: Path = ctx.obj["config_path"]
    if path.exists() and not force:
        out.config_exists(str(path))
        return
    Config().save(path)
    out.config_created(str(path))
