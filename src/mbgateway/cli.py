#!/usr/bin/env python3
"""Command line for mbgateway using Typer: serve the HTTP bridge, poll for alarms, read and write characteristics."""

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

import typer
from typing_extensions import Annotated

from . import __version__  # type: ignore
from .codec import to_json
from .engine import PollingSettings
from .errors import (
    CharacteristicNotFoundError,
    ConfigurationError,
    InvalidArgumentError,
    TransportError,
)
from .gateway import Gateway
from .link import on_address
from .registry import RegisterRegistry, load_register_map
from .transport import PymodbusTransport, TransportConfig
from .types import CharacteristicDescriptor, ValueType

app = typer.Typer(
    name="mbgateway",
    help="Typed Modbus register access, alarm polling and HTTP bridge.",
    no_args_is_help=True,
)

logger = logging.getLogger(__name__)

# ============================================================================
# Shared options and helpers
# ============================================================================

ModeOption = Annotated[
    str,
    typer.Option("--mode", "-m", help="Field-bus transport: tcp, rtu or ascii", envvar="MBGW_MODE"),
]
HostOption = Annotated[
    str,
    typer.Option("--host", "-h", help="Modbus TCP hostname or IP address", envvar="MBGW_HOST"),
]
PortOption = Annotated[
    int,
    typer.Option("--port", "-p", help="Modbus TCP port", envvar="MBGW_PORT"),
]
SerialPortOption = Annotated[
    str,
    typer.Option("--serial-port", help="Serial device for rtu/ascii mode", envvar="MBGW_SERIAL_PORT"),
]
BaudrateOption = Annotated[
    int,
    typer.Option("--baudrate", help="Serial speed", envvar="MBGW_BAUDRATE"),
]
ParityOption = Annotated[
    str,
    typer.Option("--parity", help="Serial parity: N, E or O", envvar="MBGW_PARITY"),
]
TimeoutOption = Annotated[
    float,
    typer.Option("--timeout", "-t", help="Per-exchange timeout in seconds", envvar="MBGW_TIMEOUT"),
]
RetriesOption = Annotated[
    int,
    typer.Option("--retries", "-r", help="Transport retries per exchange", envvar="MBGW_RETRIES"),
]
MapOption = Annotated[
    Optional[Path],
    typer.Option("--map", help="Register map JSON (default: packaged map)", envvar="MBGW_MAP"),
]
MaxRetryOption = Annotated[
    int,
    typer.Option("--max-retry", help="Polling sweeps before giving up", envvar="MBGW_MAX_RETRY"),
]
PollDelayOption = Annotated[
    float,
    typer.Option("--poll-delay", help="Seconds between characteristic reads", envvar="MBGW_POLL_DELAY"),
]
SweepDelayOption = Annotated[
    float,
    typer.Option("--sweep-delay", help="Seconds between sweeps", envvar="MBGW_SWEEP_DELAY"),
]
VerboseOption = Annotated[
    bool,
    typer.Option("--verbose", "-v", help="Enable debug logging"),
]
JsonOption = Annotated[
    bool,
    typer.Option("--json", help="Output as JSON"),
]


def setup_logging(verbose: bool, default_level: int = logging.WARNING) -> None:
    """Configure logging based on verbose flag."""
    level = logging.DEBUG if verbose else default_level
    logging.basicConfig(
        level=level,
        format="%(levelname)s: %(message)s" if not verbose else "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def load_registry(map_path: Optional[Path]) -> RegisterRegistry:
    return load_register_map(map_path)


def create_gateway(
    mode: str,
    host: str,
    port: int,
    serial_port: str,
    baudrate: int,
    parity: str,
    timeout: float,
    retries: int,
    map_path: Optional[Path],
    settings: PollingSettings | None = None,
) -> Gateway:
    """Build the registry, transport and gateway from command-line settings."""
    if mode not in ("tcp", "rtu", "ascii"):
        typer.echo(f"Error: --mode must be tcp, rtu or ascii, got {mode!r}", err=True)
        raise typer.Exit(2)
    registry = load_registry(map_path)
    transport = PymodbusTransport(
        TransportConfig(
            mode=mode,
            host=host,
            port=port,
            serial_port=serial_port,
            baudrate=baudrate,
            parity=parity.upper(),
            timeout=timeout,
            retries=retries,
        )
    )
    return Gateway(registry, transport, settings)


def parse_value(value: str, descriptor: CharacteristicDescriptor) -> Any:
    """Parse a command-line value for the characteristic's type."""
    if descriptor.value_type is ValueType.ASCII:
        return value
    v = value.lower().strip()
    if v in ("true", "on", "yes"):
        return 1
    if v in ("false", "off", "no"):
        return 0
    if v.startswith("0x"):
        return int(v, 16)
    if descriptor.value_type is ValueType.FLOAT:
        return float(v)
    return int(v)


def describe_characteristic(d: CharacteristicDescriptor) -> dict[str, Any]:
    return {
        "cid": d.cid,
        "name": d.name,
        "units": d.units,
        "device_address": d.device_address,
        "register_kind": d.register_kind.value,
        "register_start": d.register_start,
        "register_count": d.register_count,
        "storage_offset": d.storage_offset,
        "value_type": d.value_type.value,
        "value_size": d.value_size,
        "limits": [d.limits.opt1, d.limits.opt2, d.limits.opt3],
    }


def _fail(message: str, code: int, verbose: bool = False) -> typer.Exit:
    typer.echo(f"Error: {message}", err=True)
    if verbose and code == 4:
        import traceback
        traceback.print_exc()
    return typer.Exit(code)


# ============================================================================
# Commands
# ============================================================================

@app.command()
def info(
    map_path: MapOption = None,
    verbose: VerboseOption = False,
    json_output: JsonOption = False,
) -> None:
    """
    Show package version, CPU cores and a summary of the register map.

    Does not require a connection.
    """
    setup_logging(verbose)

    try:
        registry = load_registry(map_path)
    except (ConfigurationError, OSError) as e:
        raise _fail(f"Register map: {e}", 2)

    info_data = {
        "version": __version__,
        "cores": os.cpu_count() or 1,
        "characteristics": len(registry),
        "test_cid": registry.test_cid,
    }
    if json_output:
        typer.echo(json.dumps(info_data, indent=2))
    else:
        typer.echo(f"mbgateway version: {info_data['version']}")
        typer.echo(f"Cores: {info_data['cores']}")
        typer.echo(f"Characteristics: {info_data['characteristics']}")
        if registry.test_cid is not None:
            typer.echo(f"Test CID: {registry.test_cid}")


@app.command()
def describe(
    cid: Annotated[Optional[int], typer.Argument(help="Characteristic to describe (default: all)")] = None,
    map_path: MapOption = None,
    verbose: VerboseOption = False,
    json_output: JsonOption = False,
) -> None:
    """
    Show the register map: kind, registers, storage offset, type and limits.

    Does not require a connection; also checks that each storage offset resolves.
    """
    setup_logging(verbose)

    try:
        registry = load_registry(map_path)
        descriptors = [registry.lookup_by_id(cid)] if cid is not None else list(registry)
        rows = []
        for d in descriptors:
            row = describe_characteristic(d)
            try:
                registry.resolve(d)
                row["resolves"] = True
            except ConfigurationError:
                row["resolves"] = False
            rows.append(row)
    except CharacteristicNotFoundError as e:
        raise _fail(str(e), 2)
    except (ConfigurationError, OSError) as e:
        raise _fail(f"Register map: {e}", 2)

    if json_output:
        typer.echo(json.dumps(rows, indent=2))
        return
    for row in rows:
        flag = "" if row["resolves"] else "  [INVALID OFFSET]"
        typer.echo(
            f"#{row['cid']:<3} {row['name']:<16} {row['register_kind']:<8} "
            f"slave {row['device_address']} reg {row['register_start']}+{row['register_count']} "
            f"{row['value_type']}[{row['value_size']}] limits {row['limits']}{flag}"
        )


@app.command()
def read(
    cid: Annotated[int, typer.Argument(help="Characteristic ID to read")],
    mode: ModeOption = "tcp",
    host: HostOption = "127.0.0.1",
    port: PortOption = 502,
    serial_port: SerialPortOption = "/dev/ttyUSB0",
    baudrate: BaudrateOption = 115200,
    parity: ParityOption = "N",
    timeout: TimeoutOption = 1.0,
    retries: RetriesOption = 3,
    map_path: MapOption = None,
    verbose: VerboseOption = False,
    json_output: JsonOption = False,
) -> None:
    """
    Read one characteristic from its device.

    Byte-blob characteristics are printed as hex.
    """
    setup_logging(verbose)

    try:
        gateway = create_gateway(mode, host, port, serial_port, baudrate, parity, timeout, retries, map_path)
        with gateway:
            value, location = gateway.engine.read_characteristic(cid)
        d = location.descriptor
        if json_output:
            typer.echo(json.dumps({"cid": cid, "name": d.name, "units": d.units, "value": to_json(value)}))
        else:
            typer.echo(f"{to_json(value)}")
    except CharacteristicNotFoundError as e:
        raise _fail(str(e), 2)
    except (ConfigurationError, InvalidArgumentError) as e:
        raise _fail(str(e), 2)
    except TransportError as e:
        raise _fail(f"Connection/Modbus error ({e.code}): {e}", 3)
    except typer.Exit:
        raise
    except Exception as e:
        raise _fail(f"Unexpected error: {e}", 4, verbose)


@app.command()
def write(
    cid: Annotated[int, typer.Argument(help="Characteristic ID to write")],
    value: Annotated[str, typer.Argument(help="Value (number, 0x hex, true/false; text for byte blobs)")],
    mode: ModeOption = "tcp",
    host: HostOption = "127.0.0.1",
    port: PortOption = 502,
    serial_port: SerialPortOption = "/dev/ttyUSB0",
    baudrate: BaudrateOption = 115200,
    parity: ParityOption = "N",
    timeout: TimeoutOption = 1.0,
    retries: RetriesOption = 3,
    map_path: MapOption = None,
    verbose: VerboseOption = False,
) -> None:
    """
    Write one characteristic to its device (holding registers and coils only).
    """
    setup_logging(verbose)

    try:
        gateway = create_gateway(mode, host, port, serial_port, baudrate, parity, timeout, retries, map_path)
        descriptor = gateway.registry.lookup_by_id(cid)
        try:
            parsed = parse_value(value, descriptor)
        except ValueError as e:
            raise _fail(f"Invalid value: {e}", 2)
        with gateway:
            gateway.engine.write_characteristic(cid, parsed)
        typer.echo(f"OK: Wrote #{cid} {descriptor.name} = {value}")
    except CharacteristicNotFoundError as e:
        raise _fail(str(e), 2)
    except (ConfigurationError, InvalidArgumentError) as e:
        raise _fail(str(e), 2)
    except TransportError as e:
        raise _fail(f"Connection/Modbus error ({e.code}): {e}", 3)
    except typer.Exit:
        raise
    except Exception as e:
        raise _fail(f"Unexpected error: {e}", 4, verbose)


@app.command()
def poll(
    mode: ModeOption = "tcp",
    host: HostOption = "127.0.0.1",
    port: PortOption = 502,
    serial_port: SerialPortOption = "/dev/ttyUSB0",
    baudrate: BaudrateOption = 115200,
    parity: ParityOption = "N",
    timeout: TimeoutOption = 1.0,
    retries: RetriesOption = 3,
    map_path: MapOption = None,
    max_retry: MaxRetryOption = 3,
    poll_delay: PollDelayOption = 0.001,
    sweep_delay: SweepDelayOption = 0.5,
    verbose: VerboseOption = False,
    json_output: JsonOption = False,
) -> None:
    """
    Run one alarm polling cycle in the foreground.

    Exits 0 when no alarm triggered, 1 when a characteristic left its limits.
    """
    setup_logging(verbose, logging.INFO)

    settings = PollingSettings(max_retry=max_retry, poll_delay_s=poll_delay, sweep_delay_s=sweep_delay)
    try:
        gateway = create_gateway(mode, host, port, serial_port, baudrate, parity, timeout, retries, map_path, settings)
        outcome = gateway.engine.run_polling_cycle()
    except (ConfigurationError, InvalidArgumentError) as e:
        raise _fail(str(e), 2)
    except TransportError as e:
        raise _fail(f"Connection/Modbus error ({e.code}): {e}", 3)
    except KeyboardInterrupt:
        typer.echo("\nStopped by user", err=True)
        raise typer.Exit(0)
    except typer.Exit:
        raise
    except Exception as e:
        raise _fail(f"Unexpected error: {e}", 4, verbose)

    if json_output:
        typer.echo(
            json.dumps(
                {"alarm": outcome.alarm, "cid": outcome.cid, "sweeps": outcome.sweeps, "reads": outcome.reads}
            )
        )
    elif outcome.alarm:
        typer.echo(f"ALARM: triggered by cid #{outcome.cid}")
    else:
        typer.echo(f"OK: no alarm after {outcome.sweeps} sweeps")
    if outcome.alarm:
        raise typer.Exit(1)


@app.command()
def serve(
    mode: ModeOption = "tcp",
    host: HostOption = "127.0.0.1",
    port: PortOption = 502,
    serial_port: SerialPortOption = "/dev/ttyUSB0",
    baudrate: BaudrateOption = 115200,
    parity: ParityOption = "N",
    timeout: TimeoutOption = 1.0,
    retries: RetriesOption = 3,
    map_path: MapOption = None,
    max_retry: MaxRetryOption = 3,
    poll_delay: PollDelayOption = 0.001,
    sweep_delay: SweepDelayOption = 0.5,
    http_host: Annotated[str, typer.Option("--http-host", help="HTTP bind address", envvar="MBGW_HTTP_HOST")] = "0.0.0.0",
    http_port: Annotated[int, typer.Option("--http-port", help="HTTP port", envvar="MBGW_HTTP_PORT")] = 8080,
    no_poll: Annotated[bool, typer.Option("--no-poll", help="Do not start the alarm polling worker")] = False,
    verbose: VerboseOption = False,
) -> None:
    """
    Start the HTTP bridge (/info, /read-modbus, /set-modbus) and the alarm polling worker.
    """
    setup_logging(verbose, logging.INFO)
    from .server import create_app

    settings = PollingSettings(max_retry=max_retry, poll_delay_s=poll_delay, sweep_delay_s=sweep_delay)
    try:
        gateway = create_gateway(mode, host, port, serial_port, baudrate, parity, timeout, retries, map_path, settings)
        gateway.start()
    except ConfigurationError as e:
        raise _fail(str(e), 2)
    except TransportError as e:
        raise _fail(f"Connection/Modbus error ({e.code}): {e}", 3)

    try:
        if not no_poll:
            gateway.start_polling()
        flask_app = create_app(gateway.bridge)
        on_address(http_host, http_port)
        flask_app.run(host=http_host, port=http_port, threaded=True)
    except KeyboardInterrupt:
        typer.echo("\nStopped by user", err=True)
    finally:
        gateway.stop()


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        typer.echo(f"mbgateway {__version__}")
        raise typer.Exit(0)


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option("--version", callback=version_callback, is_eager=True, help="Show version and exit"),
    ] = None,
) -> None:
    """mbgateway - typed Modbus register access, alarm polling and HTTP bridge."""
    pass


if __name__ == "__main__":
    app()
