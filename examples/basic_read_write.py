#!/usr/bin/env python3
"""Example: read and write characteristics of the packaged register map over Modbus TCP."""

import sys

from mbgateway import Gateway, ModbusCommand, PymodbusTransport, TransportConfig, get_default_registry
from mbgateway.errors import CharacteristicNotFoundError, ConfigurationError, TransportError


def main() -> None:
    config = TransportConfig(mode="tcp", host="192.168.1.10", port=502)  # change to your device

    try:
        with Gateway(get_default_registry(), PymodbusTransport(config)) as gw:
            value, _ = gw.engine.read_characteristic(0)
            print(f"Data_channel_0 = {value}")

            # Write a holding register (Humidity_1 setpoint)
            gw.engine.write_characteristic(1, 45.0)

            # Same access through function codes, as the HTTP bridge does it
            result = gw.bridge.get(ModbusCommand(slave_id=1, register_id=0, function_code=3))
            print(f"holding 0 via bridge = {result.value}")
    except CharacteristicNotFoundError as e:
        print(f"Unknown characteristic: {e}", file=sys.stderr)
        sys.exit(1)
    except ConfigurationError as e:
        print(f"Register map error: {e}", file=sys.stderr)
        sys.exit(1)
    except TransportError as e:
        print(f"Modbus/connection error ({e.code}): {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
