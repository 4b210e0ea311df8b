#!/usr/bin/env python3
"""Example: run one alarm polling cycle over Modbus RTU; Ctrl+C cancels between reads."""

import logging
import sys
import threading

from mbgateway import PollingEngine, PollingSettings, PymodbusTransport, TransportConfig, get_default_registry
from mbgateway.errors import ConfigurationError, TransportError


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    config = TransportConfig(mode="rtu", serial_port="/dev/ttyUSB0", baudrate=115200)  # change to your bus
    engine = PollingEngine(get_default_registry(), PymodbusTransport(config), PollingSettings(max_retry=3))
    cancel = threading.Event()
    result = {}

    def worker() -> None:
        try:
            result["outcome"] = engine.run_polling_cycle(cancel)
        except (ConfigurationError, TransportError) as e:
            result["error"] = e

    thread = threading.Thread(target=worker, name="poll")
    thread.start()
    try:
        # join with a timeout so the main thread still sees KeyboardInterrupt
        while thread.is_alive():
            thread.join(0.2)
    except KeyboardInterrupt:
        cancel.set()
        thread.join()
        print("\nStopped.")
        return

    error = result.get("error")
    if isinstance(error, ConfigurationError):
        print(f"Register map error: {error}", file=sys.stderr)
        sys.exit(1)
    if isinstance(error, TransportError):
        print(f"Modbus/connection error ({error.code}): {error}", file=sys.stderr)
        sys.exit(1)

    outcome = result["outcome"]
    if outcome.alarm:
        print(f"Alarm triggered by cid #{outcome.cid}")
    else:
        print(f"No alarm after {outcome.sweeps} sweeps")


if __name__ == "__main__":
    main()
