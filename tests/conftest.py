"""Shared fixtures: an in-memory field-bus transport and small register maps."""

import struct
from typing import Any

import pytest

from mbgateway.errors import TransportError
from mbgateway.registry import RegisterRegistry
from mbgateway.types import RegisterKind


class FakeTransport:
    """Remembers written wire bytes per (slave, kind, start) and returns them on read.

    `queue()` scripts successive read results; the last queued value repeats.
    """

    def __init__(self) -> None:
        self.data: dict[tuple[int, RegisterKind, int], bytes] = {}
        self.scripts: dict[tuple[int, RegisterKind, int], list[bytes]] = {}
        self.failing: set[tuple[int, RegisterKind, int]] = set()
        self.reads: list[tuple[int, RegisterKind, int, int]] = []
        self.writes: list[tuple[int, RegisterKind, int, bytes, Any]] = []
        self.opened = 0
        self.closed = 0

    def open(self) -> None:
        self.opened += 1

    def close(self) -> None:
        self.closed += 1

    def queue(self, key: tuple[int, RegisterKind, int], *values: bytes) -> None:
        self.scripts[key] = list(values)

    def read(self, device_address: int, kind: RegisterKind, start: int, count: int) -> bytes:
        key = (device_address, kind, start)
        self.reads.append((device_address, kind, start, count))
        if key in self.failing:
            raise TransportError(TransportError.TIMEOUT, "no response", device_address=device_address)
        script = self.scripts.get(key)
        if script:
            data = script.pop(0) if len(script) > 1 else script[0]
        else:
            data = self.data.get(key, b"")
        width = (count + 7) // 8 if kind.is_bit else count * 2
        return data[:width].ljust(width, b"\x00")

    def write(self, device_address: int, kind: RegisterKind, start: int, data: bytes, *, count: int | None = None) -> None:
        key = (device_address, kind, start)
        self.writes.append((device_address, kind, start, bytes(data), count))
        if key in self.failing:
            raise TransportError(TransportError.TIMEOUT, "no response", device_address=device_address)
        self.scripts.pop(key, None)
        self.data[key] = bytes(data)


def wire_i16(value: int) -> bytes:
    return struct.pack(">h", value)


def wire_float(value: float) -> bytes:
    return struct.pack(">f", value)


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def alarm_registry() -> RegisterRegistry:
    """Holding i16 with limits -10..10, a coil bit field with mask 0x01, and a 4-byte echo/test blob."""
    entries = [
        {"cid": 0, "name": "Pressure", "units": "bar", "register_kind": "holding", "register_start": 0,
         "register_count": 1, "storage_offset": 0, "value_type": "i16", "value_size": 2, "limits": [-10, 10, 1]},
        {"cid": 1, "name": "Relay", "units": "on/off", "register_kind": "coil", "register_start": 0,
         "register_count": 8, "storage_offset": 0, "value_type": "u8", "value_size": 1, "limits": [1, 0, 0]},
        {"cid": 2, "name": "Test_regs", "units": "__", "register_kind": "holding", "register_start": 10,
         "register_count": 2, "storage_offset": 4, "value_type": "ascii", "value_size": 4},
    ]
    return RegisterRegistry.from_entries(entries, blocks={"holding": 8, "coil": 1}, test_cid=2)
