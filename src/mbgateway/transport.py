"""Field-bus transport: the interface the engine consumes and a pymodbus-backed implementation."""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Protocol

from pymodbus import FramerType
from pymodbus.client import ModbusSerialClient, ModbusTcpClient
from pymodbus.exceptions import ConnectionException, ModbusIOException
from pymodbus.exceptions import ModbusException as PymodbusException

from .codec import pack_bits, unpack_bits
from .errors import TransportError
from .types import RegisterKind

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Single logical field-bus channel. Callers may share one instance across threads."""

    def open(self) -> None:
        """Take a reference on the session, connecting if needed."""

    def read(self, device_address: int, kind: RegisterKind, start: int, count: int) -> bytes:
        """Read `count` registers (or bits) and return them as wire bytes."""

    def write(
        self, device_address: int, kind: RegisterKind, start: int, data: bytes, *, count: int | None = None
    ) -> None:
        """Write wire bytes starting at `start`; `count` limits how many bits a bit write covers."""

    def close(self) -> None:
        """Release one reference; the session ends when the last holder closes."""


@dataclass(frozen=True)
class TransportConfig:
    """Connection settings for PymodbusTransport. `mode` is tcp, rtu or ascii."""

    mode: str = "tcp"
    host: str = "127.0.0.1"
    port: int = 502
    serial_port: str = "/dev/ttyUSB0"
    baudrate: int = 115200
    parity: str = "N"
    timeout: float = 1.0
    retries: int = 3


_READERS = {
    RegisterKind.COIL: "read_coils",
    RegisterKind.DISCRETE: "read_discrete_inputs",
    RegisterKind.INPUT: "read_input_registers",
    RegisterKind.HOLDING: "read_holding_registers",
}


class PymodbusTransport:
    """
    Transport over a pymodbus sync client (TCP, or serial RTU/ASCII).
    Exchanges are serialized with a lock since the bus carries one request at a time.
    """

    def __init__(self, config: TransportConfig | None = None) -> None:
        self._config = config or TransportConfig()
        self._client: ModbusTcpClient | ModbusSerialClient | None = None
        self._lock = threading.Lock()
        self._users = 0

    @property
    def config(self) -> TransportConfig:
        return self._config

    def _describe(self) -> str:
        c = self._config
        if c.mode == "tcp":
            return f"{c.host}:{c.port}"
        return f"{c.serial_port}@{c.baudrate} ({c.mode})"

    def _make_client(self) -> ModbusTcpClient | ModbusSerialClient:
        c = self._config
        if c.mode == "tcp":
            return ModbusTcpClient(host=c.host, port=c.port, timeout=c.timeout, retries=c.retries)
        if c.mode in ("rtu", "ascii"):
            return ModbusSerialClient(
                port=c.serial_port,
                framer=FramerType.RTU if c.mode == "rtu" else FramerType.ASCII,
                baudrate=c.baudrate,
                parity=c.parity,
                timeout=c.timeout,
                retries=c.retries,
            )
        raise TransportError(TransportError.UNSUPPORTED, f"Unknown transport mode: {c.mode!r}")

    def _get_client(self) -> ModbusTcpClient | ModbusSerialClient:
        if self._client is None:
            client = self._make_client()
            if not client.connect():
                raise TransportError(TransportError.CONNECT, f"Failed to connect to {self._describe()}")
            logger.info("Modbus master connected to %s", self._describe())
            self._client = client
        return self._client

    def open(self) -> None:
        with self._lock:
            self._get_client()
            self._users += 1

    def close(self) -> None:
        with self._lock:
            if self._users > 0:
                self._users -= 1
            if self._users == 0 and self._client is not None:
                try:
                    self._client.close()
                except Exception as e:
                    logger.warning("Error closing Modbus client: %s", e)
                self._client = None
                logger.info("Modbus master closed (%s)", self._describe())

    def _check(self, rr: Any, device_address: int, kind: RegisterKind, start: int) -> None:
        if rr.isError():
            raise TransportError(
                TransportError.DEVICE,
                str(rr),
                device_address=device_address,
                kind=kind.value,
                start=start,
                cause=getattr(rr, "exception", None),
            )

    def _exchange(self, device_address: int, kind: RegisterKind, start: int, call: Any) -> Any:
        with self._lock:
            try:
                rr = call(self._get_client())
            except TransportError:
                raise
            except ModbusIOException as e:
                raise TransportError(
                    TransportError.TIMEOUT, str(e), device_address=device_address, kind=kind.value, start=start, cause=e
                ) from e
            except ConnectionException as e:
                # reconnect on the next exchange
                if self._client is not None:
                    self._client.close()
                    self._client = None
                raise TransportError(
                    TransportError.CONNECT, str(e), device_address=device_address, kind=kind.value, start=start, cause=e
                ) from e
            except PymodbusException as e:
                raise TransportError(
                    TransportError.MALFORMED, str(e), device_address=device_address, kind=kind.value, start=start, cause=e
                ) from e
        self._check(rr, device_address, kind, start)
        return rr

    def read(self, device_address: int, kind: RegisterKind, start: int, count: int) -> bytes:
        method = _READERS[kind]
        rr = self._exchange(
            device_address,
            kind,
            start,
            lambda client: getattr(client, method)(start, count=count, device_id=device_address),
        )
        if kind.is_bit:
            bits = getattr(rr, "bits", None)
            if not bits or len(bits) < count:
                raise TransportError(
                    TransportError.MALFORMED, "Short bit response", device_address=device_address, kind=kind.value, start=start
                )
            return pack_bits([bool(b) for b in bits], count)
        registers = getattr(rr, "registers", None)
        if not registers or len(registers) < count:
            raise TransportError(
                TransportError.MALFORMED,
                "Short register response",
                device_address=device_address,
                kind=kind.value,
                start=start,
            )
        return b"".join(int(r & 0xFFFF).to_bytes(2, "big") for r in registers[:count])

    def write(
        self, device_address: int, kind: RegisterKind, start: int, data: bytes, *, count: int | None = None
    ) -> None:
        if kind is RegisterKind.HOLDING:
            if len(data) % 2:
                data = data + b"\x00"
            values = [int.from_bytes(data[i : i + 2], "big") for i in range(0, len(data), 2)]
            self._exchange(
                device_address,
                kind,
                start,
                lambda client: client.write_registers(start, values, device_id=device_address),
            )
        elif kind is RegisterKind.COIL:
            bits = unpack_bits(data, count if count is not None else len(data) * 8)
            self._exchange(
                device_address,
                kind,
                start,
                lambda client: client.write_coils(start, bits, device_id=device_address),
            )
        else:
            raise TransportError(
                TransportError.UNSUPPORTED,
                f"Write not supported for {kind.value} registers",
                device_address=device_address,
                kind=kind.value,
                start=start,
            )
