"""ProtocolBridge: map request function codes onto typed characteristic reads and writes."""

import logging
from typing import Any

from .engine import PollingEngine
from .errors import InvalidArgumentError, RequestParseError
from .types import ModbusCommand, RegisterKind

logger = logging.getLogger(__name__)

# Function code -> register kind targeted by a Get
GET_FUNCTIONS: dict[int, RegisterKind] = {
    3: RegisterKind.HOLDING,
    4: RegisterKind.INPUT,
    1: RegisterKind.COIL,
}

# Function code -> register kind targeted by a Set
SET_FUNCTIONS: dict[int, RegisterKind] = {
    16: RegisterKind.HOLDING,
    10: RegisterKind.HOLDING,
    15: RegisterKind.COIL,
    5: RegisterKind.COIL,
}


def _require_int(payload: dict[str, Any], key: str) -> int:
    if key not in payload:
        raise RequestParseError(f"Missing required field {key!r}")
    value = payload[key]
    if isinstance(value, bool) or not isinstance(value, int):
        raise RequestParseError(f"Field {key!r} must be an integer, got {value!r}")
    return value


def parse_command(payload: Any, *, require_value: bool = False) -> ModbusCommand:
    """Build a ModbusCommand from a decoded JSON body ({slaveId, registerId, funcId, value?})."""
    if not isinstance(payload, dict):
        raise RequestParseError("Request body must be a JSON object")
    value = None
    if require_value:
        if "value" not in payload:
            raise RequestParseError("Missing required field 'value'")
        value = payload["value"]
        if not isinstance(value, (int, float, str)):
            raise RequestParseError(f"Field 'value' must be a number or string, got {value!r}")
    return ModbusCommand(
        slave_id=_require_int(payload, "slaveId"),
        register_id=_require_int(payload, "registerId"),
        function_code=_require_int(payload, "funcId"),
        value=value,
    )


class ProtocolBridge:
    """Translates (slave, register, function code) commands into engine reads and writes."""

    def __init__(self, engine: PollingEngine) -> None:
        self._engine = engine

    def _target(self, command: ModbusCommand, table: dict[int, RegisterKind]) -> int:
        kind = table.get(command.function_code)
        if kind is None:
            raise InvalidArgumentError(f"Unsupported function code {command.function_code}")
        descriptor = self._engine.registry.lookup_by_address(kind, command.slave_id, command.register_id)
        return descriptor.cid

    def get(self, command: ModbusCommand) -> ModbusCommand:
        """Read the addressed characteristic; return the command with its value filled in."""
        cid = self._target(command, GET_FUNCTIONS)
        value, _location = self._engine.read_characteristic(cid)
        logger.info(
            "get: slaveId = %d, registerId = %d, funcId = %d",
            command.slave_id,
            command.register_id,
            command.function_code,
        )
        return command.with_value(value)

    def set(self, command: ModbusCommand) -> ModbusCommand:
        """Write the command's value to the addressed characteristic; return the command unchanged."""
        cid = self._target(command, SET_FUNCTIONS)
        self._engine.write_characteristic(cid, command.value)
        logger.info(
            "set: slaveId = %d, registerId = %d, funcId = %d, value = %s",
            command.slave_id,
            command.register_id,
            command.function_code,
            command.value,
        )
        return command
