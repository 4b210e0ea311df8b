"""mbgateway: typed access to Modbus device registers, alarm polling and an HTTP bridge."""

__version__ = "0.1.0"

from .bridge import ProtocolBridge
from .engine import PollingEngine, PollingSettings
from .errors import (
    CapacityExceededError,
    CharacteristicNotFoundError,
    ConfigurationError,
    GatewayError,
    InvalidArgumentError,
    RequestParseError,
    TransportError,
)
from .gateway import Gateway
from .registry import RegisterRegistry, StorageLocation, get_default_registry, load_register_map
from .transport import PymodbusTransport, Transport, TransportConfig
from .types import (
    AccessMode,
    CharacteristicDescriptor,
    Limits,
    ModbusCommand,
    PollOutcome,
    RegisterKind,
    ValueType,
)

__all__ = [
    "__version__",
    "ProtocolBridge",
    "PollingEngine",
    "PollingSettings",
    "CapacityExceededError",
    "CharacteristicNotFoundError",
    "ConfigurationError",
    "GatewayError",
    "InvalidArgumentError",
    "RequestParseError",
    "TransportError",
    "Gateway",
    "RegisterRegistry",
    "StorageLocation",
    "get_default_registry",
    "load_register_map",
    "PymodbusTransport",
    "Transport",
    "TransportConfig",
    "AccessMode",
    "CharacteristicDescriptor",
    "Limits",
    "ModbusCommand",
    "PollOutcome",
    "RegisterKind",
    "ValueType",
]
