"""Core data model: register kinds, value types, characteristic descriptors and bridge commands."""

from dataclasses import dataclass, field, replace
from enum import Enum, Flag
from typing import Any, Optional


class RegisterKind(str, Enum):
    """Field-bus register areas; each owns one storage block."""

    HOLDING = "holding"
    INPUT = "input"
    COIL = "coil"
    DISCRETE = "discrete"

    @property
    def is_bit(self) -> bool:
        return self in (RegisterKind.COIL, RegisterKind.DISCRETE)

    @property
    def is_writable(self) -> bool:
        return self in (RegisterKind.HOLDING, RegisterKind.COIL)


class ValueType(str, Enum):
    """Typed interpretation of a characteristic's bytes."""

    U8 = "u8"
    U16 = "u16"
    I16 = "i16"
    U32 = "u32"
    FLOAT = "float"
    ASCII = "ascii"

    @property
    def is_numeric(self) -> bool:
        return self is not ValueType.ASCII


class AccessMode(Flag):
    NONE = 0
    READ = 1
    WRITE = 2
    TRIGGER = 4
    READ_WRITE = READ | WRITE
    READ_WRITE_TRIGGER = READ | WRITE | TRIGGER


@dataclass(frozen=True)
class Limits:
    """Three option slots: (min, max, step) for analog values, (bitmask, -, -) for bit fields."""

    opt1: float = 0
    opt2: float = 0
    opt3: float = 0

    @property
    def min(self) -> float:
        return self.opt1

    @property
    def max(self) -> float:
        return self.opt2

    @property
    def step(self) -> float:
        return self.opt3

    @property
    def bitmask(self) -> int:
        return int(self.opt1)


@dataclass(frozen=True)
class CharacteristicDescriptor:
    """One entry of the register map. `storage_offset` is None when the map leaves it unset."""

    cid: int
    name: str
    units: str
    device_address: int
    register_kind: RegisterKind
    register_start: int
    register_count: int
    storage_offset: Optional[int]
    value_type: ValueType
    value_size: int
    limits: Limits = field(default_factory=Limits)
    access: AccessMode = AccessMode.READ_WRITE_TRIGGER

    def __post_init__(self) -> None:
        if self.cid < 0:
            raise ValueError(f"cid must be >= 0, got {self.cid}")
        if self.register_count < 1:
            raise ValueError(f"register_count must be >= 1, got {self.register_count}")
        if self.value_size < 1:
            raise ValueError(f"value_size must be >= 1, got {self.value_size}")


@dataclass(frozen=True)
class ModbusCommand:
    """Decoded request record exchanged with the HTTP layer."""

    slave_id: int
    register_id: int
    function_code: int
    value: Any = None

    def with_value(self, value: Any) -> "ModbusCommand":
        return replace(self, value=value)


@dataclass(frozen=True)
class PollOutcome:
    """Result of one polling run."""

    alarm: bool
    cid: int | None
    sweeps: int
    reads: int
    cancelled: bool = False
