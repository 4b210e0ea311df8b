"""RegisterRegistry: characteristic table, typed storage blocks and descriptor-mediated addressing."""

import json
import logging
import threading
from dataclasses import dataclass
from importlib import resources
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional

from . import codec
from .errors import CharacteristicNotFoundError, ConfigurationError
from .types import AccessMode, CharacteristicDescriptor, Limits, RegisterKind, ValueType

logger = logging.getLogger(__name__)

_DEFAULT_MAP_PACKAGE = "mbgateway.data"
_DEFAULT_MAP_NAME = "default_map.json"

_ACCESS_NAMES: dict[str, AccessMode] = {
    "read": AccessMode.READ,
    "write": AccessMode.WRITE,
    "trigger": AccessMode.TRIGGER,
}


def _parse_offset(raw: dict[str, Any]) -> Optional[int]:
    """Real byte offset, or None when unset.

    `storage_offset` is the real offset (null = unset). `instance_offset` is the
    controller-style encoding: real offset + 1, with 0 meaning unset.
    """
    if "storage_offset" in raw:
        offset = raw["storage_offset"]
        return None if offset is None else int(offset)
    encoded = int(raw.get("instance_offset", 0))
    return encoded - 1 if encoded > 0 else None


def _parse_access(raw: Any) -> AccessMode:
    if raw is None:
        return AccessMode.READ_WRITE_TRIGGER
    mode = AccessMode.NONE
    for name in raw:
        try:
            mode |= _ACCESS_NAMES[str(name).lower()]
        except KeyError:
            raise ConfigurationError(f"Unknown access flag {name!r}") from None
    return mode


def _parse_entry(raw: dict[str, Any]) -> CharacteristicDescriptor:
    """Build a CharacteristicDescriptor from a JSON entry."""
    try:
        cid = int(raw["cid"])
        kind = RegisterKind(raw["register_kind"])
        vtype = ValueType(raw["value_type"])
        limits = Limits(*(float(x) for x in raw.get("limits", ())))
        descriptor = CharacteristicDescriptor(
            cid=cid,
            name=str(raw.get("name", f"cid_{cid}")),
            units=str(raw.get("units", "")),
            device_address=int(raw.get("device_address", 1)),
            register_kind=kind,
            register_start=int(raw["register_start"]),
            register_count=int(raw.get("register_count", 1)),
            storage_offset=_parse_offset(raw),
            value_type=vtype,
            value_size=int(raw["value_size"]),
            limits=limits,
            access=_parse_access(raw.get("access")),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigurationError(f"Bad register map entry {raw!r}: {e}") from e
    if descriptor.value_size < codec.storage_width(vtype):
        raise ConfigurationError(
            f"CID #{cid}: value_size {descriptor.value_size} too small for {vtype.value}", cid=cid
        )
    return descriptor


class StorageBlocks:
    """One flat byte buffer per register kind, guarded by a single lock.

    Every access copies a whole field under the lock, so concurrent readers see
    either the old or the new value of a field.
    """

    def __init__(self, sizes: dict[RegisterKind, int]) -> None:
        self._blocks = {kind: bytearray(int(sizes.get(kind, 0))) for kind in RegisterKind}
        self._lock = threading.RLock()

    def size(self, kind: RegisterKind) -> int:
        return len(self._blocks[kind])

    def read(self, kind: RegisterKind, offset: int, size: int) -> bytes:
        with self._lock:
            return bytes(self._blocks[kind][offset : offset + size])

    def write(self, kind: RegisterKind, offset: int, data: bytes) -> None:
        with self._lock:
            self._blocks[kind][offset : offset + len(data)] = data


@dataclass(frozen=True)
class StorageLocation:
    """A checked handle to one characteristic's field inside its storage block."""

    descriptor: CharacteristicDescriptor
    blocks: StorageBlocks
    offset: int

    @property
    def kind(self) -> RegisterKind:
        return self.descriptor.register_kind

    @property
    def size(self) -> int:
        return self.descriptor.value_size

    def read_raw(self) -> bytes:
        return self.blocks.read(self.kind, self.offset, self.size)

    def write_raw(self, data: bytes) -> None:
        self.blocks.write(self.kind, self.offset, bytes(data[: self.size]).ljust(self.size, b"\x00"))

    def read(self) -> codec.Value:
        return codec.from_storage(self.descriptor, self.read_raw())

    def write(self, value: codec.Value) -> None:
        self.write_raw(codec.to_storage(self.descriptor, value))


class RegisterRegistry:
    """
    Fixed table of characteristics plus the storage blocks they live in.
    Read-only after construction; supports lookup by CID and by (kind, slave, register).
    """

    def __init__(
        self,
        descriptors: Iterable[CharacteristicDescriptor],
        block_sizes: dict[RegisterKind, int] | None = None,
        test_cid: int | None = None,
    ) -> None:
        self._by_cid: dict[int, CharacteristicDescriptor] = {}
        self._by_address: dict[tuple[RegisterKind, int, int], int] = {}
        for descriptor in descriptors:
            if descriptor.cid in self._by_cid:
                raise ConfigurationError(f"Duplicate CID in map: {descriptor.cid}", cid=descriptor.cid)
            self._by_cid[descriptor.cid] = descriptor
            key = (descriptor.register_kind, descriptor.device_address, descriptor.register_start)
            self._by_address.setdefault(key, descriptor.cid)

        if block_sizes is None:
            block_sizes = self._fit_block_sizes()
        self._blocks = StorageBlocks(block_sizes)
        self._test_cid = test_cid
        logger.debug(
            "RegisterRegistry built: %d characteristics, blocks %s",
            len(self._by_cid),
            {kind.value: self._blocks.size(kind) for kind in RegisterKind},
        )

    def _fit_block_sizes(self) -> dict[RegisterKind, int]:
        sizes: dict[RegisterKind, int] = {}
        for d in self._by_cid.values():
            if d.storage_offset is not None and d.storage_offset >= 0:
                end = d.storage_offset + d.value_size
                sizes[d.register_kind] = max(sizes.get(d.register_kind, 0), end)
        return sizes

    @classmethod
    def from_entries(
        cls,
        entries: list[dict[str, Any]],
        blocks: dict[str, int] | None = None,
        test_cid: int | None = None,
    ) -> "RegisterRegistry":
        """Build a registry from entry dicts (same keys as the JSON register map)."""
        block_sizes = None
        if blocks is not None:
            try:
                block_sizes = {RegisterKind(k): int(v) for k, v in blocks.items()}
            except ValueError as e:
                raise ConfigurationError(f"Bad block sizes {blocks!r}: {e}") from e
        return cls((_parse_entry(e) for e in entries), block_sizes, test_cid)

    def lookup_by_id(self, cid: int) -> CharacteristicDescriptor:
        """Return the descriptor for `cid`; raise CharacteristicNotFoundError if absent."""
        try:
            return self._by_cid[cid]
        except KeyError:
            raise CharacteristicNotFoundError(cid) from None

    def lookup_by_address(self, kind: RegisterKind, device_address: int, register_start: int) -> CharacteristicDescriptor:
        """Return the characteristic mapped at (kind, slave address, first register)."""
        cid = self._by_address.get((kind, device_address, register_start))
        if cid is None:
            raise CharacteristicNotFoundError(
                None,
                f"No {kind.value} characteristic at slave {device_address} register {register_start}",
            )
        return self._by_cid[cid]

    def resolve(self, descriptor: CharacteristicDescriptor) -> StorageLocation:
        """Locate the descriptor's field; raise ConfigurationError for an unset or out-of-block offset."""
        offset = descriptor.storage_offset
        if offset is None or offset < 0:
            logger.error("Wrong parameter offset for CID #%d", descriptor.cid)
            raise ConfigurationError(f"Wrong parameter offset for CID #{descriptor.cid}", cid=descriptor.cid)
        block_size = self._blocks.size(descriptor.register_kind)
        if offset + descriptor.value_size > block_size:
            raise ConfigurationError(
                f"CID #{descriptor.cid} field {offset}+{descriptor.value_size} exceeds "
                f"{descriptor.register_kind.value} block of {block_size} bytes",
                cid=descriptor.cid,
            )
        return StorageLocation(descriptor=descriptor, blocks=self._blocks, offset=offset)

    def __len__(self) -> int:
        return len(self._by_cid)

    def __iter__(self) -> Iterator[CharacteristicDescriptor]:
        return iter(sorted(self._by_cid.values(), key=lambda d: d.cid))

    @property
    def blocks(self) -> StorageBlocks:
        return self._blocks

    @property
    def test_cid(self) -> int | None:
        return self._test_cid


def _registry_from_document(data: Any, source: str) -> RegisterRegistry:
    if isinstance(data, list):
        return RegisterRegistry.from_entries(data)
    if isinstance(data, dict) and "characteristics" in data:
        return RegisterRegistry.from_entries(
            data["characteristics"],
            blocks=data.get("blocks"),
            test_cid=data.get("test_cid"),
        )
    raise ConfigurationError(f"Register map {source} has no characteristics")


def load_register_map(path: Path | str | None = None) -> RegisterRegistry:
    """Load a register map from a JSON file, or the packaged default map when path is None."""
    if path is None:
        try:
            with resources.files(_DEFAULT_MAP_PACKAGE).joinpath(_DEFAULT_MAP_NAME).open("r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            raise FileNotFoundError(
                f"Register map resource not found: {_DEFAULT_MAP_PACKAGE}/{_DEFAULT_MAP_NAME}"
            ) from None
        source = _DEFAULT_MAP_NAME
    else:
        with open(path, encoding="utf-8") as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise ConfigurationError(f"Register map {path} is not valid JSON: {e}") from e
        source = str(path)
    registry = _registry_from_document(data, source)
    logger.debug("Register map loaded from %s: %d characteristics", source, len(registry))
    return registry


def get_default_registry() -> RegisterRegistry:
    """Load and return the packaged default register map."""
    return load_register_map()
