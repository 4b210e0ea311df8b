"""Tests for PollingEngine: typed access, limit checks and the polling run."""

import threading

import pytest
from conftest import FakeTransport, wire_i16

from mbgateway.engine import PollingEngine, PollingSettings
from mbgateway.errors import ConfigurationError, InvalidArgumentError, TransportError
from mbgateway.registry import RegisterRegistry
from mbgateway.types import RegisterKind

FAST = PollingSettings(max_retry=3, poll_delay_s=0, sweep_delay_s=0)

PRESSURE = (1, RegisterKind.HOLDING, 0)
RELAY = (1, RegisterKind.COIL, 0)
TEST_REGS = (1, RegisterKind.HOLDING, 10)
FILL = b"\xaa" * 4


def _engine(registry: RegisterRegistry, transport: FakeTransport, settings: PollingSettings = FAST) -> PollingEngine:
    return PollingEngine(registry, transport, settings)


def _quiet(transport: FakeTransport) -> None:
    """Values inside limits, echo pattern already present."""
    transport.data[PRESSURE] = wire_i16(5)
    transport.data[RELAY] = b"\x00"
    transport.data[TEST_REGS] = FILL


def test_read_characteristic_stores_value(alarm_registry: RegisterRegistry, fake_transport: FakeTransport) -> None:
    fake_transport.data[PRESSURE] = wire_i16(-7)
    value, location = _engine(alarm_registry, fake_transport).read_characteristic(0)
    assert value == -7
    assert location.read() == -7
    assert fake_transport.reads == [(1, RegisterKind.HOLDING, 0, 1)]


def test_read_characteristic_surfaces_transport_error(alarm_registry, fake_transport) -> None:
    fake_transport.failing.add(PRESSURE)
    with pytest.raises(TransportError) as exc_info:
        _engine(alarm_registry, fake_transport).read_characteristic(0)
    assert exc_info.value.code == TransportError.TIMEOUT


def test_write_characteristic_updates_device_and_storage(alarm_registry, fake_transport) -> None:
    engine = _engine(alarm_registry, fake_transport)
    engine.write_characteristic(0, -3)
    assert fake_transport.data[PRESSURE] == wire_i16(-3)
    assert alarm_registry.resolve(alarm_registry.lookup_by_id(0)).read() == -3


def test_failed_write_leaves_storage_untouched(alarm_registry, fake_transport) -> None:
    fake_transport.failing.add(PRESSURE)
    with pytest.raises(TransportError):
        _engine(alarm_registry, fake_transport).write_characteristic(0, 4)
    assert alarm_registry.resolve(alarm_registry.lookup_by_id(0)).read() == 0


def test_write_rejects_out_of_range_value_before_transport(alarm_registry, fake_transport) -> None:
    with pytest.raises(InvalidArgumentError):
        _engine(alarm_registry, fake_transport).write_characteristic(0, 70000)
    assert fake_transport.writes == []


def test_write_to_input_register_rejected() -> None:
    registry = RegisterRegistry.from_entries(
        [{"cid": 0, "register_kind": "input", "register_start": 0, "storage_offset": 0,
          "value_type": "u16", "value_size": 2}]
    )
    transport = FakeTransport()
    with pytest.raises(InvalidArgumentError, match="not writable"):
        _engine(registry, transport).write_characteristic(0, 1)
    assert transport.writes == []


@pytest.mark.parametrize(("reading", "alarm"), [(11, True), (-11, True), (5, False), (10, False), (-10, False)])
def test_holding_limits(alarm_registry, fake_transport, reading: int, alarm: bool) -> None:
    _quiet(fake_transport)
    fake_transport.data[PRESSURE] = wire_i16(reading)
    outcome = _engine(alarm_registry, fake_transport).run_polling_cycle()
    assert outcome.alarm is alarm
    assert outcome.cid == (0 if alarm else None)


@pytest.mark.parametrize(("bits", "alarm"), [(b"\x01", True), (b"\x00", False), (b"\x02", False)])
def test_coil_bitmask(alarm_registry, fake_transport, bits: bytes, alarm: bool) -> None:
    _quiet(fake_transport)
    fake_transport.data[RELAY] = bits
    outcome = _engine(alarm_registry, fake_transport).run_polling_cycle()
    assert outcome.alarm is alarm
    assert outcome.cid == (1 if alarm else None)


def test_no_alarm_runs_every_sweep(alarm_registry, fake_transport) -> None:
    _quiet(fake_transport)
    outcome = _engine(alarm_registry, fake_transport).run_polling_cycle()
    assert outcome.sweeps == 3
    assert outcome.reads == 3 * len(alarm_registry)
    assert len(fake_transport.reads) == 9


def test_alarm_stops_sweep_and_retries(alarm_registry, fake_transport) -> None:
    _quiet(fake_transport)
    fake_transport.queue(PRESSURE, wire_i16(0), wire_i16(12))
    outcome = _engine(alarm_registry, fake_transport).run_polling_cycle()
    assert outcome.alarm
    assert outcome.cid == 0
    assert outcome.sweeps == 2
    # first sweep reads all three, second stops at the first characteristic
    assert outcome.reads == 4


def test_first_violation_wins(alarm_registry, fake_transport) -> None:
    _quiet(fake_transport)
    fake_transport.data[PRESSURE] = wire_i16(50)
    fake_transport.data[RELAY] = b"\x01"
    outcome = _engine(alarm_registry, fake_transport).run_polling_cycle()
    assert outcome.cid == 0
    assert (1, RegisterKind.COIL, 0, 8) not in fake_transport.reads


def test_transport_failure_skips_characteristic(alarm_registry, fake_transport) -> None:
    _quiet(fake_transport)
    fake_transport.failing.add(PRESSURE)
    fake_transport.data[RELAY] = b"\x01"
    outcome = _engine(alarm_registry, fake_transport).run_polling_cycle()
    assert outcome.alarm
    assert outcome.cid == 1


def test_echo_pattern_written_once(alarm_registry, fake_transport) -> None:
    _quiet(fake_transport)
    fake_transport.data[TEST_REGS] = b"\x00" * 4
    outcome = _engine(alarm_registry, fake_transport).run_polling_cycle()
    assert not outcome.alarm
    echo_writes = [w for w in fake_transport.writes if w[:3] == TEST_REGS]
    assert len(echo_writes) == 1
    assert echo_writes[0][3] == FILL
    assert alarm_registry.resolve(alarm_registry.lookup_by_id(2)).read_raw() == FILL


def test_echo_pattern_present_means_no_write(alarm_registry, fake_transport) -> None:
    _quiet(fake_transport)
    _engine(alarm_registry, fake_transport).run_polling_cycle()
    assert fake_transport.writes == []


def test_echo_is_not_checked_against_limits(alarm_registry, fake_transport) -> None:
    _quiet(fake_transport)
    fake_transport.data[TEST_REGS] = b"\xff" * 4
    outcome = _engine(alarm_registry, fake_transport).run_polling_cycle()
    assert not outcome.alarm


def test_missing_cid_ends_sweep() -> None:
    entries = [
        {"cid": 0, "register_kind": "holding", "register_start": 0, "storage_offset": 0,
         "value_type": "i16", "value_size": 2, "limits": [-10, 10, 1]},
        {"cid": 2, "register_kind": "holding", "register_start": 1, "storage_offset": 2,
         "value_type": "i16", "value_size": 2, "limits": [-10, 10, 1]},
    ]
    registry = RegisterRegistry.from_entries(entries)
    transport = FakeTransport()
    transport.data[(1, RegisterKind.HOLDING, 1)] = wire_i16(99)
    outcome = _engine(registry, transport, PollingSettings(max_retry=2, poll_delay_s=0, sweep_delay_s=0)).run_polling_cycle()
    assert not outcome.alarm
    assert outcome.reads == 2
    assert all(r[2] == 0 for r in transport.reads)


def test_bad_offset_aborts_polling() -> None:
    registry = RegisterRegistry.from_entries(
        [{"cid": 0, "register_kind": "holding", "register_start": 0, "instance_offset": 0,
          "value_type": "u16", "value_size": 2}],
        blocks={"holding": 2},
    )
    transport = FakeTransport()
    with pytest.raises(ConfigurationError):
        _engine(registry, transport).run_polling_cycle()
    assert transport.reads == []
    assert transport.opened == transport.closed == 1


def test_transport_reference_released(alarm_registry, fake_transport) -> None:
    _quiet(fake_transport)
    _engine(alarm_registry, fake_transport).run_polling_cycle()
    assert fake_transport.opened == 1
    assert fake_transport.closed == 1


def test_cancelled_before_start(alarm_registry, fake_transport) -> None:
    _quiet(fake_transport)
    cancel = threading.Event()
    cancel.set()
    outcome = _engine(alarm_registry, fake_transport).run_polling_cycle(cancel)
    assert outcome.cancelled
    assert outcome.sweeps == 0
    assert fake_transport.reads == []


def test_cancel_between_reads(alarm_registry, fake_transport) -> None:
    _quiet(fake_transport)
    cancel = threading.Event()
    original_read = fake_transport.read

    def read_then_cancel(*args):
        cancel.set()
        return original_read(*args)

    fake_transport.read = read_then_cancel
    outcome = _engine(alarm_registry, fake_transport).run_polling_cycle(cancel)
    assert outcome.cancelled
    assert outcome.reads == 1
    assert outcome.sweeps == 1


def test_settings_test_cid_overrides_map(alarm_registry, fake_transport) -> None:
    engine = _engine(alarm_registry, fake_transport, PollingSettings(test_cid=5))
    assert engine.test_cid == 5
    assert _engine(alarm_registry, fake_transport).test_cid == 2


def test_unwritable_test_cid_does_not_abort_run() -> None:
    registry = RegisterRegistry.from_entries(
        [{"cid": 0, "name": "Echo", "register_kind": "input", "register_start": 0, "register_count": 2,
          "storage_offset": 0, "value_type": "ascii", "value_size": 4}],
        blocks={"input": 4},
        test_cid=0,
    )
    transport = FakeTransport()
    outcome = _engine(registry, transport, PollingSettings(max_retry=2, poll_delay_s=0, sweep_delay_s=0)).run_polling_cycle()
    assert not outcome.alarm
    assert outcome.sweeps == 2
    assert transport.writes == []


def test_unexpected_transport_failure_releases_reference(alarm_registry, fake_transport) -> None:
    def broken_read(*args):
        raise RuntimeError("bus driver crashed")

    fake_transport.read = broken_read
    with pytest.raises(RuntimeError):
        _engine(alarm_registry, fake_transport).run_polling_cycle()
    assert fake_transport.opened == fake_transport.closed == 1


def test_u8_register_above_byte_is_malformed(fake_transport) -> None:
    registry = RegisterRegistry.from_entries(
        [{"cid": 0, "register_kind": "holding", "register_start": 0, "storage_offset": 0,
          "value_type": "u8", "value_size": 1}],
        blocks={"holding": 2},
    )
    fake_transport.data[(1, RegisterKind.HOLDING, 0)] = b"\x01\x00"
    with pytest.raises(TransportError) as exc_info:
        _engine(registry, fake_transport).read_characteristic(0)
    assert exc_info.value.code == TransportError.MALFORMED


def test_cancel_from_another_thread(alarm_registry, fake_transport) -> None:
    _quiet(fake_transport)
    first_read = threading.Event()
    original_read = fake_transport.read

    def read_and_signal(*args):
        first_read.set()
        return original_read(*args)

    fake_transport.read = read_and_signal
    cancel = threading.Event()
    result = {}
    settings = PollingSettings(max_retry=100, poll_delay_s=0, sweep_delay_s=30)
    worker = threading.Thread(
        target=lambda: result.update(outcome=_engine(alarm_registry, fake_transport, settings).run_polling_cycle(cancel))
    )
    worker.start()
    assert first_read.wait(5)
    cancel.set()
    worker.join(5)
    assert not worker.is_alive()
    assert result["outcome"].cancelled
    assert fake_transport.opened == fake_transport.closed == 1
