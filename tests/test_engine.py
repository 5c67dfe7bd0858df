from datetime import datetime, timedelta, timezone

import pytest

from metering.clock import FixedClock
from metering.engine import AccrualConfig, AccrualEngine
from metering.errors import ConflictError, StorageError
from metering.store import MeterStore
from metering.usage import UsageLedger

START = datetime(2026, 1, 1, 8, 0, tzinfo=timezone.utc)


def build_engine(tmp_path, *, tariff=1000, accel=1.0, max_retries=3, start=START):
    store = MeterStore(tmp_path / "meters.json")
    ledger = UsageLedger(store, tz=timezone.utc)
    clock = FixedClock(start)
    engine = AccrualEngine(
        store,
        ledger,
        AccrualConfig(tariff_per_kwh=tariff, time_accel=accel, max_retries=max_retries),
        clock=clock,
    )
    return engine, store, ledger, clock


def seed_meter(store, clock, *, balance, wattage):
    user = store.create_user(name="Ayu", email=f"ayu{len(store.list_users())}@example.com", now=clock.now())
    meter = store.create_meter(user_id=user.id, now=clock.now())
    return store.update_meter(meter.id, expected_version=meter.version, token_balance=balance, wattage=wattage)


def test_accrual_within_budget_charges_full_consumption(tmp_path):
    engine, store, ledger, clock = build_engine(tmp_path)
    meter = seed_meter(store, clock, balance=100000, wattage=1300)

    clock.advance(hours=1)
    updated = engine.accrue(meter.id)

    assert updated.token_balance == 98700
    assert updated.cumulative_kwh == pytest.approx(1.3)
    assert updated.wattage == 1300
    assert updated.last_update == clock.now()
    records = store.list_usage(meter_id=meter.id)
    assert len(records) == 1
    assert records[0].kwh_used == pytest.approx(1.3)


def test_accrual_caps_at_affordable_energy_and_cuts_off(tmp_path):
    engine, store, ledger, clock = build_engine(tmp_path)
    meter = seed_meter(store, clock, balance=500, wattage=1300)

    clock.advance(hours=1)
    updated = engine.accrue(meter.id)

    assert updated.token_balance == 0
    assert updated.wattage == 0
    assert updated.cumulative_kwh == pytest.approx(0.5)
    assert ledger.today_total(meter.id, clock.now()) == pytest.approx(0.5)


def test_zero_balance_forces_cutoff_without_ledger_entry(tmp_path):
    engine, store, ledger, clock = build_engine(tmp_path)
    meter = seed_meter(store, clock, balance=0, wattage=2200)

    clock.advance(hours=5)
    updated = engine.accrue(meter.id)

    assert updated.wattage == 0
    assert updated.token_balance == 0
    assert updated.cumulative_kwh == 0
    assert updated.last_update == clock.now()
    assert store.list_usage(meter_id=meter.id) == []


def test_zero_wattage_only_advances_last_update(tmp_path):
    engine, store, ledger, clock = build_engine(tmp_path)
    meter = seed_meter(store, clock, balance=1000, wattage=0)

    clock.advance(minutes=30)
    updated = engine.accrue(meter.id)

    assert updated.token_balance == 1000
    assert updated.last_update == clock.now()
    assert store.list_usage(meter_id=meter.id) == []


def test_same_day_accruals_share_one_ledger_record(tmp_path):
    engine, store, ledger, clock = build_engine(tmp_path)
    meter = seed_meter(store, clock, balance=100000, wattage=500)

    clock.advance(hours=1)
    engine.accrue(meter.id)
    clock.advance(hours=1)
    engine.accrue(meter.id)

    records = store.list_usage(meter_id=meter.id)
    assert len(records) == 1
    assert records[0].kwh_used == pytest.approx(1.0)
    assert store.get_meter(meter.id).token_balance == 99000


def test_repeat_accrual_at_same_instant_changes_nothing(tmp_path):
    engine, store, ledger, clock = build_engine(tmp_path)
    meter = seed_meter(store, clock, balance=100000, wattage=900)

    clock.advance(minutes=40)
    first = engine.accrue(meter.id)
    second = engine.accrue(meter.id)

    assert second.token_balance == first.token_balance
    assert second.cumulative_kwh == first.cumulative_kwh
    assert second.last_update == first.last_update
    assert ledger.total_for_meter(meter.id) == pytest.approx(first.cumulative_kwh)


def test_clock_going_backwards_does_not_rewind_last_update(tmp_path):
    engine, store, ledger, clock = build_engine(tmp_path)
    meter = seed_meter(store, clock, balance=100000, wattage=900)

    updated = engine.accrue(meter.id, now=START - timedelta(minutes=10))

    assert updated.last_update == START
    assert updated.token_balance == 100000


def test_time_acceleration_scales_elapsed_time(tmp_path):
    engine, store, ledger, clock = build_engine(tmp_path, accel=2.0)
    meter = seed_meter(store, clock, balance=100000, wattage=1000)

    clock.advance(minutes=30)
    updated = engine.accrue(meter.id)

    assert updated.cumulative_kwh == pytest.approx(1.0)
    assert updated.token_balance == 99000


@pytest.mark.parametrize("accel", [0.0, -3.0])
def test_non_positive_acceleration_behaves_like_real_time(tmp_path, accel):
    engine, store, ledger, clock = build_engine(tmp_path, accel=accel)
    meter = seed_meter(store, clock, balance=100000, wattage=1000)

    clock.advance(hours=1)
    updated = engine.accrue(meter.id)

    assert updated.cumulative_kwh == pytest.approx(1.0)


def test_non_positive_tariff_is_rejected():
    with pytest.raises(ValueError):
        AccrualConfig(tariff_per_kwh=0)


def test_unknown_meter_is_skipped(tmp_path):
    engine, store, ledger, clock = build_engine(tmp_path)

    assert engine.accrue(404) is None


def test_ledger_matches_cumulative_energy_across_midnight(tmp_path):
    start = datetime(2026, 1, 1, 22, 30, tzinfo=timezone.utc)
    engine, store, ledger, clock = build_engine(tmp_path, start=start)
    meter = seed_meter(store, clock, balance=100000, wattage=1000)

    for _ in range(3):
        clock.advance(hours=1)
        engine.accrue(meter.id)

    records = store.list_usage(meter_id=meter.id)
    assert [record.day for record in records] == ["2026-01-01", "2026-01-02"]
    assert records[0].kwh_used == pytest.approx(1.0)
    assert records[1].kwh_used == pytest.approx(2.0)
    final = store.get_meter(meter.id)
    assert ledger.total_for_meter(meter.id) == pytest.approx(final.cumulative_kwh)
    assert final.token_balance == 97000


def test_balance_never_negative_and_cutoff_holds_over_many_passes(tmp_path):
    engine, store, ledger, clock = build_engine(tmp_path)
    meter = seed_meter(store, clock, balance=3333, wattage=1777)

    previous_energy = 0.0
    for _ in range(12):
        clock.advance(minutes=17)
        updated = engine.accrue(meter.id)
        assert updated.token_balance >= 0
        assert updated.cumulative_kwh >= previous_energy
        if updated.token_balance == 0:
            assert updated.wattage == 0
        previous_energy = updated.cumulative_kwh

    assert store.get_meter(meter.id).token_balance == 0
    assert ledger.total_for_meter(meter.id) == pytest.approx(previous_energy)


def test_failed_persist_leaves_meter_and_ledger_untouched(tmp_path, monkeypatch):
    engine, store, ledger, clock = build_engine(tmp_path)
    meter = seed_meter(store, clock, balance=100000, wattage=1300)

    def broken_persist():
        raise StorageError("disk full")

    monkeypatch.setattr(store, "_persist", broken_persist)
    clock.advance(hours=1)
    with pytest.raises(StorageError):
        engine.accrue(meter.id)

    current = store.get_meter(meter.id)
    assert current.token_balance == 100000
    assert current.cumulative_kwh == 0
    assert current.version == meter.version
    assert store.list_usage(meter_id=meter.id) == []

    reloaded = MeterStore(tmp_path / "meters.json").get_meter(meter.id)
    assert reloaded.token_balance == 100000


def test_conflicting_write_is_retried(tmp_path, monkeypatch):
    engine, store, ledger, clock = build_engine(tmp_path)
    meter = seed_meter(store, clock, balance=100000, wattage=1000)
    original = store.update_meter
    calls = {"count": 0}

    def flaky_update(meter_id, **kwargs):
        calls["count"] += 1
        if calls["count"] == 1:
            raise ConflictError("raced")
        return original(meter_id, **kwargs)

    monkeypatch.setattr(store, "update_meter", flaky_update)
    clock.advance(hours=1)
    updated = engine.accrue(meter.id)

    assert calls["count"] == 2
    assert updated.token_balance == 99000
    assert len(store.list_usage(meter_id=meter.id)) == 1
    assert store.list_usage(meter_id=meter.id)[0].kwh_used == pytest.approx(1.0)


def test_conflicts_beyond_retry_budget_surface(tmp_path, monkeypatch):
    engine, store, ledger, clock = build_engine(tmp_path, max_retries=2)
    meter = seed_meter(store, clock, balance=100000, wattage=1000)

    def always_conflict(meter_id, **kwargs):
        raise ConflictError("raced")

    monkeypatch.setattr(store, "update_meter", always_conflict)
    clock.advance(hours=1)
    with pytest.raises(ConflictError):
        engine.accrue(meter.id)
    assert store.list_usage(meter_id=meter.id) == []


def test_sweep_continues_past_failing_meter(tmp_path, monkeypatch):
    engine, store, ledger, clock = build_engine(tmp_path)
    first = seed_meter(store, clock, balance=100000, wattage=1000)
    second = seed_meter(store, clock, balance=100000, wattage=1000)
    original = store.update_meter

    def fail_first(meter_id, **kwargs):
        if meter_id == first.id:
            raise RuntimeError("boom")
        return original(meter_id, **kwargs)

    monkeypatch.setattr(store, "update_meter", fail_first)
    clock.advance(hours=1)
    report = engine.accrue_all()

    assert report.processed == 1
    assert report.failures == {first.id: "boom"}
    assert store.get_meter(second.id).token_balance == 99000


def test_naive_timestamp_is_read_as_utc(tmp_path):
    engine, store, ledger, clock = build_engine(tmp_path)
    meter = seed_meter(store, clock, balance=100000, wattage=1000)

    updated = engine.accrue(meter.id, datetime(2026, 1, 1, 9, 0))

    assert updated.token_balance == 99000
    assert updated.last_update == START + timedelta(hours=1)
