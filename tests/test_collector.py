import asyncio
import math
import threading

import pytest

from errors import SourceUnavailable
from ingestion.ingestion_engine import ALL_INDICATORS, Collector
from ingestion.snapshot import MAX_ERRORS, STATUS_BOOT, STATUS_DEGRADED, STATUS_OK, LatestSnapshot

PRIMARY = ["USDKRW", "KR10Y", "US10Y"]
COMPUTED = {"SPREAD10Y": ("US10Y", "KR10Y")}


class FakeSource:
    """Async adapter with per-indicator scripted readings or exceptions."""

    def __init__(self, readings):
        self.readings = dict(readings)
        self.calls = []

    async def fetch_indicator(self, name):
        self.calls.append(name)
        reading = self.readings[name]
        if isinstance(reading, BaseException):
            raise reading
        return reading


def make_collector(store, source, ts=1_000, primary=PRIMARY, computed=COMPUTED, **kw):
    symbols = list(primary) + list(computed)
    snapshot = LatestSnapshot(symbols)
    return Collector(store, snapshot, source.fetch_indicator,
                     primary=primary, computed=computed, clock=lambda: ts, **kw)


def test_snapshot_starts_in_boot_state():
    snap = LatestSnapshot(ALL_INDICATORS).current()
    assert snap.status == STATUS_BOOT
    assert snap.as_of is None
    assert all(v is None for v in snap.values.values())
    assert snap.to_dict()["usdkrw"] is None


@pytest.mark.asyncio
async def test_full_cycle_writes_every_indicator_and_reports_ok(store):
    source = FakeSource({"USDKRW": 1380.5, "KR10Y": 2.95, "US10Y": 4.2})
    collector = make_collector(store, source, ts=5_000)

    result = await collector.run_cycle()

    assert result.status == STATUS_OK
    assert result.values == {"USDKRW": 1380.5, "KR10Y": 2.95, "US10Y": 4.2, "SPREAD10Y": 1.25}
    assert result.written == 4
    assert store.query("SPREAD10Y", 0, 10_000) == [(5_000, 1.25)]
    snap = collector.snapshot.current()
    assert snap.status == STATUS_OK
    assert snap.as_of == 5_000
    assert snap.errors == ()
    assert snap.get("SPREAD10Y") == 1.25


@pytest.mark.asyncio
async def test_one_failed_fetch_degrades_but_keeps_previous_value(store):
    ok = FakeSource({"USDKRW": 1380.0, "KR10Y": 2.90, "US10Y": 4.10})
    collector = make_collector(store, ok, ts=1_000)
    await collector.run_cycle()

    collector.fetch_indicator = FakeSource({
        "USDKRW": 1385.0,
        "KR10Y": SourceUnavailable("KR10Y", "Bond parse failed"),
        "US10Y": 4.30,
    }).fetch_indicator
    collector.clock = lambda: 2_000
    result = await collector.run_cycle()

    snap = collector.snapshot.current()
    assert snap.status == STATUS_DEGRADED
    assert snap.get("USDKRW") == 1385.0
    assert snap.get("US10Y") == 4.30
    assert snap.get("KR10Y") == 2.90                  # stale but present
    assert snap.get("SPREAD10Y") == 1.2               # previous cycle's spread, not recomputed
    assert snap.errors == ("KR10Y: Bond parse failed",)
    assert "SPREAD10Y" not in result.values
    assert store.query("KR10Y", 2_000, 2_000) == []
    assert store.query("SPREAD10Y", 2_000, 2_000) == []
    assert store.query("USDKRW", 2_000, 2_000) == [(2_000, 1385.0)]


@pytest.mark.asyncio
async def test_errors_are_replaced_each_cycle(store):
    failing = FakeSource({n: RuntimeError("down") for n in PRIMARY})
    collector = make_collector(store, failing)
    await collector.run_cycle()
    assert len(collector.snapshot.current().errors) == 3

    collector.fetch_indicator = FakeSource({"USDKRW": 1.0, "KR10Y": 2.0, "US10Y": 3.0}).fetch_indicator
    await collector.run_cycle()
    assert collector.snapshot.current().errors == ()
    assert collector.snapshot.current().status == STATUS_OK


@pytest.mark.asyncio
async def test_error_list_is_capped(store):
    primary = [f"I{i}" for i in range(10)]
    source = FakeSource({n: RuntimeError("boom") for n in primary})
    collector = make_collector(store, source, primary=primary, computed={})

    result = await collector.run_cycle()

    assert len(result.errors) == 10
    assert len(collector.snapshot.current().errors) == MAX_ERRORS
    # newest kept, oldest dropped
    assert collector.snapshot.current().errors[0] == "I4: RuntimeError: boom"
    assert collector.snapshot.current().errors[-1] == "I9: RuntimeError: boom"


@pytest.mark.asyncio
async def test_non_finite_reading_counts_as_failure(store):
    source = FakeSource({"USDKRW": math.nan, "KR10Y": 2.9, "US10Y": None})
    collector = make_collector(store, source)

    result = await collector.run_cycle()

    assert set(result.values) == {"KR10Y"}
    assert result.status == STATUS_DEGRADED
    assert store.query("USDKRW", 0, 10_000) == []


@pytest.mark.asyncio
async def test_slow_source_times_out_without_stalling_others(store):
    class Slow(FakeSource):
        async def fetch_indicator(self, name):
            if name == "US10Y":
                await asyncio.sleep(5)
            return await super().fetch_indicator(name)

    collector = make_collector(store, Slow({"USDKRW": 1.0, "KR10Y": 2.0, "US10Y": 3.0}), timeout_s=0.05)

    result = await asyncio.wait_for(collector.run_cycle(), timeout=2)

    assert set(result.values) == {"USDKRW", "KR10Y"}
    assert any("US10Y: timed out" in e for e in result.errors)


@pytest.mark.asyncio
async def test_plain_function_adapter_is_supported(store):
    readings = {"USDKRW": 1380.0, "KR10Y": 3.0, "US10Y": 4.0}

    def fetch(name):
        return readings[name]

    collector = Collector(store, LatestSnapshot(PRIMARY + ["SPREAD10Y"]), fetch,
                          primary=PRIMARY, computed=COMPUTED, clock=lambda: 7)

    try:
        result = await collector.run_cycle()
    finally:
        collector.close()

    assert result.values["SPREAD10Y"] == 1.0
    assert result.status == STATUS_OK


@pytest.mark.asyncio
async def test_overlapping_cycle_is_skipped(store):
    gate = asyncio.Event()

    class Blocking(FakeSource):
        async def fetch_indicator(self, name):
            await gate.wait()
            return await super().fetch_indicator(name)

    source = Blocking({"USDKRW": 1.0, "KR10Y": 2.0, "US10Y": 3.0})
    collector = make_collector(store, source)

    first = asyncio.create_task(collector.run_cycle())
    await asyncio.sleep(0)
    assert collector.running

    assert await collector.run_cycle() is None
    assert collector.skipped == 1

    gate.set()
    result = await first
    assert result.status == STATUS_OK
    assert not collector.running
    assert collector.snapshot.current().cycles == 1


@pytest.mark.asyncio
async def test_hung_plain_adapter_stays_on_the_collector_pool(store):
    hang = threading.Event()
    threads = {}

    def fetch(name):
        threads[name] = threading.current_thread().name
        if name == "US10Y":
            hang.wait(5)
        return {"USDKRW": 1.0, "KR10Y": 2.0, "US10Y": 3.0}[name]

    collector = Collector(store, LatestSnapshot(PRIMARY + ["SPREAD10Y"]), fetch,
                          primary=PRIMARY, computed=COMPUTED, timeout_s=0.05, clock=lambda: 9)
    try:
        result = await asyncio.wait_for(collector.run_cycle(), timeout=2)
        loop = asyncio.get_running_loop()
        default_thread = await asyncio.wait_for(
            loop.run_in_executor(None, lambda: threading.current_thread().name), timeout=1,
        )
    finally:
        hang.set()
        collector.close()

    assert set(result.values) == {"USDKRW", "KR10Y"}
    assert any("US10Y: timed out" in e for e in result.errors)
    assert all(name.startswith("fx-fetch") for name in threads.values())
    assert not default_thread.startswith("fx-fetch")


def test_readers_never_see_a_half_published_snapshot():
    symbols = [f"S{i}" for i in range(8)]
    holder = LatestSnapshot(symbols)
    stop = threading.Event()
    problems = []

    def writer():
        for i in range(1, 2001):
            holder.publish(i, {s: float(i) for s in symbols}, [f"e{i}"])
        stop.set()

    def reader():
        while not stop.is_set():
            snap = holder.current()
            if snap.as_of is None:
                continue
            seen = set(snap.values.values())
            if seen != {float(snap.as_of)} or snap.errors != (f"e{snap.as_of}",) \
                    or snap.cycles != snap.as_of:
                problems.append(snap)
                return

    threads = [threading.Thread(target=writer), threading.Thread(target=reader)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert problems == []
    assert holder.current().cycles == 2000
