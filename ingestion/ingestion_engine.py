"""
FX Dashboard — Collection Engine
─────────────────────────────────
Runs one collection cycle every COLLECT_INTERVAL_S seconds:
  1. Fetch every primary indicator in parallel (each bounded by a timeout)
  2. Derive computed indicators whose inputs all arrived this cycle
  3. Write everything obtained to the tick store as one batch
  4. Publish the new latest snapshot

A failed indicator never stops the cycle. It simply has no tick this
cycle and keeps its previous snapshot value; the next cycle is the
retry. If a cycle is still running when the next one is due, the new
one is skipped.

Run directly for a single cycle, the scheduler, or a store summary:
  python -m ingestion.ingestion_engine --mode once
  python -m ingestion.ingestion_engine --mode schedule
  python -m ingestion.ingestion_engine --mode status
"""

import argparse
import asyncio
import inspect
import logging
import os
import sqlite3
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from errors import SourceUnavailable
from ingestion.database import TickStore, is_finite_number
from ingestion.fetchers import PRIMARY_INDICATORS
from ingestion.snapshot import LatestSnapshot, Snapshot

log = logging.getLogger("fx-ingestion.engine")

# ── Config (override via environment variables) ────────────────
COLLECT_INTERVAL_S = float(os.environ.get("COLLECT_INTERVAL_S", "10"))
FETCH_TIMEOUT_S    = float(os.environ.get("FETCH_TIMEOUT_S", "8"))

# computed symbol -> (minuend, subtrahend)
COMPUTED_INDICATORS: Dict[str, Tuple[str, str]] = {
    "SPREAD10Y": ("US10Y", "KR10Y"),
}
SPREAD_DECIMALS = 3

ALL_INDICATORS = PRIMARY_INDICATORS + list(COMPUTED_INDICATORS)


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class CycleResult:
    ts:      int
    values:  Dict[str, float]
    errors:  List[str] = field(default_factory=list)
    written: int = 0
    status:  str = ""
    elapsed_s: float = 0.0

    def to_dict(self) -> dict:
        return {
            "ts":        self.ts,
            "values":    self.values,
            "errors":    self.errors,
            "written":   self.written,
            "status":    self.status,
            "elapsed_s": self.elapsed_s,
        }


class Collector:
    """
    One collection pipeline bound to a store, a snapshot and an adapter.

    fetch_indicator(name) may be a plain function or a coroutine function.
    Plain functions run on the collector's own thread pool (one thread per
    primary indicator). A timeout abandons the thread without stopping it,
    so an adapter that never returns keeps holding a pool thread; it can
    starve later sync fetches but never the loop's default executor.
    """

    def __init__(
        self,
        store: TickStore,
        snapshot: LatestSnapshot,
        fetch_indicator: Callable,
        primary: Optional[List[str]] = None,
        computed: Optional[Dict[str, Tuple[str, str]]] = None,
        timeout_s: float = FETCH_TIMEOUT_S,
        clock: Callable[[], int] = now_ms,
    ):
        self.store     = store
        self.snapshot  = snapshot
        self.fetch_indicator = fetch_indicator
        self.primary   = list(primary if primary is not None else PRIMARY_INDICATORS)
        self.computed  = dict(computed if computed is not None else COMPUTED_INDICATORS)
        self.timeout_s = timeout_s
        self.clock     = clock
        self._running  = False
        self.skipped   = 0
        self._executor: Optional[ThreadPoolExecutor] = None

    @property
    def running(self) -> bool:
        return self._running

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None

    # ══════════════════════════════════════════════════════════
    # PIPELINE STAGES
    # ══════════════════════════════════════════════════════════

    async def _call_adapter(self, name: str):
        if inspect.iscoroutinefunction(self.fetch_indicator):
            return await self.fetch_indicator(name)
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=max(1, len(self.primary)), thread_name_prefix="fx-fetch",
            )
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(self._executor, self.fetch_indicator, name)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _fetch_one(self, name: str) -> float:
        try:
            value = await asyncio.wait_for(self._call_adapter(name), timeout=self.timeout_s)
        except asyncio.TimeoutError:
            raise SourceUnavailable(name, f"timed out after {self.timeout_s:g}s")
        except SourceUnavailable:
            raise
        except Exception as e:
            raise SourceUnavailable(name, f"{type(e).__name__}: {e}")
        if not is_finite_number(value):
            raise SourceUnavailable(name, f"non-numeric reading {value!r}")
        return float(value)

    async def stage_fetch(self) -> Tuple[Dict[str, float], List[str]]:
        """Stage 1: fan out to every primary indicator; collect value-or-error per name."""
        results = await asyncio.gather(
            *[self._fetch_one(name) for name in self.primary],
            return_exceptions=True,
        )
        values: Dict[str, float] = {}
        errors: List[str] = []
        for name, result in zip(self.primary, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                log.warning(f"  ✗ {result}")
                errors.append(str(result))
            else:
                values[name] = result
        return values, errors

    def stage_derive(self, values: Dict[str, float]) -> Dict[str, float]:
        """Stage 2: computed indicators, only when every input arrived this cycle."""
        derived = {}
        for symbol, (a, b) in self.computed.items():
            if a in values and b in values:
                derived[symbol] = round(values[a] - values[b], SPREAD_DECIMALS)
            else:
                log.debug(f"{symbol}: skipped, missing input this cycle")
        return derived

    def stage_store(self, ts: int, values: Dict[str, float], errors: List[str]) -> int:
        """Stage 3: one batch, one timestamp."""
        try:
            return self.store.append_batch(ts, values)
        except sqlite3.Error as e:
            log.error(f"Tick batch write failed at {ts}: {e}")
            errors.append(f"store: {e}")
            return 0

    def stage_publish(self, ts: int, values: Dict[str, float], errors: List[str]) -> Snapshot:
        """Stage 4: replace the latest snapshot."""
        return self.snapshot.publish(ts, values, errors)

    # ══════════════════════════════════════════════════════════
    # FULL CYCLE
    # ══════════════════════════════════════════════════════════

    async def run_cycle(self) -> Optional[CycleResult]:
        """Run one cycle. Returns None when skipped because another is in progress."""
        if self._running:
            self.skipped += 1
            log.warning("Previous collection cycle still running — skipping this tick")
            return None

        self._running = True
        start = time.monotonic()
        try:
            values, errors = await self.stage_fetch()
            values.update(self.stage_derive(values))

            ts = self.clock()
            written = self.stage_store(ts, values, errors)
            snap = self.stage_publish(ts, values, errors)

            result = CycleResult(
                ts=ts, values=values, errors=errors, written=written,
                status=snap.status, elapsed_s=round(time.monotonic() - start, 3),
            )
            log.info(
                f"Cycle #{snap.cycles} {snap.status} — "
                f"{len(values)}/{len(self.primary) + len(self.computed)} indicators, "
                f"{written} ticks written in {result.elapsed_s}s"
            )
            return result
        finally:
            self._running = False


# ══════════════════════════════════════════════════════════════
# SCHEDULER
# ══════════════════════════════════════════════════════════════

def start_scheduler(collector: Collector,
                    interval_s: float = COLLECT_INTERVAL_S) -> AsyncIOScheduler:
    """
    Interval job that fires immediately and then every interval_s.
    Must be called from inside a running event loop.
    """
    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        collector.run_cycle, "interval",
        seconds=interval_s,
        id="collect",
        max_instances=1,
        coalesce=True,
        next_run_time=datetime.now(timezone.utc),
    )
    scheduler.start()
    log.info(f"Collector scheduled every {interval_s:g}s for {', '.join(collector.primary)}")
    return scheduler


def build_collector(store: TickStore, snapshot: Optional[LatestSnapshot] = None) -> Tuple[Collector, object]:
    """Collector wired to the Naver adapter. Returns (collector, fetcher) so callers can close it."""
    from ingestion.fetchers import NaverFetcher

    fetcher = NaverFetcher()
    snapshot = snapshot or LatestSnapshot(ALL_INDICATORS)
    return Collector(store, snapshot, fetcher.fetch_indicator), fetcher


# ══════════════════════════════════════════════════════════════
# CLI
# ══════════════════════════════════════════════════════════════

async def run_once(store: TickStore) -> dict:
    collector, fetcher = build_collector(store)
    try:
        await collector.run_cycle()
    finally:
        collector.close()
        await fetcher.aclose()
    return collector.snapshot.current().to_dict()


async def run_scheduled(store: TickStore):
    collector, fetcher = build_collector(store)
    scheduler = start_scheduler(collector)
    try:
        await asyncio.Event().wait()
    finally:
        scheduler.shutdown(wait=False)
        collector.close()
        await fetcher.aclose()


def print_status(store: TickStore):
    summary = store.summary()
    print("\n══════════════════════════════════════════")
    print("  FX Dashboard — Tick Store Status")
    print("══════════════════════════════════════════")
    print(f"  Database: {store.path}")
    for symbol in ALL_INDICATORS:
        row = summary.get(symbol)
        if not row:
            print(f"    {symbol:<10} no ticks")
            continue
        last = datetime.fromtimestamp(row["last_ts"] / 1000, tz=timezone.utc).isoformat()
        print(f"    {symbol:<10} {row['ticks']:>8} ticks  last {last}")
    print("══════════════════════════════════════════\n")


if __name__ == "__main__":
    from dotenv import load_dotenv

    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
    )
    parser = argparse.ArgumentParser(description="FX Dashboard tick collector")
    parser.add_argument(
        "--mode",
        choices=["once", "schedule", "status"],
        default="once",
        help="once=single cycle  schedule=run forever  status=print tick store summary",
    )
    parser.add_argument("--db", default=os.environ.get("FX_DB_PATH", "data.db"))
    args = parser.parse_args()

    store = TickStore(args.db)
    try:
        if args.mode == "status":
            print_status(store)
        elif args.mode == "schedule":
            asyncio.run(run_scheduled(store))
        else:
            result = asyncio.run(run_once(store))
            print(f"\nSnapshot: {result}")
    finally:
        store.close()
