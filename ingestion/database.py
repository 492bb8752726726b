"""
FX Dashboard — Tick Store
──────────────────────────
Append-only SQLite log of (ts, symbol, value) observations.

One table, no uniqueness constraint: two ticks with the same
timestamp and symbol are both kept. Range scans go through the
(symbol, ts) index.

Timestamps are epoch milliseconds everywhere in the dashboard.

Environment variables:
  FX_DB_PATH — data.db
"""

import logging
import math
import os
import sqlite3
import threading
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from errors import InvalidValue

log = logging.getLogger("fx-ingestion.database")

DB_PATH = os.environ.get("FX_DB_PATH", "data.db")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS ticks (
  ts INTEGER NOT NULL,
  symbol TEXT NOT NULL,
  value REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_ticks_symbol_ts ON ticks(symbol, ts);
"""


def is_finite_number(value) -> bool:
    # bool is an int subclass; a True reading is never a price
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


class TickStore:
    """
    Thread-safe wrapper around one SQLite connection.

    Writes and reads share a lock, so a reader sees either none or all
    of a batch written by append_batch().
    """

    def __init__(self, path: Union[str, Path] = DB_PATH):
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.path, check_same_thread=False, isolation_level=None)
        if self.path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.executescript(_SCHEMA)
        log.info(f"Tick store ready at {self.path}")

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ── Writes ────────────────────────────────────────────────
    def append(self, ts: int, symbol: str, value: float) -> None:
        if not is_finite_number(value):
            raise InvalidValue(f"{symbol}@{ts}: refusing non-finite value {value!r}")
        with self._lock:
            self._conn.execute(
                "INSERT INTO ticks (ts, symbol, value) VALUES (?, ?, ?);",
                (int(ts), symbol, float(value)),
            )

    def append_batch(self, ts: int, values: Dict[str, Optional[float]]) -> int:
        """
        Write every finite value under one timestamp in a single transaction.
        Missing or non-finite entries are skipped. Returns the number written.
        """
        rows = [
            (int(ts), symbol, float(value))
            for symbol, value in values.items()
            if is_finite_number(value)
        ]
        skipped = len(values) - len(rows)
        if skipped:
            log.debug(f"append_batch@{ts}: skipped {skipped} empty/non-finite values")
        if not rows:
            return 0
        with self._lock:
            self._conn.execute("BEGIN;")
            try:
                self._conn.executemany(
                    "INSERT INTO ticks (ts, symbol, value) VALUES (?, ?, ?);", rows
                )
            except sqlite3.Error:
                self._conn.execute("ROLLBACK;")
                raise
            self._conn.execute("COMMIT;")
        return len(rows)

    # ── Reads ─────────────────────────────────────────────────
    def query(self, symbol: str, start: int, end: int) -> List[Tuple[int, float]]:
        """All ticks for symbol with start <= ts <= end, oldest first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT ts, value FROM ticks WHERE symbol = ? AND ts >= ? AND ts <= ? "
                "ORDER BY ts ASC, rowid ASC;",
                (symbol, int(start), int(end)),
            ).fetchall()
        return [(int(ts), float(value)) for ts, value in rows]

    def summary(self) -> Dict[str, dict]:
        """Per-symbol tick count and latest tick, for the status CLI and /health."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT symbol, COUNT(*), MAX(ts) FROM ticks GROUP BY symbol ORDER BY symbol;"
            ).fetchall()
        return {symbol: {"ticks": count, "last_ts": last_ts} for symbol, count, last_ts in rows}
