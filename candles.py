"""
FX Dashboard — Candle Aggregator
─────────────────────────────────
Folds raw ticks from the tick store into OHLC candles.

Candles are never stored or cached: every request re-reads the ticks
for [now - range, now] and rebuilds the buckets. Buckets are half-open
[start, start + width) and empty buckets are simply left out.

Usage (from app.py):
    from candles import aggregate, parse_interval, parse_range
    out = aggregate(store, "USDKRW", parse_interval("30m"), parse_range("7d"))

Request strings:
    interval  "<n>m" | "<n>h"         e.g. 30m, 2h
    range     "<n>h" | "<n>d"         e.g. 24h, 7d
"""

import re
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

from errors import InvalidParameter

MINUTE_MS = 60 * 1000
HOUR_MS   = 60 * MINUTE_MS
DAY_MS    = 24 * HOUR_MS

DEFAULT_INTERVAL = "30m"
DEFAULT_RANGE    = "7d"

_INTERVAL_RE = re.compile(r"^(\d+)([mh])$")
_RANGE_RE    = re.compile(r"^(\d+)([dh])$")
_UNIT_MS     = {"m": MINUTE_MS, "h": HOUR_MS, "d": DAY_MS}
MAX_SPAN_MS  = 2 ** 53      # keeps now - range inside a SQLite INTEGER


@dataclass(frozen=True)
class Candle:
    bucket_start: int
    open:  float
    high:  float
    low:   float
    close: float

    def to_dict(self) -> dict:
        # Wire names the chart front-end reads
        return {
            "t": self.bucket_start,
            "o": self.open,
            "h": self.high,
            "l": self.low,
            "c": self.close,
        }


# ── REQUEST PARSING ──────────────────────────────────────────
def _parse(text: Optional[str], default: str, pattern, label: str) -> int:
    raw = default if text is None else str(text).strip().lower()
    m = pattern.match(raw)
    if not m:
        raise InvalidParameter(f"bad {label} {text!r}")
    n = int(m.group(1))
    if n <= 0:
        raise InvalidParameter(f"{label} must be positive, got {text!r}")
    ms = n * _UNIT_MS[m.group(2)]
    if ms > MAX_SPAN_MS:
        raise InvalidParameter(f"{label} too large, got {text!r}")
    return ms


def parse_interval(text: Optional[str] = None) -> int:
    """'30m' -> 1_800_000. None means DEFAULT_INTERVAL; anything malformed raises."""
    return _parse(text, DEFAULT_INTERVAL, _INTERVAL_RE, "interval")


def parse_range(text: Optional[str] = None) -> int:
    """'7d' -> 604_800_000. None means DEFAULT_RANGE; anything malformed raises."""
    return _parse(text, DEFAULT_RANGE, _RANGE_RE, "range")


def bucket_start(ts: int, bucket_ms: int) -> int:
    return (ts // bucket_ms) * bucket_ms


def _check_ms(value, label: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidParameter(f"{label} must be a positive integer of milliseconds, got {value!r}")
    if value > MAX_SPAN_MS:
        raise InvalidParameter(f"{label} of {value} ms is too large")
    return value


# ── AGGREGATION ──────────────────────────────────────────────
def fold_ticks(ticks, bucket_ms: int) -> List[Candle]:
    """Fold (ts, value) pairs, oldest first, into ascending candles."""
    buckets: Dict[int, list] = {}
    for ts, value in ticks:
        b = bucket_start(ts, bucket_ms)
        acc = buckets.get(b)
        if acc is None:
            buckets[b] = [value, value, value, value]
        else:
            acc[1] = max(acc[1], value)
            acc[2] = min(acc[2], value)
            acc[3] = value
    return [Candle(b, *buckets[b]) for b in sorted(buckets)]


def aggregate(store, symbol: str, bucket_ms: int, range_ms: int,
              now_ms: Optional[int] = None) -> List[Candle]:
    """
    OHLC candles for symbol over the last range_ms milliseconds.
    Raises InvalidParameter for a zero/negative/non-integer width or range.
    """
    bucket_ms = _check_ms(bucket_ms, "bucket width")
    range_ms  = _check_ms(range_ms, "range")
    end   = int(time.time() * 1000) if now_ms is None else int(now_ms)
    start = end - range_ms
    return fold_ticks(store.query(symbol, start, end), bucket_ms)


# ── SUMMARY (for the analysis prompt) ────────────────────────
def summarize(candles: List[Candle]) -> Optional[dict]:
    """Collapse a candle series into one line of numbers. None when empty."""
    if not candles:
        return None
    first_open = candles[0].open
    last_close = candles[-1].close
    change = last_close - first_open
    return {
        "candles":    len(candles),
        "from":       candles[0].bucket_start,
        "to":         candles[-1].bucket_start,
        "open":       first_open,
        "high":       max(c.high for c in candles),
        "low":        min(c.low for c in candles),
        "close":      last_close,
        "change":     round(change, 4),
        "change_pct": round(change / first_open * 100, 3) if first_open else None,
        "last_closes": [c.close for c in candles[-8:]],
    }
