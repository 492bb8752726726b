"""
FX Dashboard — Latest Snapshot
───────────────────────────────
The most recent known value of every indicator plus the health of
the last collection cycle. Served as-is by /api/latest and read by
the analysis guard.

The record is immutable; each cycle builds a new one and swaps the
reference, so readers never see half of a cycle.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Tuple

STATUS_BOOT     = "BOOT"
STATUS_OK       = "OK"
STATUS_DEGRADED = "DEGRADED"

MAX_ERRORS = 6

KST = timezone(timedelta(hours=9))


def kst_string(ts_ms: int) -> str:
    return datetime.fromtimestamp(ts_ms / 1000, tz=KST).strftime("%Y-%m-%d %H:%M:%S KST")


@dataclass(frozen=True)
class Snapshot:
    values:    Dict[str, Optional[float]]
    status:    str = STATUS_BOOT
    as_of:     Optional[int] = None          # epoch ms of last cycle completion
    errors:    Tuple[str, ...] = ()
    cycles:    int = 0
    updated:   Dict[str, int] = field(default_factory=dict)   # symbol -> ts of its last good value

    @property
    def as_of_kst(self) -> Optional[str]:
        return kst_string(self.as_of) if self.as_of is not None else None

    def get(self, symbol: str) -> Optional[float]:
        return self.values.get(symbol)

    def to_dict(self) -> dict:
        d = {
            "asOf":    self.as_of,
            "asofKST": self.as_of_kst,
            "status":  self.status,
            "cycles":  self.cycles,
        }
        for symbol, value in self.values.items():
            d[symbol.lower()] = value
        d["errors"] = list(self.errors)
        return d


class LatestSnapshot:
    """Owner of the current Snapshot. One writer (the collector), any number of readers."""

    def __init__(self, symbols: Iterable[str]):
        self._symbols = list(symbols)
        self._current = Snapshot(values={s: None for s in self._symbols})
        self._lock = threading.Lock()

    @property
    def symbols(self) -> List[str]:
        return list(self._symbols)

    def current(self) -> Snapshot:
        return self._current

    def publish(self, ts: int, obtained: Dict[str, float], errors: List[str]) -> Snapshot:
        """
        Build the next snapshot from this cycle's results.
        Indicators missing from `obtained` keep their previous value.
        """
        with self._lock:
            prev = self._current
            values = dict(prev.values)
            values.update(obtained)
            updated = dict(prev.updated)
            updated.update({s: ts for s in obtained})
            complete = all(s in obtained for s in self._symbols)
            nxt = Snapshot(
                values=values,
                status=STATUS_OK if complete else STATUS_DEGRADED,
                as_of=ts,
                errors=tuple(errors[-MAX_ERRORS:]),
                cycles=prev.cycles + 1,
                updated=updated,
            )
            self._current = nxt
        return nxt
