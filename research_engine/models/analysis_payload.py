"""
FX Dashboard — Analysis Payload Model
──────────────────────────────────────
What /api/analysis returns and what the analysis cache stores.
"""

import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional

# Outcome of one get_analysis() call
STATUS_FRESH    = "fresh"      # generated by this call
STATUS_CACHED   = "cached"     # cache hit within TTL
STATUS_WAIT     = "wait"       # cooldown active, nothing cached; retry later
STATUS_STALE    = "stale"      # downstream failed, expired cache entry served
STATUS_DEGRADED = "degraded"   # downstream failed, placeholder served


@dataclass
class CacheEntry:
    subject:      str
    generated_at: float                     # epoch seconds
    payload:      Dict[str, Any] = field(default_factory=dict)

    def age_seconds(self, now: Optional[float] = None) -> float:
        now = time.time() if now is None else now
        return max(0.0, now - self.generated_at)

    def is_fresh(self, ttl_s: float, now: Optional[float] = None) -> bool:
        return self.age_seconds(now) < ttl_s

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "CacheEntry":
        return cls(
            subject=d.get("subject", ""),
            generated_at=float(d.get("generated_at", 0.0)),
            payload=d.get("payload") or {},
        )


@dataclass
class AnalysisResult:
    subject:      str
    status:       str
    text:         str
    generated_at: Optional[float] = None
    retry_after:  Optional[float] = None    # seconds, only for STATUS_WAIT
    error:        Optional[str] = None
    context:      Dict[str, Any] = field(default_factory=dict)

    @property
    def degraded(self) -> bool:
        return self.status in (STATUS_STALE, STATUS_DEGRADED)

    def to_dict(self, now: Optional[float] = None) -> dict:
        """`now` should come from the same clock that stamped generated_at."""
        d = asdict(self)
        d["degraded"] = self.degraded
        if self.generated_at is not None:
            now = time.time() if now is None else now
            d["age_s"] = int(max(0.0, now - self.generated_at))
        return d

    @classmethod
    def from_entry(cls, entry: CacheEntry, status: str, error: Optional[str] = None) -> "AnalysisResult":
        return cls(
            subject=entry.subject,
            status=status,
            text=entry.payload.get("text", ""),
            generated_at=entry.generated_at,
            error=error,
            context=entry.payload.get("context", {}),
        )
