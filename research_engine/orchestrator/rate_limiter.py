"""
FX Dashboard — Generation Cooldown
───────────────────────────────────
Global minimum interval between text generation calls.

The text generator is the only paid / quota-limited dependency, so at
most one call may be in flight or issued per cooldown window across all
subjects. A slot is reserved *before* the call is made and stays
reserved even if the call fails. While a call is still outstanding no
new slot is handed out, however long ago the reservation was made.
"""

import asyncio
import logging
import time
from typing import Callable, Optional

log = logging.getLogger("fx.analysis.rate_limiter")

IN_FLIGHT_RETRY_S = 1.0   # retry hint while a call is outstanding past its window


class CooldownGate:
    """Check-and-reserve under one lock; nothing awaits between the check and the set."""

    def __init__(self, cooldown_s: float, clock: Callable[[], float] = time.time):
        self.cooldown_s = cooldown_s
        self.clock      = clock
        self._last: Optional[float] = None
        self._in_flight = False
        self._lock      = asyncio.Lock()

    @property
    def last_call(self) -> Optional[float]:
        return self._last

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def remaining(self, now: Optional[float] = None) -> float:
        """Seconds until the cooldown window closes (0.0 if closed). Does not reserve."""
        if self._last is None:
            return 0.0
        now = self.clock() if now is None else now
        return max(0.0, self.cooldown_s - (now - self._last))

    async def try_reserve(self) -> float:
        """
        Reserve the slot if it is open. Returns 0.0 when reserved,
        otherwise the suggested wait in seconds (state unchanged).
        A successful reservation must be paired with release().
        """
        async with self._lock:
            now = self.clock()
            wait = self.remaining(now)
            if self._in_flight:
                log.debug("Generation call still in flight")
                return max(wait, IN_FLIGHT_RETRY_S)
            if wait > 0:
                return wait
            self._last = now
            self._in_flight = True
            log.debug(f"Generation slot reserved at {now:.3f}")
            return 0.0

    def release(self) -> None:
        """Mark the outstanding call finished. The cooldown window still runs from the reservation."""
        self._in_flight = False
