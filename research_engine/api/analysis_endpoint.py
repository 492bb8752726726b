"""
FX Dashboard — Analysis Endpoint
─────────────────────────────────
/api/analysis/{subject}

Serves a short narrative for one indicator while protecting the
text generator:
  1. Fresh cache entry for the subject (younger than the TTL) → return it
  2. Global cooldown still running, or another call still in flight
     → "wait" outcome with retry_after
  3. Otherwise reserve the cooldown slot, then call the generator with
     the latest snapshot + two candle summaries (+ headlines if available)
       success       → cache and return
       rate limited  → old cache entry marked stale, or a placeholder
       other failure → placeholder

get_analysis() never raises. Every downstream failure becomes a
degraded result.
"""

import inspect
import logging
import time
from typing import Callable, Dict, Optional, Tuple

from candles import aggregate, parse_interval, parse_range, summarize
from errors import DownstreamRateLimited
from research_engine.cache.analysis_cache import AnalysisCache
from research_engine.cache.ttl_config import (
    ANALYSIS_COOLDOWN_S, ANALYSIS_TTL_S, CANDLE_WINDOWS, HEADLINE_LIMIT,
)
from research_engine.models.analysis_payload import (
    STATUS_CACHED, STATUS_DEGRADED, STATUS_FRESH, STATUS_STALE, STATUS_WAIT,
    AnalysisResult, CacheEntry,
)
from research_engine.orchestrator.rate_limiter import CooldownGate

log = logging.getLogger("fx.analysis.endpoint")

PLACEHOLDER_TEXT = "Analysis is temporarily unavailable. Live indicator data is still up to date."

PROMPT = """You are a macro analyst writing for a Korean FX and rates dashboard.

Subject: {subject}
Latest value: {latest}
Collector status: {status}

Using the market data below (latest snapshot of all indicators, a recent
intraday candle summary and a one-month daily candle summary for {subject},
and any recent headlines), write 3-4 sentences that:
1. Describe what {subject} has done recently and over the month
2. Relate it to the other indicators where relevant (dollar index, KR/US 10Y spread)
3. Name one risk or thing to watch

Be specific and use the numbers. No investment advice."""


async def _maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value


class AnalysisGuard:
    """
    Owns the analysis cache and the generation cooldown.

    generate_summary(prompt, context) -> str may be sync or async and is
    expected to raise DownstreamRateLimited / DownstreamError.
    """

    def __init__(
        self,
        snapshot,
        store,
        generate_summary: Callable,
        cache: Optional[AnalysisCache] = None,
        fetch_headlines: Optional[Callable] = None,
        ttl_s: float = ANALYSIS_TTL_S,
        cooldown_s: float = ANALYSIS_COOLDOWN_S,
        clock: Callable[[], float] = time.time,
        windows: Optional[Dict[str, Tuple[str, str]]] = None,
    ):
        self.snapshot = snapshot
        self.store    = store
        self.generate_summary = generate_summary
        self.cache    = cache or AnalysisCache(redis_url="")
        self.fetch_headlines = fetch_headlines
        self.ttl_s    = ttl_s
        self.clock    = clock
        self.gate     = CooldownGate(cooldown_s, clock)
        self.windows  = {
            name: (parse_interval(interval), parse_range(rng))
            for name, (interval, rng) in (windows or CANDLE_WINDOWS).items()
        }

    # ── Context ───────────────────────────────────────────────
    async def build_context(self, subject: str) -> dict:
        snap = self.snapshot.current()
        now_ms = int(self.clock() * 1000)
        context = {
            "subject":  subject,
            "snapshot": snap.to_dict(),
            "candles":  {
                name: summarize(aggregate(self.store, subject, bucket_ms, range_ms, now_ms=now_ms))
                for name, (bucket_ms, range_ms) in self.windows.items()
            },
            "headlines": [],
        }
        if self.fetch_headlines is not None:
            try:
                context["headlines"] = await _maybe_await(
                    self.fetch_headlines(subject, HEADLINE_LIMIT)
                )
            except Exception as e:
                log.warning(f"{subject}: headlines unavailable ({e}) — continuing without")
        return context

    def build_prompt(self, subject: str) -> str:
        snap = self.snapshot.current()
        latest = snap.get(subject)
        return PROMPT.format(
            subject=subject,
            latest="n/a" if latest is None else latest,
            status=snap.status,
        )

    # ── Main handler ──────────────────────────────────────────
    async def get_analysis(self, subject: str) -> AnalysisResult:
        subject = subject.upper()
        entry = await self.cache.get(subject)

        # 1. Cache hit
        if entry and entry.is_fresh(self.ttl_s, self.clock()):
            log.debug(f"{subject}: served from cache (age={entry.age_seconds(self.clock()):.0f}s)")
            return AnalysisResult.from_entry(entry, STATUS_CACHED)

        # 2. Cooldown — reserve before calling, never after
        wait = await self.gate.try_reserve()
        if wait > 0:
            log.info(f"{subject}: cooldown active, retry in {wait:.1f}s")
            return AnalysisResult(
                subject=subject, status=STATUS_WAIT, text="",
                retry_after=round(wait, 1),
            )

        # 3. Downstream call; the slot stays in flight until it returns
        log.info(f"{subject}: cache miss — calling text generator")
        try:
            context = await self.build_context(subject)
            text = await _maybe_await(self.generate_summary(self.build_prompt(subject), context))
        except DownstreamRateLimited as e:
            log.warning(f"{subject}: generator rate limited ({e})")
            if entry:
                return AnalysisResult.from_entry(entry, STATUS_STALE, error="rate limited")
            return self._placeholder(subject, "rate limited")
        except Exception as e:
            log.error(f"{subject}: analysis failed: {e}")
            return self._placeholder(subject, str(e) or type(e).__name__)
        finally:
            self.gate.release()

        new_entry = CacheEntry(
            subject=subject,
            generated_at=self.clock(),
            payload={"text": text, "context": context},
        )
        await self.cache.set(new_entry)
        return AnalysisResult.from_entry(new_entry, STATUS_FRESH)

    def _placeholder(self, subject: str, reason: str) -> AnalysisResult:
        return AnalysisResult(
            subject=subject, status=STATUS_DEGRADED,
            text=PLACEHOLDER_TEXT, error=reason,
        )
