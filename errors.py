"""
FX Dashboard — Error Types
───────────────────────────
Every failure the dashboard knows how to absorb or surface.

  InvalidValue           non-finite / malformed tick, rejected at the store
  SourceUnavailable      one indicator fetch failed; recorded, never fatal
  InvalidParameter       malformed candle request; surfaced to the caller
  DownstreamRateLimited  text generation throttled
  DownstreamError        any other text generation failure
"""

from typing import Optional


class FxDashboardError(Exception):
    pass


class InvalidValue(FxDashboardError):
    pass


class SourceUnavailable(FxDashboardError):
    """Raised by indicator adapters. The collector turns it into a snapshot error."""

    def __init__(self, indicator: str, reason: str):
        super().__init__(f"{indicator}: {reason}")
        self.indicator = indicator
        self.reason = reason


class InvalidParameter(FxDashboardError):
    pass


class DownstreamError(FxDashboardError):
    pass


class DownstreamRateLimited(DownstreamError):
    def __init__(self, message: str = "rate limited", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after
