"""
FX Dashboard — Headlines
─────────────────────────
Recent news headlines for an indicator, from the GNews search API.
Only used as extra context for the analysis prompt.

Free tier: 100 requests/day. Headlines are only requested when the
analysis guard actually calls the text generator, so the cooldown
keeps us far inside that quota.

Setup:
  Set GNEWS_KEY. Without it fetch_headlines() returns [].
"""

import logging
import os
from typing import Dict, List

import httpx

from errors import SourceUnavailable

log = logging.getLogger("fx-ingestion.headlines")

GNEWS_API_KEY = os.environ.get("GNEWS_KEY", "")
GNEWS_API_URL = "https://gnews.io/api/v4/search"
REQUEST_TIMEOUT = 10

# Search phrases per subject; anything else is searched verbatim
HEADLINE_QUERIES: Dict[str, str] = {
    "USDKRW":    "won dollar exchange rate",
    "EURKRW":    "euro won exchange rate",
    "DXY":       "dollar index",
    "KR10Y":     "Korea treasury bond yield",
    "US10Y":     "10-year Treasury yield",
    "SPREAD10Y": "Korea US bond yield spread",
}


async def fetch_headlines(subject: str, limit: int = 5) -> List[dict]:
    """[{title, link}, ...] newest first. Raises SourceUnavailable on HTTP failure."""
    if not GNEWS_API_KEY:
        return []

    params = {
        "q":      HEADLINE_QUERIES.get(subject.upper(), subject),
        "token":  GNEWS_API_KEY,   # GNews uses 'token' not 'apiKey'
        "lang":   "en",
        "sortby": "publishedAt",
        "max":    limit,
    }
    try:
        async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as client:
            r = await client.get(GNEWS_API_URL, params=params)
    except httpx.HTTPError as e:
        raise SourceUnavailable("headlines", f"GNews request failed: {e}")

    if r.status_code == 429:
        raise SourceUnavailable("headlines", "GNews rate limit reached")
    if r.status_code == 403:
        raise SourceUnavailable("headlines", "GNews API key invalid or expired")
    if r.status_code != 200:
        raise SourceUnavailable("headlines", f"GNews error {r.status_code}")

    articles = r.json().get("articles", []) or []
    return [
        {"title": a.get("title") or "", "link": a.get("url") or ""}
        for a in articles[:limit]
        if a.get("title")
    ]
