"""
FX Dashboard — Indicator Fetchers
──────────────────────────────────
Fetchers scrape one numeric value per indicator from Naver Finance.
They return floats. They do NOT write to the tick store.

Sources:
  - finance.naver.com/marketindex          USDKRW, EURKRW
  - m.stock.naver.com/marketindex/bond     KR10Y, US10Y
  - m.stock.naver.com/marketindex/.DXY     DXY

Every failure (HTTP error, timeout, markup change) is raised as
SourceUnavailable so the collector can record it against that one
indicator and carry on with the rest.

NOTE: Investing.com returns HTTP 403 to most cloud hosts, so the
dollar index is read from Naver's mobile page instead.
"""

import logging
import os
import re
import time
from typing import Dict, List, Optional, Tuple

import httpx
from bs4 import BeautifulSoup

from errors import SourceUnavailable

log = logging.getLogger("fx-ingestion.fetchers")

REQUEST_TIMEOUT = float(os.environ.get("REQUEST_TIMEOUT", "8"))
PAGE_CACHE_TTL  = 5.0   # FX page is shared by USDKRW and EURKRW within one cycle

NAVER_FX_URL   = "https://finance.naver.com/marketindex/"
NAVER_BOND_URL = "https://m.stock.naver.com/marketindex/bond/{code}"
NAVER_DXY_URL  = "https://m.stock.naver.com/marketindex/exchange/.DXY"

HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
                  "(KHTML, like Gecko) Chrome/120 Safari/537.36",
    "Accept-Language": "ko-KR,ko;q=0.9,en;q=0.8",
}

PRIMARY_INDICATORS = ["USDKRW", "EURKRW", "DXY", "KR10Y", "US10Y"]

BOND_CODES = {
    "KR10Y": "KR10YT=RR",
    "US10Y": "US10YT=RR",
}

_GROUPED_NUMBER = re.compile(r"([0-9]{1,3}(?:,[0-9]{3})*(?:\.[0-9]+)?)")
_YIELD_NUMBER   = re.compile(r"([0-9]\.[0-9]{3,4})")
_DXY_LABELLED   = re.compile(r"달러인덱스\s*([0-9]{2,3}(?:\.[0-9]+)?)")
_DXY_TOKEN      = re.compile(r"^[0-9]{2,3}(\.[0-9]+)?$")


# ══════════════════════════════════════════════════════════════
# HTTP
# ══════════════════════════════════════════════════════════════
_page_cache: Dict[str, Tuple[float, str]] = {}


async def fetch_text(client: httpx.AsyncClient, indicator: str, url: str,
                     headers: Optional[dict] = None, reuse_for: float = 0.0) -> str:
    if reuse_for > 0:
        entry = _page_cache.get(url)
        if entry and (time.monotonic() - entry[0]) < reuse_for:
            return entry[1]
    try:
        r = await client.get(url, headers={**HEADERS, **(headers or {})},
                             timeout=REQUEST_TIMEOUT)
    except httpx.TimeoutException:
        raise SourceUnavailable(indicator, f"timeout {url}")
    except httpx.HTTPError as e:
        raise SourceUnavailable(indicator, f"{type(e).__name__} {url}")
    if r.status_code >= 400:
        raise SourceUnavailable(indicator, f"HTTP {r.status_code} {url}")
    if reuse_for > 0:
        _page_cache[url] = (time.monotonic(), r.text)
    return r.text


def _body_text(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    body = soup.body or soup
    return re.sub(r"\s+", " ", body.get_text(" ")).strip()


# ══════════════════════════════════════════════════════════════
# PARSERS  (pure: html -> float)
# ══════════════════════════════════════════════════════════════
def parse_fx(html: str, currency: str) -> Optional[float]:
    """First table row / list item mentioning the currency code, first grouped number."""
    soup = BeautifulSoup(html, "html.parser")
    for el in soup.find_all(["tr", "li"]):
        text = re.sub(r"\s+", " ", el.get_text(" ")).strip()
        if currency not in text:
            continue
        m = _GROUPED_NUMBER.search(text)
        if m:
            return float(m.group(1).replace(",", ""))
    return None


def parse_bond_yield(html: str) -> Optional[float]:
    m = _YIELD_NUMBER.search(_body_text(html))
    return float(m.group(1)) if m else None


def parse_dxy(html: str) -> Optional[float]:
    text = _body_text(html)
    m = _DXY_LABELLED.search(text)
    if m:
        return float(m.group(1))
    # Fallback: first plausible index level anywhere on the page
    tokens: List[str] = re.sub(r"[^\d.]", " ", text).split()
    for t in tokens:
        if _DXY_TOKEN.match(t):
            x = float(t)
            if 60 < x < 200:
                return x
    return None


# ══════════════════════════════════════════════════════════════
# PER-INDICATOR FETCHERS
# ══════════════════════════════════════════════════════════════
async def fetch_fx(client: httpx.AsyncClient, indicator: str) -> float:
    html = await fetch_text(client, indicator, NAVER_FX_URL, reuse_for=PAGE_CACHE_TTL)
    value = parse_fx(html, indicator[:3])
    if value is None:
        raise SourceUnavailable(indicator, "Naver FX parse failed")
    return value


async def fetch_bond(client: httpx.AsyncClient, indicator: str) -> float:
    url = NAVER_BOND_URL.format(code=BOND_CODES[indicator])
    value = parse_bond_yield(await fetch_text(client, indicator, url))
    if value is None:
        raise SourceUnavailable(indicator, f"Bond parse failed: {url}")
    return value


async def fetch_dxy(client: httpx.AsyncClient, indicator: str = "DXY") -> float:
    html = await fetch_text(client, indicator, NAVER_DXY_URL,
                            headers={"Referer": "https://m.stock.naver.com/"})
    value = parse_dxy(html)
    if value is None:
        raise SourceUnavailable(indicator, "Naver DXY parse failed")
    return value


_FETCHERS = {
    "USDKRW": fetch_fx,
    "EURKRW": fetch_fx,
    "KR10Y":  fetch_bond,
    "US10Y":  fetch_bond,
    "DXY":    fetch_dxy,
}


class NaverFetcher:
    """
    Adapter handed to the collector: fetch_indicator(name) -> float.
    Owns one pooled httpx client for the life of the service.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
                timeout=REQUEST_TIMEOUT,
                follow_redirects=True,
            )
        return self._client

    async def fetch_indicator(self, name: str) -> float:
        fetcher = _FETCHERS.get(name)
        if fetcher is None:
            raise SourceUnavailable(name, "no source configured")
        client = await self._get_client()
        return await fetcher(client, name)

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
