"""
FX Dashboard — Narrative Summarizer
────────────────────────────────────
Turns a prompt plus structured market context into a short market
commentary using Claude.

generate_summary() is the only place the Anthropic API is called.
It raises DownstreamRateLimited when the API throttles us and
DownstreamError for everything else; the analysis guard decides what
the user sees.

Environment variables:
  ANTHROPIC_API_KEY   = sk-ant-...
  ANALYSIS_MODEL      = claude-sonnet-4-20250514
  ANALYSIS_MAX_TOKENS = 500
  ANALYSIS_TIMEOUT_S  = 45
"""

import asyncio
import json
import logging
import os
from typing import Optional

import anthropic
from anthropic import Anthropic

from errors import DownstreamError, DownstreamRateLimited

log = logging.getLogger("fx.analysis.summarizer")

ANTHROPIC_KEY       = os.getenv("ANTHROPIC_API_KEY", "")
ANALYSIS_MODEL      = os.getenv("ANALYSIS_MODEL", "claude-sonnet-4-20250514")
ANALYSIS_MAX_TOKENS = int(os.getenv("ANALYSIS_MAX_TOKENS", "500"))
ANALYSIS_TIMEOUT_S  = float(os.getenv("ANALYSIS_TIMEOUT_S", "45"))

_client: Optional[Anthropic] = None


def get_client() -> Optional[Anthropic]:
    global _client
    if _client is None and ANTHROPIC_KEY:
        _client = Anthropic(api_key=ANTHROPIC_KEY, timeout=ANALYSIS_TIMEOUT_S, max_retries=0)
    return _client


def _retry_after(exc: anthropic.RateLimitError) -> Optional[float]:
    response = getattr(exc, "response", None)
    if response is None:
        return None
    try:
        return float(response.headers.get("retry-after"))
    except (TypeError, ValueError):
        return None


async def generate_summary(prompt: str, context: dict) -> str:
    client = get_client()
    if client is None:
        raise DownstreamError("AI commentary disabled — set ANTHROPIC_API_KEY.")

    content = f"{prompt}\n\nMarket data (JSON):\n{json.dumps(context, ensure_ascii=False, default=str)}"
    try:
        loop = asyncio.get_running_loop()
        response = await loop.run_in_executor(None, lambda: client.messages.create(
            model=ANALYSIS_MODEL,
            max_tokens=ANALYSIS_MAX_TOKENS,
            messages=[{"role": "user", "content": content}],
        ))
    except anthropic.RateLimitError as e:
        log.warning(f"Claude API rate limited: {e}")
        raise DownstreamRateLimited(str(e), retry_after=_retry_after(e))
    except Exception as e:
        log.error(f"Claude API error: {e}")
        raise DownstreamError(str(e))

    text = "".join(
        getattr(block, "text", "") for block in response.content
    ).strip()
    if not text:
        raise DownstreamError("empty completion")
    return text
