"""
FX Dashboard — TTL Configuration
─────────────────────────────────
Single source of truth for analysis cache durations, the text
generation cooldown, and the candle windows fed into the prompt.
"""

import os

# ── Analysis cache (per subject) ──────────────────────────────
ANALYSIS_TTL_S = float(os.environ.get("ANALYSIS_TTL_S", str(30 * 60)))   # 30 minutes

# ── Text generation cooldown (global, all subjects) ──────────
ANALYSIS_COOLDOWN_S = float(os.environ.get("ANALYSIS_COOLDOWN_S", "60"))

# ── Candle windows summarised in the prompt ──────────────────
# (interval, range) in the same strings /api/candles accepts
CANDLE_WINDOWS = {
    "recent":   ("30m", "24h"),   # intraday shape
    "longterm": ("24h", "30d"),   # one candle per day for a month
}

# ── Prompt extras ─────────────────────────────────────────────
HEADLINE_LIMIT = 5
