import logging
import os
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.staticfiles import StaticFiles

load_dotenv()

from candles import aggregate, parse_interval, parse_range
from errors import InvalidParameter
from ingestion.database import DB_PATH, TickStore
from ingestion.headlines import fetch_headlines
from ingestion.ingestion_engine import ALL_INDICATORS, Collector, build_collector, start_scheduler
from ingestion.snapshot import LatestSnapshot
from research_engine.api.analysis_endpoint import AnalysisGuard
from research_engine.cache.analysis_cache import AnalysisCache
from research_engine.models.analysis_payload import STATUS_WAIT
from research_engine.summarizer import generate_summary

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
log = logging.getLogger("fx.api")

PUBLIC_DIR    = Path(os.environ.get("PUBLIC_DIR", "public"))
RESERVES_PATH = PUBLIC_DIR / "data" / "reserves.json"

# Set by the lifespan
store: Optional[TickStore] = None
snapshot = LatestSnapshot(ALL_INDICATORS)
collector: Optional[Collector] = None
guard: Optional[AnalysisGuard] = None
analysis_cache: Optional[AnalysisCache] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global store, collector, guard, analysis_cache
    store = TickStore(DB_PATH)
    collector, fetcher = build_collector(store, snapshot)
    analysis_cache = AnalysisCache()
    guard = AnalysisGuard(snapshot, store, generate_summary,
                          cache=analysis_cache, fetch_headlines=fetch_headlines)
    scheduler = start_scheduler(collector)
    log.info(f"FX Dashboard started — ticks in {DB_PATH}, static files from {PUBLIC_DIR}")
    yield
    scheduler.shutdown(wait=False)
    collector.close()
    await fetcher.aclose()
    await analysis_cache.aclose()
    store.close()


app = FastAPI(
    title="FX Dashboard API",
    description="KRW FX rates, dollar index and KR/US 10Y yields with OHLC candles.",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _require(component, name: str):
    if component is None:
        raise HTTPException(503, f"{name} not ready")
    return component


def normalise_symbol(symbol: str) -> str:
    symbol = symbol.upper().strip()
    if symbol not in ALL_INDICATORS:
        raise HTTPException(400, f"Unknown symbol {symbol!r}. Known: {', '.join(ALL_INDICATORS)}")
    return symbol


@app.get("/health")
async def health():
    cache_backend = "memory"
    if analysis_cache is not None and await analysis_cache.get_redis():
        cache_backend = "redis"
    snap = snapshot.current()
    return {
        "status": "healthy",
        "collector": snap.status,
        "last_cycle": snap.as_of,
        "cycles": snap.cycles,
        "analysis_cache": cache_backend,
        "timestamp": int(time.time()),
    }


@app.get("/api/latest", tags=["Indicators"])
async def get_latest():
    return snapshot.current().to_dict()


@app.get("/api/candles", tags=["Indicators"])
async def get_candles(
    symbol: str = Query("USDKRW", description="Indicator symbol e.g. USDKRW, US10Y, SPREAD10Y"),
    interval: Optional[str] = Query(None, description="Bucket width e.g. 30m, 2h (default 30m)"),
    lookback: Optional[str] = Query(None, alias="range", description="Lookback e.g. 24h, 7d (default 7d)"),
):
    symbol = normalise_symbol(symbol)
    try:
        bucket_ms = parse_interval(interval)
        range_ms = parse_range(lookback)
        out = aggregate(_require(store, "tick store"), symbol, bucket_ms, range_ms)
    except InvalidParameter as e:
        raise HTTPException(400, str(e))
    return [c.to_dict() for c in out]


@app.get("/api/analysis/{subject}", tags=["Analysis"])
async def get_analysis(subject: str):
    subject = normalise_symbol(subject)
    analysis = _require(guard, "analysis")
    result = await analysis.get_analysis(subject)
    now = analysis.clock()
    if result.status == STATUS_WAIT:
        return JSONResponse(
            status_code=429,
            content=result.to_dict(now),
            headers={"Retry-After": str(max(1, int(round(result.retry_after or 1))))},
        )
    return result.to_dict(now)


@app.get("/api/reserves", tags=["Reserves"])
async def get_reserves():
    try:
        raw = RESERVES_PATH.read_text(encoding="utf-8")
    except OSError:
        return JSONResponse(
            status_code=404,
            content={"error": "reserves.json not found", "hint": f"Create {RESERVES_PATH.as_posix()}"},
        )
    return Response(content=raw, media_type="application/json")


if PUBLIC_DIR.is_dir():
    app.mount("/", StaticFiles(directory=PUBLIC_DIR, html=True), name="public")


if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 3000))
    uvicorn.run("app:app", host="0.0.0.0", port=port, reload=False, log_level="info")
