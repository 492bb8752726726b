import json
import time

import pytest
from fastapi.testclient import TestClient

import app as app_module
from ingestion.ingestion_engine import ALL_INDICATORS
from ingestion.snapshot import LatestSnapshot
from research_engine.api.analysis_endpoint import AnalysisGuard
from research_engine.cache.analysis_cache import AnalysisCache

NOW_MS = 1_700_000_000_000


@pytest.fixture
def snapshot(monkeypatch):
    snap = LatestSnapshot(ALL_INDICATORS)
    monkeypatch.setattr(app_module, "snapshot", snap)
    return snap


@pytest.fixture
def client(monkeypatch, store, snapshot, clock, tmp_path):
    async def generate(prompt, context):
        return f"analysis of {context['subject']}"

    guard = AnalysisGuard(snapshot, store, generate, cache=AnalysisCache(redis_url=""),
                          ttl_s=600, cooldown_s=60, clock=clock)
    monkeypatch.setattr(app_module, "store", store)
    monkeypatch.setattr(app_module, "guard", guard)
    monkeypatch.setattr(app_module, "RESERVES_PATH", tmp_path / "data" / "reserves.json")
    # Not used as a context manager: the lifespan (scheduler, network) stays off
    return TestClient(app_module.app)


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "healthy"
    assert body["collector"] == "BOOT"
    assert body["analysis_cache"] == "memory"


def test_latest_before_and_after_first_cycle(client, snapshot):
    assert client.get("/api/latest").json()["status"] == "BOOT"

    snapshot.publish(NOW_MS, {s: 1.0 for s in ALL_INDICATORS}, [])
    body = client.get("/api/latest").json()
    assert body["status"] == "OK"
    assert body["usdkrw"] == 1.0
    assert body["errors"] == []


def test_candles(client, store):
    now_ms = int(time.time() * 1000)
    store.append(now_ms - 120_000, "USDKRW", 1380.0)
    store.append(now_ms - 60_000, "USDKRW", 1382.0)

    r = client.get("/api/candles", params={"symbol": "usdkrw", "interval": "1h", "range": "24h"})

    assert r.status_code == 200
    candles = r.json()
    assert 1 <= len(candles) <= 2
    assert set(candles[0]) == {"t", "o", "h", "l", "c"}
    assert candles[-1]["c"] == 1382.0


def test_candles_empty_range_is_an_empty_list(client):
    r = client.get("/api/candles", params={"symbol": "DXY"})
    assert r.status_code == 200
    assert r.json() == []


@pytest.mark.parametrize("params", [
    {"symbol": "USDKRW", "interval": "5x"},
    {"symbol": "USDKRW", "interval": "0m"},
    {"symbol": "USDKRW", "range": "abc"},
    {"symbol": "USDKRW", "range": "9999999999999d"},
])
def test_candles_bad_parameters(client, params):
    assert client.get("/api/candles", params=params).status_code == 400


def test_unknown_symbol_is_rejected(client):
    assert client.get("/api/candles", params={"symbol": "BTCUSD"}).status_code == 400
    assert client.get("/api/analysis/BTCUSD").status_code == 400


def test_analysis_then_cooldown(client):
    first = client.get("/api/analysis/usdkrw")
    assert first.status_code == 200
    assert first.json()["status"] == "fresh"
    assert first.json()["text"] == "analysis of USDKRW"

    cached = client.get("/api/analysis/USDKRW")
    assert cached.json()["status"] == "cached"

    waiting = client.get("/api/analysis/DXY")
    assert waiting.status_code == 429
    assert waiting.headers["retry-after"] == "60"
    assert waiting.json()["retry_after"] == 60.0


def test_analysis_age_follows_the_analysis_clock(client, clock):
    assert client.get("/api/analysis/USDKRW").json()["age_s"] == 0

    clock.advance(100)
    cached = client.get("/api/analysis/USDKRW").json()

    assert cached["status"] == "cached"
    assert cached["age_s"] == 100


def test_reserves_missing(client):
    r = client.get("/api/reserves")
    assert r.status_code == 404
    assert r.json()["error"] == "reserves.json not found"
    assert "hint" in r.json()


def test_reserves_passthrough(client):
    path = app_module.RESERVES_PATH
    path.parent.mkdir(parents=True)
    payload = {"asOf": "2024-05", "totalUsdBn": 413.2}
    path.write_text(json.dumps(payload), encoding="utf-8")

    r = client.get("/api/reserves")

    assert r.status_code == 200
    assert r.headers["content-type"].startswith("application/json")
    assert r.json() == payload
