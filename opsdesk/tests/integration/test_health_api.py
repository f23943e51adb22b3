from __future__ import annotations

import pytest

from opsdesk.apps.api.routes import health as health_routes


@pytest.mark.asyncio
async def test_health_reports_database_up(client) -> None:
    response = await client.get("/v1/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] in {"healthy", "degraded"}
    assert body["checks"]["database"]["status"] == "up"
    assert "latency_ms" in body["checks"]["database"]
    assert body["timestamp"]
    assert response.headers["Cache-Control"] == "no-store"


@pytest.mark.asyncio
async def test_health_unhealthy_returns_503(client, monkeypatch) -> None:
    async def _down() -> tuple[bool, float | None]:
        return False, None

    monkeypatch.setattr(health_routes, "check_database", _down)
    response = await client.get("/v1/health")
    assert response.status_code == 503
    body = response.json()
    assert body["status"] == "unhealthy"
    assert body["checks"]["database"] == {"status": "down"}


@pytest.mark.asyncio
async def test_slow_database_is_degraded(client, monkeypatch) -> None:
    async def _slow() -> tuple[bool, float | None]:
        return True, health_routes.DEGRADED_LATENCY_MS + 500

    monkeypatch.setattr(health_routes, "check_database", _slow)
    response = await client.get("/v1/health")
    assert response.status_code == 200
    assert response.json()["status"] == "degraded"
