from __future__ import annotations

from opsdesk.apps.api.routes.health import DEGRADED_LATENCY_MS, overall_status


def test_overall_status() -> None:
    assert overall_status(True, 3.5) == "healthy"
    assert overall_status(True, DEGRADED_LATENCY_MS + 1) == "degraded"
    assert overall_status(False, None) == "unhealthy"
