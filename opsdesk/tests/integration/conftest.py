from __future__ import annotations

import pytest


@pytest.fixture(autouse=True)
async def _database(schema) -> None:
    # Every integration test runs against freshly created tables.
    yield
