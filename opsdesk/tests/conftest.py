from __future__ import annotations

import os
import tempfile

# Point settings at an isolated SQLite file before any opsdesk module builds the engine.
_DB_DIR = tempfile.mkdtemp(prefix="opsdesk-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_DB_DIR, 'opsdesk.db')}"
os.environ.setdefault("AUTH_JWT_SECRET", "test-jwt-secret")
os.environ["AUTH_DEV_BYPASS"] = "false"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["EMAIL_PROVIDER"] = "test"
os.environ["EMAIL_WEBHOOK_SECRET"] = "email-test-secret"
os.environ["EMAIL_DOMAIN"] = "mail.test"

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from opsdesk.apps.api.main import create_app  # noqa: E402
from opsdesk.domain.models import Base  # noqa: E402
from opsdesk.persistence.db import engine  # noqa: E402


@pytest.fixture
async def schema() -> None:
    # Fresh tables per test keep organizations, events and audit rows isolated.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()


@pytest.fixture
async def client(schema) -> AsyncClient:
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client
