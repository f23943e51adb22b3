from __future__ import annotations

import argparse
import asyncio

from opsdesk.core.logging import configure_logging
from opsdesk.persistence.db import SessionLocal
from opsdesk.services.approvals import expire_stale_approvals


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Persist expiry for pending approvals past their deadline.")
    parser.add_argument("--organization-id", default=None, help="Limit the sweep to one organization")
    return parser.parse_args(argv)


async def expire(organization_id: str | None = None) -> int:
    async with SessionLocal() as session:
        expired = await expire_stale_approvals(session, organization_id=organization_id)
        print(f"expired_approvals={expired}")
        return expired


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    args = _parse_args(argv)
    asyncio.run(expire(args.organization_id))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
