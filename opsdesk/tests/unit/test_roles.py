from __future__ import annotations

import pytest

from opsdesk.core.errors import AuthorizationError
from opsdesk.services.auth.context import OrgContext
from opsdesk.services.auth.roles import ROLE_ORDER, Role, normalize_role, role_allows, role_rank, run_gated


def _context(role: str) -> OrgContext:
    return OrgContext(actor_id="u-1", organization_id="org-1", role=role)


def test_role_ranks_are_stable() -> None:
    assert ROLE_ORDER == {"viewer": 1, "member": 2, "admin": 3, "owner": 4}
    assert role_rank(Role.ADMIN) == 3
    assert role_rank(" Owner ") == 4


def test_unknown_roles_rank_zero() -> None:
    assert role_rank("superuser") == 0
    assert role_rank(None) == 0
    assert role_rank("") == 0


@pytest.mark.parametrize(
    ("role", "minimum", "allowed"),
    [
        ("owner", "admin", True),
        ("admin", "admin", True),
        ("member", "admin", False),
        ("viewer", "viewer", True),
        ("superuser", "viewer", False),
        ("owner", "superuser", False),
    ],
)
def test_role_allows(role: str, minimum: str, allowed: bool) -> None:
    assert role_allows(role=role, minimum_role=minimum) is allowed


def test_normalize_role_rejects_unknown() -> None:
    assert normalize_role("ADMIN") == "admin"
    with pytest.raises(ValueError):
        normalize_role("root")


@pytest.mark.asyncio
async def test_run_gated_denial_never_runs_work() -> None:
    calls: list[str] = []

    async def _work() -> str:
        calls.append("ran")
        return "done"

    with pytest.raises(AuthorizationError) as excinfo:
        await run_gated(_context("member"), "admin", _work)
    assert calls == []
    assert excinfo.value.status_code == 403
    # The denial message does not reveal which role was required.
    assert "admin" not in excinfo.value.message


@pytest.mark.asyncio
async def test_run_gated_allows_sufficient_role() -> None:
    async def _work() -> str:
        return "done"

    assert await run_gated(_context("owner"), Role.ADMIN, _work) == "done"
