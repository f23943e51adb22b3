from __future__ import annotations

from enum import IntEnum
import logging
from typing import Awaitable, Callable, TypeVar

from opsdesk.core.errors import AuthorizationError


logger = logging.getLogger(__name__)

T = TypeVar("T")


class Role(IntEnum):
    # Numeric ranks are part of the external contract shared with every gated action.
    VIEWER = 1
    MEMBER = 2
    ADMIN = 3
    OWNER = 4

    @property
    def label(self) -> str:
        return self.name.lower()


ROLE_ORDER: dict[str, int] = {role.label: int(role) for role in Role}


def role_rank(role: str | Role | None) -> int:
    # Unknown or missing roles rank as 0 so they never satisfy a requirement.
    if isinstance(role, Role):
        return int(role)
    if not role:
        return 0
    return ROLE_ORDER.get(role.strip().lower(), 0)


def normalize_role(role: str) -> str:
    # Enforce a stable, lowercased role vocabulary for RBAC checks.
    normalized = role.strip().lower()
    if normalized not in ROLE_ORDER:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def role_allows(*, role: str | Role | None, minimum_role: str | Role) -> bool:
    rank = role_rank(role)
    required = role_rank(minimum_role)
    # An unknown minimum can never be met; otherwise compare numeric ranks.
    if rank == 0 or required == 0:
        return False
    return rank >= required


async def run_gated(context, minimum_role: str | Role, work: Callable[[], Awaitable[T]]) -> T:
    """Await ``work`` only if the context's role meets ``minimum_role``.

    The check happens before ``work`` is called, so a denial never leaves side
    effects behind.
    """
    if not role_allows(role=context.role, minimum_role=minimum_role):
        logger.warning(
            "rbac.forbidden actor_id=%s organization_id=%s role=%s required_role=%s",
            context.actor_id,
            context.organization_id,
            context.role,
            minimum_role.label if isinstance(minimum_role, Role) else minimum_role,
        )
        raise AuthorizationError()
    return await work()
