from __future__ import annotations

from dataclasses import dataclass

from opsdesk.core.config import get_settings


@dataclass(frozen=True)
class TenantPredicateError(RuntimeError):
    # Surface missing organization predicates when guard enforcement is enabled.
    message: str


def require_org_id(organization_id: str | None) -> None:
    # Enforce non-empty organization identifiers when guard checks are enabled.
    settings = get_settings()
    if not settings.authz_require_tenant_predicate:
        return
    if not organization_id:
        raise TenantPredicateError("Organization predicate required but organization_id is missing")


def tenant_predicate(model, organization_id: str) -> object:
    # Build organization predicates through a single helper to guarantee guard coverage.
    require_org_id(organization_id)
    return model.organization_id == organization_id
