from __future__ import annotations

import pytest

from opsdesk.domain.models import Approval
from opsdesk.persistence.guards import TenantPredicateError, require_org_id, tenant_predicate


def test_missing_org_id_is_refused() -> None:
    with pytest.raises(TenantPredicateError):
        require_org_id(None)
    with pytest.raises(TenantPredicateError):
        tenant_predicate(Approval, "")


def test_predicate_targets_organization_column() -> None:
    clause = tenant_predicate(Approval, "org-1")
    assert "organization_id" in str(clause)
