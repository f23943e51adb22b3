from __future__ import annotations

from opsdesk.services.audit import get_request_context, sanitize_metadata


def test_sensitive_keys_are_redacted_recursively() -> None:
    metadata = {
        "reason": "budget",
        "Authorization": "Bearer abc",
        "nested": {"stripe_signature": "t=1,v1=x", "plan": "pro"},
        "items": [{"api_key": "k"}, {"name": "ok"}],
    }
    sanitized = sanitize_metadata(metadata)
    assert sanitized["reason"] == "budget"
    assert sanitized["Authorization"] == "[REDACTED]"
    assert sanitized["nested"] == {"stripe_signature": "[REDACTED]", "plan": "pro"}
    assert sanitized["items"] == [{"api_key": "[REDACTED]"}, {"name": "ok"}]


def test_request_context_without_request() -> None:
    assert get_request_context(None) == {"request_id": None, "ip_address": None, "user_agent": None}
