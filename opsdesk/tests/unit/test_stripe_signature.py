from __future__ import annotations

import hashlib
import hmac
import json
import time

import pytest

from opsdesk.core.config import get_settings
from opsdesk.core.errors import WebhookVerificationError
from opsdesk.services.billing.webhook import verify_stripe_signature


def _sign(payload: bytes, *, secret: str | None = None, timestamp: int | None = None) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    signed = f"{ts}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new((secret or get_settings().stripe_webhook_secret).encode("utf-8"), signed, hashlib.sha256)
    return f"t={ts},v1={digest.hexdigest()}"


def _event_payload() -> bytes:
    return json.dumps({"id": "evt_1", "type": "invoice.payment_failed", "data": {"object": {}}}).encode("utf-8")


def test_valid_signature_returns_event() -> None:
    payload = _event_payload()
    event = verify_stripe_signature(payload, _sign(payload))
    assert event["id"] == "evt_1"


def test_missing_signature_fails_closed() -> None:
    with pytest.raises(WebhookVerificationError):
        verify_stripe_signature(_event_payload(), None)


def test_wrong_secret_is_rejected() -> None:
    payload = _event_payload()
    with pytest.raises(WebhookVerificationError):
        verify_stripe_signature(payload, _sign(payload, secret="whsec_other"))


def test_tampered_payload_is_rejected() -> None:
    payload = _event_payload()
    signature = _sign(payload)
    with pytest.raises(WebhookVerificationError):
        verify_stripe_signature(payload.replace(b"evt_1", b"evt_2"), signature)


def test_stale_timestamp_is_rejected() -> None:
    payload = _event_payload()
    stale = int(time.time()) - get_settings().stripe_webhook_tolerance_s - 60
    with pytest.raises(WebhookVerificationError):
        verify_stripe_signature(payload, _sign(payload, timestamp=stale))
