from __future__ import annotations

import base64

import pytest

from opsdesk.core.errors import WebhookVerificationError
from opsdesk.services.email.signature import build_mailgun_signature, verify_email_signature


SECRET = "shared-secret"
NOW = 1_790_000_000


def test_test_provider_accepts_matching_secret() -> None:
    verify_email_signature("test", SECRET, {"x-test-secret": SECRET})


def test_test_provider_rejects_missing_or_wrong_secret() -> None:
    with pytest.raises(WebhookVerificationError):
        verify_email_signature("test", SECRET, {})
    with pytest.raises(WebhookVerificationError):
        verify_email_signature("test", SECRET, {"x-test-secret": "nope"})


def test_sendgrid_accepts_bearer_token() -> None:
    verify_email_signature("sendgrid", SECRET, {"authorization": f"Bearer {SECRET}"})
    verify_email_signature("sendgrid", SECRET, {"x-webhook-secret": SECRET})


def test_mailgun_signature_within_window() -> None:
    timestamp = str(NOW - 10)
    headers = {
        "x-mailgun-timestamp": timestamp,
        "x-mailgun-token": "tok-1",
        "x-mailgun-signature": build_mailgun_signature(SECRET, timestamp, "tok-1"),
    }
    verify_email_signature("mailgun", SECRET, headers, now=NOW, max_age_s=300)


def test_mailgun_replayed_timestamp_is_rejected() -> None:
    timestamp = str(NOW - 3600)
    headers = {
        "x-mailgun-timestamp": timestamp,
        "x-mailgun-token": "tok-1",
        "x-mailgun-signature": build_mailgun_signature(SECRET, timestamp, "tok-1"),
    }
    with pytest.raises(WebhookVerificationError):
        verify_email_signature("mailgun", SECRET, headers, now=NOW, max_age_s=300)


def test_mailgun_bad_signature_is_rejected() -> None:
    headers = {
        "x-mailgun-timestamp": str(NOW),
        "x-mailgun-token": "tok-1",
        "x-mailgun-signature": "0" * 64,
    }
    with pytest.raises(WebhookVerificationError):
        verify_email_signature("mailgun", SECRET, headers, now=NOW, max_age_s=300)


def test_postmark_basic_auth_password() -> None:
    credentials = base64.b64encode(f"postmark:{SECRET}".encode("utf-8")).decode("ascii")
    verify_email_signature("postmark", SECRET, {"authorization": f"Basic {credentials}"})
    wrong = base64.b64encode(b"postmark:other").decode("ascii")
    with pytest.raises(WebhookVerificationError):
        verify_email_signature("postmark", SECRET, {"authorization": f"Basic {wrong}"})


def test_unknown_provider_fails_closed() -> None:
    with pytest.raises(WebhookVerificationError):
        verify_email_signature("carrier-pigeon", SECRET, {"x-test-secret": SECRET})
