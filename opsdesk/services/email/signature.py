from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import secrets
import time
from typing import Mapping

from opsdesk.core.config import get_settings
from opsdesk.core.errors import WebhookVerificationError


logger = logging.getLogger(__name__)

EMAIL_PROVIDERS = ("sendgrid", "mailgun", "postmark", "test")


def _constant_time_equal(left: str, right: str) -> bool:
    return secrets.compare_digest(left.encode("utf-8"), right.encode("utf-8"))


def _header(headers: Mapping[str, str], name: str) -> str | None:
    # Starlette headers are case-insensitive; plain dicts from tests are lowercased here.
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    return value


def build_mailgun_signature(secret: str, timestamp: str, token: str) -> str:
    # Mailgun signs timestamp+token with HMAC-SHA256 keyed by the webhook signing key.
    return hmac.new(secret.encode("utf-8"), f"{timestamp}{token}".encode("utf-8"), hashlib.sha256).hexdigest()


def _verify_sendgrid(secret: str, headers: Mapping[str, str]) -> None:
    provided = _header(headers, "x-webhook-secret") or _header(headers, "authorization")
    if not provided:
        raise WebhookVerificationError("Missing webhook secret header")
    token = provided[7:].strip() if provided.lower().startswith("bearer ") else provided
    if not _constant_time_equal(token, secret):
        raise WebhookVerificationError("Invalid webhook secret")


def _verify_mailgun(secret: str, headers: Mapping[str, str], *, now: float, max_age_s: int) -> None:
    timestamp = _header(headers, "x-mailgun-timestamp")
    token = _header(headers, "x-mailgun-token")
    signature = _header(headers, "x-mailgun-signature")
    if not timestamp or not token or not signature:
        raise WebhookVerificationError("Missing Mailgun signature headers")
    try:
        issued_at = int(timestamp)
    except ValueError as exc:
        raise WebhookVerificationError("Invalid Mailgun timestamp") from exc
    # Timestamps outside the window are treated as replays.
    if abs(int(now) - issued_at) > max_age_s:
        raise WebhookVerificationError("Mailgun timestamp outside allowed window")
    expected = build_mailgun_signature(secret, timestamp, token)
    if not _constant_time_equal(signature, expected):
        raise WebhookVerificationError("Invalid Mailgun signature")


def _verify_postmark(secret: str, headers: Mapping[str, str]) -> None:
    token = _header(headers, "x-pm-webhook-token")
    if token:
        if not _constant_time_equal(token, secret):
            raise WebhookVerificationError("Invalid Postmark webhook token")
        return
    authorization = _header(headers, "authorization")
    if not authorization or not authorization.lower().startswith("basic "):
        raise WebhookVerificationError("Missing Postmark webhook token")
    try:
        credentials = base64.b64decode(authorization[6:].strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise WebhookVerificationError("Invalid Postmark credentials") from exc
    _user, _sep, password = credentials.partition(":")
    if not password or not _constant_time_equal(password, secret):
        raise WebhookVerificationError("Invalid Postmark credentials")


def _verify_test(secret: str, headers: Mapping[str, str]) -> None:
    provided = _header(headers, "x-test-secret")
    if not provided:
        raise WebhookVerificationError("Missing test secret header")
    if not _constant_time_equal(provided, secret):
        raise WebhookVerificationError("Invalid test secret")


def verify_email_signature(
    provider: str,
    secret: str,
    headers: Mapping[str, str],
    *,
    now: float | None = None,
    max_age_s: int | None = None,
) -> None:
    """Raise ``WebhookVerificationError`` unless ``headers`` authenticate the delivery."""
    if provider == "sendgrid":
        _verify_sendgrid(secret, headers)
    elif provider == "mailgun":
        _verify_mailgun(
            secret,
            headers,
            now=time.time() if now is None else now,
            max_age_s=get_settings().email_signature_max_age_s if max_age_s is None else max_age_s,
        )
    elif provider == "postmark":
        _verify_postmark(secret, headers)
    elif provider == "test":
        _verify_test(secret, headers)
    else:
        logger.error("email_provider_unknown provider=%s", provider)
        raise WebhookVerificationError(f"Unknown provider: {provider}")
