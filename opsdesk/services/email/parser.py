from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import getaddresses, parseaddr, parsedate_to_datetime
import json
import logging
import re
import secrets
import time
from typing import Any

from opsdesk.core.errors import ValidationError


logger = logging.getLogger(__name__)

MAX_SNIPPET_LENGTH = 200
_REDACTED = "[REDACTED]"
_PII_PATTERNS = [
    # SSN
    re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
    # card numbers
    re.compile(r"\b\d{4}[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{4}\b"),
    # phone numbers
    re.compile(r"\b\d{3}[\s.-]?\d{3}[\s.-]?\d{4}\b"),
]
_HTML_TAG = re.compile(r"<[^>]+>")
_WHITESPACE = re.compile(r"\s+")
_ALIAS_KEY = re.compile(r"^inbox-([a-z0-9]+)@", re.IGNORECASE)
SAFE_HEADERS = (
    "message-id",
    "date",
    "subject",
    "in-reply-to",
    "references",
    "thread-id",
    "x-gm-thrid",
    "x-mailer",
    "content-type",
    "mime-version",
)


@dataclass(frozen=True)
class ParsedEmail:
    message_id: str
    from_address: str
    from_name: str | None = None
    to_addresses: list[str] = field(default_factory=list)
    cc_addresses: list[str] = field(default_factory=list)
    subject: str | None = None
    snippet: str | None = None
    thread_id: str | None = None
    in_reply_to: str | None = None
    has_attachments: bool = False
    attachment_count: int = 0
    email_date: datetime | None = None
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class InboundEmailPayload:
    provider: str
    provider_event_id: str
    recipient: str
    email: ParsedEmail


def create_snippet(body: str | None) -> str | None:
    # Strip markup, redact PII and bound the length; full bodies are never stored.
    if not body:
        return None
    text = _HTML_TAG.sub(" ", body)
    text = _WHITESPACE.sub(" ", text).strip()
    for pattern in _PII_PATTERNS:
        text = pattern.sub(_REDACTED, text)
    if len(text) > MAX_SNIPPET_LENGTH:
        text = text[: MAX_SNIPPET_LENGTH - 3] + "..."
    return text or None


def parse_address(value: str | None) -> tuple[str, str | None]:
    name, address = parseaddr(value or "")
    return address.strip().lower(), (name.strip() or None)


def extract_address(value: str | None) -> str:
    # First address of a possibly comma-separated list, lowercased.
    addresses = parse_recipient_list(value)
    if addresses:
        return addresses[0]
    return (value or "").split(",")[0].strip().lower()


def parse_recipient_list(value: str | None) -> list[str]:
    if not value:
        return []
    return [address.strip().lower() for _name, address in getaddresses([value]) if "@" in address]


def parse_header_block(raw: str | None) -> dict[str, str]:
    # Unfold continuation lines, then keep the last value seen per lowercased name.
    headers: dict[str, str] = {}
    if not raw:
        return headers
    unfolded = re.sub(r"\r?\n[ \t]+", " ", raw)
    for line in unfolded.splitlines():
        name, sep, value = line.partition(":")
        if sep and name.strip():
            headers[name.strip().lower()] = value.strip()
    return headers


def select_safe_headers(headers: dict[str, str]) -> dict[str, str]:
    return {key: headers[key] for key in SAFE_HEADERS if headers.get(key)}


def parse_email_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def extract_alias_key(recipient: str | None) -> str | None:
    # Inbox aliases look like inbox-<key>@<domain>.
    match = _ALIAS_KEY.match((recipient or "").strip())
    return match.group(1).lower() if match else None


def fallback_message_id() -> str:
    return f"<{int(time.time() * 1000)}.{secrets.token_hex(4)}@opsdesk.generated>"


def _as_int(value: Any) -> int:
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return 0


def _parse_sendgrid(data: dict[str, Any]) -> InboundEmailPayload:
    recipient = data.get("to") or ""
    envelope = data.get("envelope")
    if envelope:
        try:
            recipients = json.loads(envelope).get("to") or []
            if recipients:
                recipient = recipients[0]
        except (ValueError, AttributeError):
            pass
    headers = parse_header_block(data.get("headers"))
    message_id = headers.get("message-id") or fallback_message_id()
    from_address, from_name = parse_address(data.get("from"))
    attachment_count = 0
    if data.get("attachment-info"):
        try:
            attachment_count = len(json.loads(data["attachment-info"]))
        except (ValueError, TypeError):
            attachment_count = _as_int(data.get("attachments"))
    else:
        attachment_count = _as_int(data.get("attachments"))
    email = ParsedEmail(
        message_id=message_id,
        from_address=from_address,
        from_name=from_name,
        to_addresses=parse_recipient_list(data.get("to")),
        cc_addresses=parse_recipient_list(data.get("cc")),
        subject=data.get("subject"),
        snippet=create_snippet(data.get("text") or data.get("html")),
        thread_id=headers.get("thread-id") or headers.get("x-gm-thrid"),
        in_reply_to=headers.get("in-reply-to"),
        has_attachments=attachment_count > 0,
        attachment_count=attachment_count,
        email_date=parse_email_date(headers.get("date")),
        headers=select_safe_headers(headers),
    )
    return InboundEmailPayload("sendgrid", message_id, extract_address(recipient), email)


def _parse_mailgun(data: dict[str, Any]) -> InboundEmailPayload:
    message_id = data.get("Message-Id") or fallback_message_id()
    from_address, from_name = parse_address(data.get("from") or data.get("sender"))
    headers: dict[str, str] = {}
    if data.get("message-headers"):
        try:
            headers = {str(key).lower(): str(value) for key, value in json.loads(data["message-headers"])}
        except (ValueError, TypeError):
            headers = {}
    attachment_count = _as_int(data.get("attachment-count"))
    email = ParsedEmail(
        message_id=message_id,
        from_address=from_address,
        from_name=from_name,
        to_addresses=parse_recipient_list(data.get("To") or data.get("recipient")),
        cc_addresses=parse_recipient_list(data.get("Cc")),
        subject=data.get("subject"),
        snippet=create_snippet(data.get("stripped-text") or data.get("body-plain")),
        in_reply_to=data.get("In-Reply-To"),
        has_attachments=attachment_count > 0,
        attachment_count=attachment_count,
        email_date=parse_email_date(data.get("Date")),
        headers=select_safe_headers(headers),
    )
    recipient = extract_address(data.get("recipient") or data.get("To"))
    return InboundEmailPayload("mailgun", message_id, recipient, email)


def _parse_postmark(data: dict[str, Any]) -> InboundEmailPayload:
    message_id = data.get("MessageID") or fallback_message_id()
    from_full = data.get("FromFull")
    if isinstance(from_full, dict) and from_full.get("Email"):
        from_address, from_name = str(from_full["Email"]).lower(), from_full.get("Name") or None
    else:
        from_address, from_name = parse_address(data.get("From"))
    to_full = data.get("ToFull")
    if isinstance(to_full, list):
        to_addresses = [str(item.get("Email", "")).lower() for item in to_full if item.get("Email")]
    else:
        to_addresses = parse_recipient_list(data.get("To"))
    cc_full = data.get("CcFull")
    cc_addresses = (
        [str(item.get("Email", "")).lower() for item in cc_full if item.get("Email")]
        if isinstance(cc_full, list)
        else []
    )
    headers = {
        str(item.get("Name", "")).lower(): str(item.get("Value", ""))
        for item in data.get("Headers") or []
        if isinstance(item, dict)
    }
    attachments = data.get("Attachments") or []
    email = ParsedEmail(
        message_id=message_id,
        from_address=from_address,
        from_name=from_name,
        to_addresses=to_addresses,
        cc_addresses=cc_addresses,
        subject=data.get("Subject"),
        snippet=create_snippet(data.get("StrippedTextReply") or data.get("TextBody")),
        in_reply_to=data.get("InReplyTo"),
        has_attachments=len(attachments) > 0,
        attachment_count=len(attachments),
        email_date=parse_email_date(data.get("Date")),
        headers=select_safe_headers(headers),
    )
    recipient = extract_address(data.get("OriginalRecipient") or data.get("To"))
    return InboundEmailPayload("postmark", message_id, recipient, email)


def _parse_test(data: dict[str, Any]) -> InboundEmailPayload:
    if not data.get("from") or not data.get("to"):
        raise ValidationError("Invalid email payload", errors={"payload": "from and to are required"})
    message_id = data.get("messageId") or data.get("message_id") or fallback_message_id()
    from_address, from_name = parse_address(data.get("from"))
    recipient = extract_address(data.get("to"))
    email = ParsedEmail(
        message_id=message_id,
        from_address=from_address,
        from_name=from_name,
        to_addresses=[recipient],
        subject=data.get("subject"),
        snippet=create_snippet(data.get("body")),
        email_date=datetime.now(timezone.utc),
    )
    return InboundEmailPayload("test", message_id, recipient, email)


_PARSERS = {
    "sendgrid": _parse_sendgrid,
    "mailgun": _parse_mailgun,
    "postmark": _parse_postmark,
    "test": _parse_test,
}


def parse_inbound_email(provider: str, payload: Any) -> InboundEmailPayload:
    """Map a provider payload onto the fields stored for an inbound email."""
    parser = _PARSERS.get(provider)
    if parser is None:
        raise ValidationError("Unknown email provider", errors={"provider": provider})
    if not isinstance(payload, dict):
        raise ValidationError("Invalid email payload", errors={"payload": "Expected an object"})
    parsed = parser(payload)
    if not parsed.email.from_address:
        raise ValidationError("Invalid email payload", errors={"from": "Sender address is required"})
    return parsed
