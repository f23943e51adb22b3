from __future__ import annotations

import pytest

from opsdesk.core.errors import ValidationError
from opsdesk.services.email.parser import (
    MAX_SNIPPET_LENGTH,
    create_snippet,
    extract_alias_key,
    parse_header_block,
    parse_inbound_email,
    select_safe_headers,
)


def test_snippet_strips_html_and_redacts_pii() -> None:
    body = "<p>Call me at 555-123-4567</p><p>SSN 123-45-6789</p>"
    snippet = create_snippet(body)
    assert snippet is not None
    assert "<p>" not in snippet
    assert "555-123-4567" not in snippet
    assert "123-45-6789" not in snippet
    assert "[REDACTED]" in snippet


def test_snippet_is_bounded() -> None:
    snippet = create_snippet("word " * 200)
    assert snippet is not None
    assert len(snippet) == MAX_SNIPPET_LENGTH
    assert snippet.endswith("...")


def test_empty_body_has_no_snippet() -> None:
    assert create_snippet(None) is None
    assert create_snippet("   ") is None


@pytest.mark.parametrize(
    ("recipient", "expected"),
    [
        ("inbox-abc123@mail.test", "abc123"),
        ("INBOX-ABC123@mail.test", "abc123"),
        ("support@mail.test", None),
        ("inbox-@mail.test", None),
        (None, None),
    ],
)
def test_extract_alias_key(recipient: str | None, expected: str | None) -> None:
    assert extract_alias_key(recipient) == expected


def test_header_block_keeps_only_safe_headers() -> None:
    raw = "Message-ID: <m1@example.com>\r\nSubject: Hello\r\n  world\r\nX-Secret-Token: abc\r\n"
    headers = parse_header_block(raw)
    assert headers["subject"] == "Hello world"
    safe = select_safe_headers(headers)
    assert "x-secret-token" not in safe
    assert safe["message-id"] == "<m1@example.com>"


def test_test_provider_payload() -> None:
    parsed = parse_inbound_email(
        "test",
        {
            "from": "Jane Doe <Jane@Example.com>",
            "to": "inbox-abc123@mail.test",
            "subject": "Invoice",
            "body": "Please pay",
            "messageId": "<m-1@example.com>",
        },
    )
    assert parsed.provider_event_id == "<m-1@example.com>"
    assert parsed.recipient == "inbox-abc123@mail.test"
    assert parsed.email.from_address == "jane@example.com"
    assert parsed.email.from_name == "Jane Doe"
    assert parsed.email.snippet == "Please pay"


def test_test_provider_requires_sender_and_recipient() -> None:
    with pytest.raises(ValidationError):
        parse_inbound_email("test", {"subject": "no addresses"})


def test_non_object_payload_is_rejected() -> None:
    with pytest.raises(ValidationError):
        parse_inbound_email("test", ["not", "an", "object"])
