from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from opsdesk.core.errors import AuditLogImmutableError
from opsdesk.domain.types import JSONType, UTCDateTime, utc_now


def _new_id() -> str:
    return str(uuid4())


APPROVAL_STATUSES = ("pending", "approved", "rejected", "expired")
APPROVAL_TERMINAL_STATUSES = ("approved", "rejected", "expired")
RISK_LEVELS = ("none", "low", "medium", "high", "critical")
INBOUND_EMAIL_STATUSES = ("received", "processing", "processed", "failed", "ignored")
AGENT_RUN_STATUSES = (
    "pending",
    "running",
    "awaiting_approval",
    "approved",
    "rejected",
    "completed",
    "failed",
)
SUBSCRIPTION_STATUSES = ("none", "active", "trialing", "past_due", "canceled", "incomplete")
AUTO_SEND_RISK_THRESHOLDS = ("none", "low", "medium")
CONFIDENCE_THRESHOLDS = ("very_low", "low", "medium", "high", "very_high")
CONTENT_TONES = ("formal", "casual", "professional", "friendly")


class Base(DeclarativeBase):
    pass


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String)
    # Plan and limits are only ever written from verified billing events.
    plan: Mapped[str] = mapped_column(String, default="free", nullable=False)
    plan_limits: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    subscription_status: Mapped[str] = mapped_column(String, default="none", nullable=False)
    subscription_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    billing_email: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, server_default=func.now(), onupdate=utc_now
    )


class Profile(Base):
    __tablename__ = "profiles"

    # Profile id equals the auth provider subject; one organization per profile.
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    organization_id: Mapped[str] = mapped_column(String(36), ForeignKey("organizations.id"), index=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    full_name: Mapped[str | None] = mapped_column(String, nullable=True)
    role: Mapped[str] = mapped_column(String, default="member", nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, server_default=func.now())


class AgentRun(Base):
    __tablename__ = "agent_runs"
    __table_args__ = (
        Index("ix_agent_runs_org_created_at", "organization_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(36), ForeignKey("organizations.id"), index=True)
    agent_type: Mapped[str] = mapped_column(String)
    input: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    output: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    status: Mapped[str] = mapped_column(String, default="pending", nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, server_default=func.now())


class Approval(Base):
    __tablename__ = "approvals"
    __table_args__ = (
        Index("ix_approvals_org_status", "organization_id", "status"),
        Index("ix_approvals_org_created_at", "organization_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(36), ForeignKey("organizations.id"), index=True)
    # At most one approval per agent run.
    agent_run_id: Mapped[str] = mapped_column(String(36), ForeignKey("agent_runs.id"), unique=True)
    # Ordered list of proposed steps; order is preserved for the executor.
    requested_actions: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)
    risk_level: Mapped[str] = mapped_column(String, default="none", nullable=False)
    status: Mapped[str] = mapped_column(String, default="pending", nullable=False)
    requested_by: Mapped[str | None] = mapped_column(String, nullable=True)
    decided_by: Mapped[str | None] = mapped_column(String, nullable=True)
    # decided_at is set iff status != pending.
    decided_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    decision_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, server_default=func.now())


class EmailAlias(Base):
    __tablename__ = "email_aliases"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(36), ForeignKey("organizations.id"), index=True)
    alias_address: Mapped[str] = mapped_column(String, index=True)
    alias_key: Mapped[str] = mapped_column(String, unique=True, index=True)
    # Old aliases are deactivated, never deleted, so history stays resolvable.
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, server_default=func.now())


class EmailWebhookEvent(Base):
    __tablename__ = "email_webhook_events"
    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_email_webhook_events_provider_event"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String)
    event_id: Mapped[str] = mapped_column(String)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, server_default=func.now())


class InboundEmail(Base):
    __tablename__ = "inbound_emails"
    __table_args__ = (
        UniqueConstraint("organization_id", "message_id", name="uq_inbound_emails_org_message"),
        Index("ix_inbound_emails_org_received_at", "organization_id", "received_at"),
        Index("ix_inbound_emails_org_status", "organization_id", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(36), ForeignKey("organizations.id"), index=True)
    message_id: Mapped[str] = mapped_column(String)
    thread_id: Mapped[str | None] = mapped_column(String, nullable=True)
    in_reply_to: Mapped[str | None] = mapped_column(String, nullable=True)
    from_address: Mapped[str] = mapped_column(String)
    from_name: Mapped[str | None] = mapped_column(String, nullable=True)
    to_addresses: Mapped[list[str]] = mapped_column(JSONType, default=list)
    subject: Mapped[str | None] = mapped_column(Text, nullable=True)
    snippet: Mapped[str | None] = mapped_column(Text, nullable=True)
    has_attachments: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    attachment_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[str] = mapped_column(String, default="received", nullable=False)
    agent_run_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("agent_runs.id"), nullable=True)
    # processing_error is set only while status == failed.
    processing_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider: Mapped[str] = mapped_column(String)
    provider_event_id: Mapped[str | None] = mapped_column(String, nullable=True)
    raw_headers: Mapped[dict[str, str] | None] = mapped_column(JSONType, nullable=True)
    email_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, server_default=func.now())
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class AuditLog(Base):
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_org_created_at", "organization_id", "created_at"),
        Index("ix_audit_logs_resource", "resource_type", "resource_id"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String(36), index=True)
    # Profile id for humans, a system name ("stripe", "email-ingestion") otherwise.
    actor_id: Mapped[str] = mapped_column(String, index=True)
    action: Mapped[str] = mapped_column(String, index=True)
    resource_type: Mapped[str] = mapped_column(String)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONType, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, server_default=func.now())


@event.listens_for(AuditLog, "before_update")
def _reject_audit_update(mapper, connection, target) -> None:
    raise AuditLogImmutableError("audit_logs rows are append-only")


@event.listens_for(AuditLog, "before_delete")
def _reject_audit_delete(mapper, connection, target) -> None:
    raise AuditLogImmutableError("audit_logs rows are append-only")


class BillingEvent(Base):
    __tablename__ = "billing_events"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    # Unique provider id is the dedupe key for at-most-once side effects.
    stripe_event_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    event_type: Mapped[str] = mapped_column(String)
    organization_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    processing_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    payload: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, server_default=func.now())
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


def _default_approval_tools() -> list[str]:
    return ["send_email"]


class OrgSettings(Base):
    __tablename__ = "org_settings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    # One row per organization; absent rows read as the defaults.
    organization_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("organizations.id", ondelete="CASCADE"), unique=True, index=True
    )
    auto_draft_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    auto_send_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    auto_send_risk_threshold: Mapped[str] = mapped_column(String, default="none", nullable=False)
    auto_send_allowed_domains: Mapped[list[str]] = mapped_column(JSONType, default=list)
    auto_send_allowed_recipients: Mapped[list[str]] = mapped_column(JSONType, default=list)
    daily_send_limit: Mapped[int] = mapped_column(Integer, default=50, nullable=False)
    daily_run_limit: Mapped[int] = mapped_column(Integer, default=100, nullable=False)
    require_approval_tools: Mapped[list[str]] = mapped_column(JSONType, default=_default_approval_tools)
    min_confidence_threshold: Mapped[str] = mapped_column(String, default="medium", nullable=False)
    default_tone: Mapped[str] = mapped_column(String, default="professional", nullable=False)
    signature_template: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, server_default=func.now(), onupdate=utc_now
    )
