"""Append-only ledger of payment gateway events."""
# ruff: noqa: UP017

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

import sqlalchemy as sa
from pydantic import BaseModel, Field as PydanticField
from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field, SQLModel

from app.models.subscription import ensure_utc


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


JSON_BACKING_TYPE = sa.JSON().with_variant(JSONB(astext_type=sa.Text()), "postgresql")


class EventType(str, Enum):
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    SUBSCRIPTION_RENEWED = "subscription.renewed"
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"


EVENT_TYPE_ALIASES: dict[str, EventType] = {
    "created": EventType.SUBSCRIPTION_CREATED,
    "updated": EventType.SUBSCRIPTION_UPDATED,
    "cancelled": EventType.SUBSCRIPTION_CANCELLED,
    "renewed": EventType.SUBSCRIPTION_RENEWED,
}


def resolve_event_type(raw: str) -> EventType | None:
    """Map a wire event type (canonical or short alias) to a known EventType."""
    if raw in EVENT_TYPE_ALIASES:
        return EVENT_TYPE_ALIASES[raw]
    try:
        return EventType(raw)
    except ValueError:
        return None


class PaymentEvent(BaseModel):
    """Ledger entry as seen by the dispatcher."""

    event_id: str
    type: str
    user_id: str
    data: dict[str, Any] = PydanticField(default_factory=dict)
    received_at: datetime
    processed: bool = False
    processed_at: datetime | None = None
    failure_reason: str | None = None
    attempt_count: int = 0


class PaymentEventRecord(SQLModel, table=True):
    """Persisted ledger row; ``event_id`` is the idempotency key."""

    __tablename__ = "payment_events"
    __table_args__ = (
        sa.Index("ix_payment_events_user_type", "user_id", "type"),
        sa.Index("ix_payment_events_processed_received", "processed", "received_at"),
    )

    event_id: str = Field(sa_column=Column(String(length=255), primary_key=True, nullable=False))
    type: str = Field(sa_column=Column(String(length=128), nullable=False))
    user_id: str = Field(sa_column=Column(String(length=64), nullable=False))
    data: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON_BACKING_TYPE, nullable=False),
    )
    processed: bool = Field(
        default=False, sa_column=Column(Boolean, nullable=False, server_default=sa.false())
    )
    processed_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    received_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    failure_reason: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    attempt_count: int = Field(
        default=0, sa_column=Column(Integer, nullable=False, server_default="0")
    )

    def to_payment_event(self) -> PaymentEvent:
        return PaymentEvent(
            event_id=self.event_id,
            type=self.type,
            user_id=self.user_id,
            data=dict(self.data or {}),
            received_at=ensure_utc(self.received_at),
            processed=self.processed,
            processed_at=ensure_utc(self.processed_at),
            failure_reason=self.failure_reason,
            attempt_count=self.attempt_count,
        )
