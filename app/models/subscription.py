"""Subscription mirror models: the domain record and its SQLModel backing row."""
# ruff: noqa: UP017

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

import sqlalchemy as sa
from pydantic import BaseModel, model_validator
from sqlalchemy import Column, DateTime, String
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive timestamps (SQLite drops tzinfo on read)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class Plan(str, Enum):
    FREE = "free"
    PREMIUM = "premium"
    FAMILY = "family"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    CANCELLED = "cancelled"
    PAST_DUE = "past_due"


PAID_PLANS = frozenset({Plan.PREMIUM, Plan.FAMILY})
FREE_PLAN_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.INACTIVE})


class SubscriptionRecord(BaseModel):
    """Local mirror of a user's gateway subscription."""

    plan: Plan = Plan.FREE
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    current_period_end: datetime | None = None
    provider: str | None = None
    provider_ref: str | None = None
    updated_at: datetime | None = None
    last_event_at: datetime | None = None

    @model_validator(mode="after")
    def _check_invariants(self) -> "SubscriptionRecord":
        if self.provider_ref and not self.provider:
            raise ValueError("provider_ref requires a provider.")
        if self.plan == Plan.FREE and self.status not in FREE_PLAN_STATUSES:
            raise ValueError(f"Free plan cannot be in status '{self.status.value}'.")
        return self

    @property
    def is_billable(self) -> bool:
        return self.plan in PAID_PLANS


class UserAccount(BaseModel):
    """The slice of a user the billing core needs."""

    id: str
    email: str
    subscription: SubscriptionRecord


class UserRecord(SQLModel, table=True):
    """User row with the embedded subscription sub-record."""

    __tablename__ = "users"
    __table_args__ = (
        sa.Index("ix_users_subscription_status", "status"),
        sa.CheckConstraint(
            "provider_ref IS NULL OR provider IS NOT NULL",
            name="ck_users_provider_ref_requires_provider",
        ),
    )

    id: str = Field(sa_column=Column(String(length=64), primary_key=True, nullable=False))
    email: str = Field(sa_column=Column(String(length=255), nullable=False))
    plan: str = Field(
        default=Plan.FREE.value,
        sa_column=Column(String(length=32), nullable=False, server_default=Plan.FREE.value),
    )
    status: str = Field(sa_column=Column(String(length=32), nullable=False))
    current_period_end: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    provider: str | None = Field(default=None, sa_column=Column(String(length=64), nullable=True))
    provider_ref: str | None = Field(
        default=None, sa_column=Column(String(length=255), nullable=True)
    )
    subscription_updated_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    last_event_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    def to_subscription(self) -> SubscriptionRecord:
        return SubscriptionRecord(
            plan=Plan(self.plan),
            status=SubscriptionStatus(self.status),
            current_period_end=ensure_utc(self.current_period_end),
            provider=self.provider,
            provider_ref=self.provider_ref,
            updated_at=ensure_utc(self.subscription_updated_at),
            last_event_at=ensure_utc(self.last_event_at),
        )

    def to_account(self) -> UserAccount:
        return UserAccount(id=self.id, email=self.email, subscription=self.to_subscription())

    def apply_subscription(self, record: SubscriptionRecord) -> None:
        """Full replace of the embedded subscription columns."""
        self.plan = record.plan.value
        self.status = record.status.value
        self.current_period_end = record.current_period_end
        self.provider = record.provider
        self.provider_ref = record.provider_ref
        self.subscription_updated_at = record.updated_at or _utcnow()
        self.last_event_at = record.last_event_at
