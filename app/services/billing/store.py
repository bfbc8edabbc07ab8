"""Per-user subscription mirror backends."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from threading import Lock
from typing import Protocol

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from app.config import settings
from app.models.subscription import (
    SubscriptionRecord,
    SubscriptionStatus,
    UserAccount,
    UserRecord,
)
from app.services.billing.errors import BillingPersistenceError, UserNotFoundError

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def default_subscription() -> SubscriptionRecord:
    """Initial subscription for a new user: free plan in the configured default status."""
    return SubscriptionRecord(status=SubscriptionStatus(settings.billing_default_status))


class SubscriptionStore(Protocol):
    """Storage contract for the subscription sub-record embedded in each user."""

    def get(self, user_id: str) -> SubscriptionRecord:
        ...

    def get_account(self, user_id: str) -> UserAccount:
        ...

    def update_subscription(self, user_id: str, record: SubscriptionRecord) -> SubscriptionRecord:
        ...

    def add_user(
        self, user_id: str, email: str, subscription: SubscriptionRecord | None = None
    ) -> UserAccount:
        ...

    def count_by_status(self, status: SubscriptionStatus) -> int:
        ...


class InMemorySubscriptionStore(SubscriptionStore):
    """Thread-safe store used for local development and tests."""

    def __init__(self) -> None:
        self._accounts: dict[str, UserAccount] = {}
        self._lock = Lock()

    def get(self, user_id: str) -> SubscriptionRecord:
        return self.get_account(user_id).subscription

    def get_account(self, user_id: str) -> UserAccount:
        with self._lock:
            account = self._accounts.get(user_id)
            if account is None:
                raise UserNotFoundError(user_id)
            return account.model_copy(deep=True)

    def update_subscription(self, user_id: str, record: SubscriptionRecord) -> SubscriptionRecord:
        replacement = record.model_copy(update={"updated_at": _now()})
        with self._lock:
            account = self._accounts.get(user_id)
            if account is None:
                raise UserNotFoundError(user_id)
            self._accounts[user_id] = account.model_copy(update={"subscription": replacement})
        logger.info(
            "billing.subscription.persisted",
            extra={
                "user_id": user_id,
                "plan": replacement.plan.value,
                "status": replacement.status.value,
                "backend": "memory",
            },
        )
        return replacement.model_copy(deep=True)

    def add_user(
        self, user_id: str, email: str, subscription: SubscriptionRecord | None = None
    ) -> UserAccount:
        record = (subscription or default_subscription()).model_copy(update={"updated_at": _now()})
        account = UserAccount(id=user_id, email=email, subscription=record)
        with self._lock:
            if user_id in self._accounts:
                raise BillingPersistenceError(
                    f"User {user_id} already exists.", code="409_USER_EXISTS"
                )
            self._accounts[user_id] = account
        return account.model_copy(deep=True)

    def count_by_status(self, status: SubscriptionStatus) -> int:
        with self._lock:
            return sum(1 for a in self._accounts.values() if a.subscription.status == status)


class SqlSubscriptionStore(SubscriptionStore):
    """SQLModel-backed store over the ``users`` table."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def get(self, user_id: str) -> SubscriptionRecord:
        return self.get_account(user_id).subscription

    def get_account(self, user_id: str) -> UserAccount:
        try:
            with self._session() as session:
                row = session.get(UserRecord, user_id)
                if row is None:
                    raise UserNotFoundError(user_id)
                return row.to_account()
        except SQLAlchemyError as exc:
            logger.exception("billing.subscription.error", extra={"user_id": user_id})
            raise BillingPersistenceError("Failed to load subscription.") from exc

    def update_subscription(self, user_id: str, record: SubscriptionRecord) -> SubscriptionRecord:
        replacement = record.model_copy(update={"updated_at": _now()})
        try:
            with self._session() as session:
                row = session.get(UserRecord, user_id, with_for_update=True)
                if row is None:
                    raise UserNotFoundError(user_id)
                row.apply_subscription(replacement)
                session.add(row)
                session.commit()
                session.refresh(row)
                persisted = row.to_subscription()
        except SQLAlchemyError as exc:
            logger.exception("billing.subscription.error", extra={"user_id": user_id})
            raise BillingPersistenceError("Failed to persist subscription.") from exc
        logger.info(
            "billing.subscription.persisted",
            extra={
                "user_id": user_id,
                "plan": persisted.plan.value,
                "status": persisted.status.value,
                "backend": "database",
            },
        )
        return persisted

    def add_user(
        self, user_id: str, email: str, subscription: SubscriptionRecord | None = None
    ) -> UserAccount:
        row = UserRecord(id=user_id, email=email, status=SubscriptionStatus.ACTIVE.value)
        row.apply_subscription(subscription or default_subscription())
        try:
            with self._session() as session:
                session.add(row)
                session.commit()
                session.refresh(row)
                return row.to_account()
        except IntegrityError as exc:
            raise BillingPersistenceError(
                f"User {user_id} already exists.", code="409_USER_EXISTS"
            ) from exc
        except SQLAlchemyError as exc:
            logger.exception("billing.subscription.error", extra={"user_id": user_id})
            raise BillingPersistenceError("Failed to create user.") from exc

    def count_by_status(self, status: SubscriptionStatus) -> int:
        statement = select(func.count()).select_from(UserRecord).where(
            UserRecord.status == status.value
        )
        try:
            with self._session() as session:
                return int(session.exec(statement).one())
        except SQLAlchemyError as exc:
            logger.exception("billing.subscription.error", extra={"status": status.value})
            raise BillingPersistenceError("Failed to count subscriptions.") from exc

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with Session(self._engine) as session:
            yield session


def build_subscription_store(engine: Engine | None = None) -> SubscriptionStore:
    """Instantiate a SubscriptionStore, SQL-backed when a database engine is available."""
    if engine is None:
        logger.info("billing.subscription_store.initialized", extra={"backend": "memory"})
        return InMemorySubscriptionStore()
    logger.info("billing.subscription_store.initialized", extra={"backend": "database"})
    return SqlSubscriptionStore(engine)
