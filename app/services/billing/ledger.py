"""Append-only, idempotent ledger of payment gateway events."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Protocol

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from app.models.payment_event import PaymentEvent, PaymentEventRecord
from app.services.billing.errors import BillingPersistenceError

logger = logging.getLogger(__name__)

MAX_FAILURE_REASON_LENGTH = 2000


def _now() -> datetime:
    return datetime.now(timezone.utc)


class EventLedger(Protocol):
    """Storage contract for payment events. Rows are never deleted."""

    def record_event(
        self, event_id: str, event_type: str, user_id: str, payload: dict[str, Any]
    ) -> tuple[PaymentEvent, bool]:
        ...

    def mark_processed(self, entry: PaymentEvent) -> PaymentEvent:
        ...

    def mark_failed(self, entry: PaymentEvent, reason: str) -> PaymentEvent:
        ...

    def get(self, event_id: str) -> PaymentEvent | None:
        ...

    def list_for_user(self, user_id: str, *, limit: int = 50) -> list[PaymentEvent]:
        ...

    def list_unprocessed(self, *, limit: int = 100) -> list[PaymentEvent]:
        ...


class InMemoryEventLedger(EventLedger):
    """Thread-safe ledger used for local development and tests."""

    def __init__(self) -> None:
        self._events: dict[str, PaymentEvent] = {}
        self._lock = Lock()

    def record_event(
        self, event_id: str, event_type: str, user_id: str, payload: dict[str, Any]
    ) -> tuple[PaymentEvent, bool]:
        with self._lock:
            existing = self._events.get(event_id)
            if existing is not None:
                return existing.model_copy(deep=True), True
            entry = PaymentEvent(
                event_id=event_id,
                type=event_type,
                user_id=user_id,
                data=dict(payload),
                received_at=_now(),
            )
            self._events[event_id] = entry
        logger.info(
            "billing.ledger.recorded",
            extra={"event_id": event_id, "type": event_type, "backend": "memory"},
        )
        return entry.model_copy(deep=True), False

    def mark_processed(self, entry: PaymentEvent) -> PaymentEvent:
        with self._lock:
            stored = self._require(entry.event_id)
            stored.processed = True
            stored.processed_at = _now()
            stored.failure_reason = None
            return stored.model_copy(deep=True)

    def mark_failed(self, entry: PaymentEvent, reason: str) -> PaymentEvent:
        with self._lock:
            stored = self._require(entry.event_id)
            stored.failure_reason = reason[:MAX_FAILURE_REASON_LENGTH]
            stored.attempt_count += 1
            return stored.model_copy(deep=True)

    def get(self, event_id: str) -> PaymentEvent | None:
        with self._lock:
            entry = self._events.get(event_id)
            return entry.model_copy(deep=True) if entry else None

    def list_for_user(self, user_id: str, *, limit: int = 50) -> list[PaymentEvent]:
        with self._lock:
            matches = [e.model_copy(deep=True) for e in self._events.values() if e.user_id == user_id]
        matches.sort(key=lambda e: e.received_at, reverse=True)
        return matches[: max(0, limit)]

    def list_unprocessed(self, *, limit: int = 100) -> list[PaymentEvent]:
        with self._lock:
            pending = [e.model_copy(deep=True) for e in self._events.values() if not e.processed]
        pending.sort(key=lambda e: e.received_at)
        return pending[: max(0, limit)]

    def _require(self, event_id: str) -> PaymentEvent:
        stored = self._events.get(event_id)
        if stored is None:
            raise BillingPersistenceError(
                f"Ledger entry {event_id} does not exist.", code="500_LEDGER_MISSING"
            )
        return stored


class SqlEventLedger(EventLedger):
    """SQLModel-backed ledger; the primary key on ``event_id`` enforces idempotency."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def dispose(self) -> None:
        self._engine.dispose()

    def record_event(
        self, event_id: str, event_type: str, user_id: str, payload: dict[str, Any]
    ) -> tuple[PaymentEvent, bool]:
        record = PaymentEventRecord(
            event_id=event_id,
            type=event_type,
            user_id=user_id,
            data=dict(payload),
            received_at=_now(),
        )
        try:
            with self._session() as session:
                session.add(record)
                session.commit()
                session.refresh(record)
                created = record.to_payment_event()
        except IntegrityError:
            # Another delivery won the insert; observe its row.
            existing = self.get(event_id)
            if existing is None:  # pragma: no cover - conflict without a row
                raise BillingPersistenceError(
                    f"Ledger conflict for {event_id} without an existing row.",
                    code="500_LEDGER_CONFLICT",
                ) from None
            return existing, True
        except SQLAlchemyError as exc:
            logger.exception("billing.ledger.error", extra={"event_id": event_id})
            raise BillingPersistenceError("Failed to record payment event.") from exc
        logger.info(
            "billing.ledger.recorded",
            extra={"event_id": event_id, "type": event_type, "backend": "database"},
        )
        return created, False

    def mark_processed(self, entry: PaymentEvent) -> PaymentEvent:
        statement = (
            update(PaymentEventRecord)
            .where(PaymentEventRecord.event_id == entry.event_id)
            .values(processed=True, processed_at=_now(), failure_reason=None)
        )
        return self._apply(entry.event_id, statement)

    def mark_failed(self, entry: PaymentEvent, reason: str) -> PaymentEvent:
        statement = (
            update(PaymentEventRecord)
            .where(PaymentEventRecord.event_id == entry.event_id)
            .values(
                failure_reason=reason[:MAX_FAILURE_REASON_LENGTH],
                attempt_count=PaymentEventRecord.attempt_count + 1,
            )
        )
        return self._apply(entry.event_id, statement)

    def get(self, event_id: str) -> PaymentEvent | None:
        try:
            with self._session() as session:
                record = session.get(PaymentEventRecord, event_id)
                return record.to_payment_event() if record else None
        except SQLAlchemyError as exc:
            logger.exception("billing.ledger.error", extra={"event_id": event_id})
            raise BillingPersistenceError("Failed to load payment event.") from exc

    def list_for_user(self, user_id: str, *, limit: int = 50) -> list[PaymentEvent]:
        statement = (
            select(PaymentEventRecord)
            .where(PaymentEventRecord.user_id == user_id)
            .order_by(PaymentEventRecord.received_at.desc())
            .limit(max(0, limit))
        )
        return self._list(statement)

    def list_unprocessed(self, *, limit: int = 100) -> list[PaymentEvent]:
        statement = (
            select(PaymentEventRecord)
            .where(PaymentEventRecord.processed.is_(False))
            .order_by(PaymentEventRecord.received_at.asc())
            .limit(max(0, limit))
        )
        return self._list(statement)

    def _apply(self, event_id: str, statement: Any) -> PaymentEvent:
        try:
            with self._session() as session:
                result = session.execute(statement)
                session.commit()
                if result.rowcount == 0:
                    raise BillingPersistenceError(
                        f"Ledger entry {event_id} does not exist.", code="500_LEDGER_MISSING"
                    )
                record = session.get(PaymentEventRecord, event_id, populate_existing=True)
                return record.to_payment_event()
        except SQLAlchemyError as exc:
            logger.exception("billing.ledger.error", extra={"event_id": event_id})
            raise BillingPersistenceError("Failed to update payment event.") from exc

    def _list(self, statement: Any) -> list[PaymentEvent]:
        try:
            with self._session() as session:
                return [record.to_payment_event() for record in session.exec(statement).all()]
        except SQLAlchemyError as exc:
            logger.exception("billing.ledger.error")
            raise BillingPersistenceError("Failed to list payment events.") from exc

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with Session(self._engine) as session:
            yield session


def build_event_ledger(engine: Engine | None = None) -> EventLedger:
    """Instantiate an EventLedger, SQL-backed when a database engine is available."""
    if engine is None:
        logger.info("billing.ledger.initialized", extra={"backend": "memory"})
        return InMemoryEventLedger()
    logger.info("billing.ledger.initialized", extra={"backend": "database"})
    return SqlEventLedger(engine)
