"""Idempotent routing of gateway events to their handlers."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Literal

from app.models.payment_event import EventType, PaymentEvent, resolve_event_type
from app.observability.metrics import metrics
from app.services.billing.errors import BillingError, BillingPersistenceError, BillingValidationError
from app.services.billing.handlers import EventHandler
from app.services.billing.ledger import EventLedger

logger = logging.getLogger(__name__)

DispatchOutcome = Literal["processed", "duplicate", "ignored"]


@dataclass(frozen=True)
class DispatchResult:
    event_id: str
    outcome: DispatchOutcome


@dataclass
class ReplaySummary:
    processed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    exhausted: list[str] = field(default_factory=list)


class EventDispatcher:
    """Apply each gateway event at most once.

    Every delivery is first recorded in the ledger. A delivery whose ledger
    row is already processed returns immediately without re-running its
    handler. A handler failure increments the row's attempt count, keeps it
    unprocessed and re-raises so the event source redelivers.
    """

    def __init__(
        self,
        ledger: EventLedger,
        handlers: Mapping[EventType, EventHandler] | None = None,
        *,
        max_attempts: int = 3,
    ) -> None:
        self._ledger = ledger
        self._handlers: dict[EventType, EventHandler] = dict(handlers or {})
        self._max_attempts = max_attempts

    def register(self, event_type: EventType, handler: EventHandler) -> None:
        self._handlers[event_type] = handler

    def handler_for(self, raw_type: str) -> EventHandler | None:
        event_type = resolve_event_type(raw_type)
        if event_type is None:
            return None
        return self._handlers.get(event_type)

    def process_payment_event(
        self, event_id: str, event_type: str, user_id: str, payload: Mapping[str, Any]
    ) -> DispatchResult:
        if not event_id or not event_id.strip():
            raise BillingValidationError("eventId is required.", code="400_INVALID_EVENT")
        if not event_type or not event_type.strip():
            raise BillingValidationError("Event type is required.", code="400_INVALID_EVENT")

        entry, existed = self._ledger.record_event(event_id, event_type, user_id, dict(payload))
        if existed and entry.processed:
            metrics.increment("event.duplicate", tags={"type": event_type})
            logger.info(
                "billing.event.duplicate",
                extra={"event_id": event_id, "type": event_type, "user_id": user_id},
            )
            return DispatchResult(event_id=event_id, outcome="duplicate")
        return self._run(entry)

    def replay_pending(self, *, limit: int = 100) -> ReplaySummary:
        """Re-run unprocessed ledger rows that have not exhausted their attempts."""
        summary = ReplaySummary()
        for entry in self._ledger.list_unprocessed(limit=limit):
            if entry.attempt_count >= self._max_attempts:
                summary.exhausted.append(entry.event_id)
                metrics.alert(
                    "event.retry_exhausted",
                    value=entry.attempt_count,
                    threshold=self._max_attempts,
                    severity="warning",
                    tags={"type": entry.type},
                )
                continue
            try:
                self._run(entry)
            except BillingError:
                summary.failed.append(entry.event_id)
            else:
                summary.processed.append(entry.event_id)
        logger.info(
            "billing.event.replay",
            extra={
                "processed": len(summary.processed),
                "failed": len(summary.failed),
                "exhausted": len(summary.exhausted),
            },
        )
        return summary

    def _run(self, entry: PaymentEvent) -> DispatchResult:
        handler = self.handler_for(entry.type)
        if handler is None:
            logger.warning(
                "billing.event.unknown_type",
                extra={"event_id": entry.event_id, "type": entry.type, "user_id": entry.user_id},
            )
            self._ledger.mark_processed(entry)
            metrics.increment("event.ignored", tags={"type": entry.type})
            return DispatchResult(event_id=entry.event_id, outcome="ignored")

        try:
            handler(entry.user_id, entry.data)
        except Exception as exc:
            reason = f"{type(exc).__name__}: {exc}"
            self._ledger.mark_failed(entry, reason)
            metrics.increment("event.failed", tags={"type": entry.type})
            logger.error(
                "billing.event.failed",
                extra={
                    "event_id": entry.event_id,
                    "type": entry.type,
                    "user_id": entry.user_id,
                    "attempt": entry.attempt_count + 1,
                    "reason": reason,
                },
            )
            if isinstance(exc, BillingError):
                raise
            raise BillingPersistenceError(
                f"Failed to process payment event {entry.event_id}.", code="500_EVENT_FAILED"
            ) from exc

        self._ledger.mark_processed(entry)
        metrics.increment("event.processed", tags={"type": entry.type})
        logger.info(
            "billing.event.processed",
            extra={"event_id": entry.event_id, "type": entry.type, "user_id": entry.user_id},
        )
        return DispatchResult(event_id=entry.event_id, outcome="processed")
