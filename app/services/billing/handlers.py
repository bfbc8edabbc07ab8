"""Per-type effects of gateway events on the subscription mirror."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from app.models.payment_event import EventType
from app.models.subscription import Plan, SubscriptionRecord, SubscriptionStatus, ensure_utc
from app.observability.metrics import metrics
from app.services.billing.cache import CacheInvalidator
from app.services.billing.errors import BillingValidationError
from app.services.billing.store import SubscriptionStore

logger = logging.getLogger(__name__)

EventHandler = Callable[[str, Mapping[str, Any]], None]

_DATETIME = TypeAdapter(datetime)


def _field(payload: Mapping[str, Any], camel: str, snake: str) -> Any:
    """Read a payload key sent as camelCase on the wire or snake_case internally."""
    if camel in payload:
        return payload[camel]
    return payload.get(snake)


def _parse_datetime(value: Any, field_name: str) -> datetime | None:
    if value is None or value == "":
        return None
    try:
        return ensure_utc(_DATETIME.validate_python(value))
    except PydanticValidationError as exc:
        raise BillingValidationError(
            f"Invalid {field_name} timestamp: {value!r}", code="400_INVALID_EVENT_PAYLOAD"
        ) from exc


def _build_record(**fields: Any) -> SubscriptionRecord:
    try:
        return SubscriptionRecord(**fields)
    except PydanticValidationError as exc:
        raise BillingValidationError(
            f"Invalid subscription payload: {exc.errors()[0]['msg']}",
            code="400_INVALID_EVENT_PAYLOAD",
        ) from exc


class SubscriptionEventHandlers:
    """Handlers for subscription lifecycle and payment events.

    Mutating handlers write a full replacement record and invalidate the
    user's cache key as their last step. When ``enforce_order`` is set, an
    event whose ``occurredAt`` predates the last applied event is skipped.
    """

    def __init__(
        self,
        store: SubscriptionStore,
        cache: CacheInvalidator,
        *,
        enforce_order: bool = True,
    ) -> None:
        self._store = store
        self._cache = cache
        self._enforce_order = enforce_order

    def table(self) -> dict[EventType, EventHandler]:
        return {
            EventType.SUBSCRIPTION_CREATED: self.handle_subscription_replaced,
            EventType.SUBSCRIPTION_UPDATED: self.handle_subscription_replaced,
            EventType.SUBSCRIPTION_RENEWED: self.handle_subscription_renewed,
            EventType.SUBSCRIPTION_CANCELLED: self.handle_subscription_cancelled,
            EventType.PAYMENT_SUCCEEDED: self.handle_payment_succeeded,
            EventType.INVOICE_PAYMENT_SUCCEEDED: self.handle_payment_succeeded,
            EventType.PAYMENT_FAILED: self.handle_payment_failed,
            EventType.INVOICE_PAYMENT_FAILED: self.handle_payment_failed,
        }

    def handle_subscription_replaced(self, user_id: str, payload: Mapping[str, Any]) -> None:
        current = self._store.get(user_id)
        occurred_at = self._occurred_at(payload)
        if self._is_stale(user_id, current, occurred_at):
            return
        record = _build_record(
            plan=_field(payload, "plan", "plan"),
            status=_field(payload, "status", "status"),
            current_period_end=_parse_datetime(
                _field(payload, "currentPeriodEnd", "current_period_end"), "currentPeriodEnd"
            ),
            provider=_field(payload, "provider", "provider"),
            provider_ref=_field(payload, "providerRef", "provider_ref"),
            last_event_at=occurred_at or current.last_event_at,
        )
        self._persist(user_id, record)
        logger.info(
            "billing.subscription.replaced",
            extra={"user_id": user_id, "plan": record.plan.value, "status": record.status.value},
        )

    def handle_subscription_renewed(self, user_id: str, payload: Mapping[str, Any]) -> None:
        current = self._store.get(user_id)
        occurred_at = self._occurred_at(payload)
        if self._is_stale(user_id, current, occurred_at):
            return
        period_end = _parse_datetime(
            _field(payload, "currentPeriodEnd", "current_period_end"), "currentPeriodEnd"
        )
        record = _build_record(
            plan=_field(payload, "plan", "plan") or current.plan,
            status=SubscriptionStatus.ACTIVE,
            current_period_end=period_end or current.current_period_end,
            provider=current.provider,
            provider_ref=current.provider_ref,
            last_event_at=occurred_at or current.last_event_at,
        )
        self._persist(user_id, record)
        logger.info(
            "billing.subscription.renewed",
            extra={"user_id": user_id, "plan": record.plan.value},
        )

    def handle_subscription_cancelled(self, user_id: str, payload: Mapping[str, Any]) -> None:
        current = self._store.get(user_id)
        occurred_at = self._occurred_at(payload)
        if self._is_stale(user_id, current, occurred_at):
            return
        if current.plan == Plan.FREE:
            raise BillingValidationError(
                "Cannot cancel a free plan subscription.", code="400_INVALID_EVENT_PAYLOAD"
            )
        period_end = _parse_datetime(
            _field(payload, "currentPeriodEnd", "current_period_end"), "currentPeriodEnd"
        )
        # Plan and provider reference survive cancellation for the grace period.
        record = current.model_copy(
            update={
                "status": SubscriptionStatus.CANCELLED,
                "current_period_end": period_end or current.current_period_end,
                "last_event_at": occurred_at or current.last_event_at,
            }
        )
        self._persist(user_id, record)
        logger.info("billing.subscription.cancelled", extra={"user_id": user_id})

    def handle_payment_succeeded(self, user_id: str, payload: Mapping[str, Any]) -> None:
        metrics.increment("payment.succeeded")
        logger.info(
            "billing.payment.succeeded",
            extra={"user_id": user_id, "amount": payload.get("amount")},
        )

    def handle_payment_failed(self, user_id: str, payload: Mapping[str, Any]) -> None:
        metrics.increment("payment.failed")
        logger.warning(
            "billing.payment.failed",
            extra={"user_id": user_id, "reason": payload.get("reason")},
        )

    def _persist(self, user_id: str, record: SubscriptionRecord) -> None:
        self._store.update_subscription(user_id, record)
        self._cache.invalidate_user(user_id)

    def _occurred_at(self, payload: Mapping[str, Any]) -> datetime | None:
        return _parse_datetime(_field(payload, "occurredAt", "occurred_at"), "occurredAt")

    def _is_stale(
        self, user_id: str, current: SubscriptionRecord, occurred_at: datetime | None
    ) -> bool:
        if not self._enforce_order or occurred_at is None or current.last_event_at is None:
            return False
        if occurred_at >= current.last_event_at:
            return False
        metrics.increment("event.stale")
        logger.warning(
            "billing.event.stale",
            extra={
                "user_id": user_id,
                "occurred_at": occurred_at.isoformat(),
                "last_event_at": current.last_event_at.isoformat(),
            },
        )
        return True
