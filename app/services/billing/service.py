"""User-facing subscription operations backed by the payments gateway."""

from __future__ import annotations

import logging
from typing import Any, Protocol

from app.clients.payments import CheckoutSession
from app.models.subscription import PAID_PLANS, Plan, SubscriptionRecord, SubscriptionStatus
from app.observability.metrics import metrics
from app.services.billing.cache import CacheInvalidator
from app.services.billing.errors import BillingValidationError, InvalidStateError
from app.services.billing.store import SubscriptionStore

logger = logging.getLogger(__name__)


class PaymentsGateway(Protocol):
    """Outbound contract of the payments microservice."""

    def create_checkout_session(
        self,
        *,
        user_id: str,
        email: str,
        plan: str,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        ...

    def cancel_subscription(self, *, user_id: str, provider_ref: str | None) -> dict[str, Any]:
        ...


def _validate_plan(plan: str) -> Plan:
    try:
        resolved = Plan(plan)
    except ValueError:
        resolved = None
    if resolved not in PAID_PLANS:
        raise BillingValidationError(
            "Plan must be premium or family.", code="400_INVALID_PLAN"
        )
    return resolved


class SubscriptionService:
    def __init__(
        self,
        store: SubscriptionStore,
        gateway: PaymentsGateway,
        cache: CacheInvalidator,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._cache = cache

    def get_user_subscription(self, user_id: str) -> SubscriptionRecord:
        return self._store.get(user_id)

    def create_checkout(
        self, user_id: str, plan: str, success_url: str, cancel_url: str
    ) -> CheckoutSession:
        """Open a gateway checkout. Activation arrives later as a subscription event."""
        resolved = _validate_plan(plan)
        account = self._store.get_account(user_id)
        session = self._gateway.create_checkout_session(
            user_id=user_id,
            email=account.email,
            plan=resolved.value,
            success_url=success_url,
            cancel_url=cancel_url,
        )
        metrics.increment("checkout.created", tags={"plan": resolved.value})
        logger.info(
            "billing.checkout.created",
            extra={"user_id": user_id, "plan": resolved.value, "session_id": session.session_id},
        )
        return session

    def cancel_subscription(self, user_id: str) -> dict[str, Any]:
        """Cancel at the gateway, then mark the local mirror cancelled without waiting for the event."""
        current = self._store.get(user_id)
        if current.status != SubscriptionStatus.ACTIVE:
            raise InvalidStateError("No active subscription to cancel.")
        if not current.is_billable:
            raise InvalidStateError("Free plan has no subscription to cancel.")

        ack = self._gateway.cancel_subscription(user_id=user_id, provider_ref=current.provider_ref)

        self._store.update_subscription(
            user_id, current.model_copy(update={"status": SubscriptionStatus.CANCELLED})
        )
        self._cache.invalidate_user(user_id)
        metrics.increment("subscription.cancelled", tags={"plan": current.plan.value})
        logger.info(
            "billing.subscription.cancel_requested",
            extra={"user_id": user_id, "plan": current.plan.value},
        )
        return ack

    def subscription_stats(self) -> dict[str, int]:
        stats = {
            status.value: self._store.count_by_status(status)
            for status in (
                SubscriptionStatus.ACTIVE,
                SubscriptionStatus.CANCELLED,
                SubscriptionStatus.PAST_DUE,
            )
        }
        stats["total"] = sum(stats.values())
        for name, value in stats.items():
            metrics.gauge("subscriptions.count", value, tags={"status": name})
        return stats
