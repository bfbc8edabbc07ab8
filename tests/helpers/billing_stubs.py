from __future__ import annotations

from typing import Any

from app.clients.payments import CheckoutSession
from app.models.subscription import Plan, SubscriptionRecord, SubscriptionStatus
from app.services.billing.container import BillingServices, assemble_billing_services
from app.services.billing.errors import GatewayError
from app.services.billing.ledger import InMemoryEventLedger
from app.services.billing.store import InMemorySubscriptionStore


class RecordingCache:
    """Cache double that remembers every invalidated user."""

    def __init__(self, *, fail_with: Exception | None = None) -> None:
        self.invalidated: list[str] = []
        self._fail_with = fail_with

    def invalidate_user(self, user_id: str) -> None:
        if self._fail_with is not None:
            raise self._fail_with
        self.invalidated.append(user_id)


class StubGateway:
    """Deterministic stand-in for the payments microservice."""

    def __init__(
        self,
        *,
        session: CheckoutSession | None = None,
        cancel_ack: dict[str, Any] | None = None,
        error: GatewayError | None = None,
    ) -> None:
        self.session = session or CheckoutSession(
            session_id="sess_123", redirect_url="https://pay.example/sess_123"
        )
        self.cancel_ack = cancel_ack if cancel_ack is not None else {"success": True}
        self.error = error
        self.checkout_calls: list[dict[str, Any]] = []
        self.cancel_calls: list[dict[str, Any]] = []

    def create_checkout_session(self, **kwargs: Any) -> CheckoutSession:
        self.checkout_calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.session

    def cancel_subscription(self, **kwargs: Any) -> dict[str, Any]:
        self.cancel_calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.cancel_ack


def premium_active(**overrides: Any) -> SubscriptionRecord:
    fields: dict[str, Any] = {
        "plan": Plan.PREMIUM,
        "status": SubscriptionStatus.ACTIVE,
        "provider": "stripe",
        "provider_ref": "sub_123",
    }
    fields.update(overrides)
    return SubscriptionRecord(**fields)


def build_memory_billing(
    *,
    gateway: StubGateway | None = None,
    cache: RecordingCache | None = None,
    enforce_event_order: bool = True,
) -> BillingServices:
    return assemble_billing_services(
        ledger=InMemoryEventLedger(),
        store=InMemorySubscriptionStore(),
        cache=cache or RecordingCache(),
        gateway=gateway or StubGateway(),
        enforce_event_order=enforce_event_order,
    )
