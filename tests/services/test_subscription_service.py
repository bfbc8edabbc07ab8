from __future__ import annotations

import pytest

from app.models.subscription import Plan, SubscriptionStatus
from app.services.billing import service as service_module
from app.services.billing.errors import (
    BillingValidationError,
    GatewayError,
    InvalidStateError,
    UserNotFoundError,
)
from tests.helpers.billing_stubs import RecordingCache, StubGateway, build_memory_billing, premium_active
from tests.helpers.metrics_stub import StubMetrics


def _services(gateway: StubGateway | None = None):
    billing = build_memory_billing(gateway=gateway or StubGateway(), cache=RecordingCache())
    billing.store.add_user("u1", "u1@example.com", premium_active())
    billing.store.add_user("u2", "u2@example.com", premium_active(status=SubscriptionStatus.INACTIVE))
    billing.store.add_user("u3", "u3@example.com")
    return billing


def test_get_user_subscription_returns_default_for_new_user():
    billing = _services()

    record = billing.subscriptions.get_user_subscription("u3")

    assert record.plan == Plan.FREE
    assert record.status == SubscriptionStatus.ACTIVE
    assert record.provider is None


def test_get_user_subscription_unknown_user():
    billing = _services()

    with pytest.raises(UserNotFoundError):
        billing.subscriptions.get_user_subscription("missing")


def test_create_checkout_passes_user_email_and_does_not_mutate():
    gateway = StubGateway()
    billing = _services(gateway)
    before = billing.store.get("u3")

    session = billing.subscriptions.create_checkout(
        "u3", "premium", "https://app.example/ok", "https://app.example/cancel"
    )

    assert session.session_id == "sess_123"
    assert gateway.checkout_calls == [
        {
            "user_id": "u3",
            "email": "u3@example.com",
            "plan": "premium",
            "success_url": "https://app.example/ok",
            "cancel_url": "https://app.example/cancel",
        }
    ]
    assert billing.store.get("u3") == before
    assert billing.cache.invalidated == []


@pytest.mark.parametrize("plan", ["free", "platinum", "", "Premium", " family "])
def test_create_checkout_rejects_non_paid_plans(plan):
    gateway = StubGateway()
    billing = _services(gateway)

    with pytest.raises(BillingValidationError) as excinfo:
        billing.subscriptions.create_checkout("u3", plan, "ok", "cancel")

    assert excinfo.value.code == "400_INVALID_PLAN"
    assert gateway.checkout_calls == []


def test_create_checkout_gateway_timeout_leaves_state_untouched():
    gateway = StubGateway(error=GatewayError("timed out", code="504_GATEWAY_TIMEOUT"))
    billing = _services(gateway)
    before = billing.store.get("u3")

    with pytest.raises(GatewayError) as excinfo:
        billing.subscriptions.create_checkout("u3", "premium", "ok", "cancel")

    assert excinfo.value.retryable is True
    assert billing.store.get("u3") == before
    assert billing.cache.invalidated == []


def test_cancel_requires_active_subscription():
    gateway = StubGateway()
    billing = _services(gateway)

    with pytest.raises(InvalidStateError):
        billing.subscriptions.cancel_subscription("u2")

    assert gateway.cancel_calls == []
    assert billing.ledger.list_for_user("u2") == []
    assert billing.store.get("u2").status == SubscriptionStatus.INACTIVE


def test_cancel_free_plan_is_invalid_state():
    gateway = StubGateway()
    billing = _services(gateway)

    with pytest.raises(InvalidStateError):
        billing.subscriptions.cancel_subscription("u3")

    assert gateway.cancel_calls == []


def test_cancel_marks_mirror_cancelled_without_waiting_for_event():
    gateway = StubGateway(cancel_ack={"success": True, "status": "cancelled"})
    billing = _services(gateway)

    ack = billing.subscriptions.cancel_subscription("u1")

    assert ack == {"success": True, "status": "cancelled"}
    assert gateway.cancel_calls == [{"user_id": "u1", "provider_ref": "sub_123"}]
    record = billing.store.get("u1")
    assert record.status == SubscriptionStatus.CANCELLED
    assert record.plan == Plan.PREMIUM
    assert record.provider_ref == "sub_123"
    assert billing.cache.invalidated == ["u1"]


def test_cancel_gateway_failure_keeps_subscription_active():
    gateway = StubGateway(error=GatewayError("boom", status_code=500, body="oops"))
    billing = _services(gateway)

    with pytest.raises(GatewayError):
        billing.subscriptions.cancel_subscription("u1")

    assert billing.store.get("u1").status == SubscriptionStatus.ACTIVE
    assert billing.cache.invalidated == []


def test_subscription_stats_counts_by_status(monkeypatch):
    stub = StubMetrics()
    monkeypatch.setattr(service_module, "metrics", stub)
    billing = _services()

    stats = billing.subscriptions.subscription_stats()

    assert stats == {"active": 2, "cancelled": 0, "past_due": 0, "total": 2}
    assert {call["tags"]["status"] for call in stub.gauge_calls} == {
        "active",
        "cancelled",
        "past_due",
        "total",
    }
