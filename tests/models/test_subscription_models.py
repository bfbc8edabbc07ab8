import pytest
from pydantic import ValidationError

from app.models.payment_event import EventType, resolve_event_type
from app.models.subscription import Plan, SubscriptionRecord, SubscriptionStatus


def test_default_record_is_free_and_active():
    record = SubscriptionRecord()
    assert record.plan == Plan.FREE
    assert record.status == SubscriptionStatus.ACTIVE
    assert record.is_billable is False


def test_provider_ref_requires_provider():
    with pytest.raises(ValidationError):
        SubscriptionRecord(plan=Plan.PREMIUM, provider_ref="sub_1")


@pytest.mark.parametrize("status", [SubscriptionStatus.CANCELLED, SubscriptionStatus.PAST_DUE])
def test_free_plan_cannot_be_cancelled_or_past_due(status):
    with pytest.raises(ValidationError):
        SubscriptionRecord(plan=Plan.FREE, status=status)


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("created", EventType.SUBSCRIPTION_CREATED),
        ("subscription.renewed", EventType.SUBSCRIPTION_RENEWED),
        ("Subscription.Renewed", None),
        ("Created", None),
        ("invoice.payment_failed", EventType.INVOICE_PAYMENT_FAILED),
        ("customer.deleted", None),
        ("", None),
    ],
)
def test_resolve_event_type(raw, expected):
    assert resolve_event_type(raw) is expected
