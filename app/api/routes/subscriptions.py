"""Subscription, checkout, and payment-event endpoints."""

from __future__ import annotations

import hmac
import json
import logging
from datetime import datetime
from hashlib import sha256
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from starlette.concurrency import run_in_threadpool

from app.config import settings
from app.models.payment_event import PaymentEvent
from app.models.subscription import SubscriptionRecord
from app.observability.metrics import metrics
from app.services.billing.container import BillingServices, get_billing_services
from app.services.billing.errors import BillingError, ErrorKind

logger = logging.getLogger(__name__)
router = APIRouter()

_KIND_STATUS = {
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.INVALID_STATE: status.HTTP_409_CONFLICT,
    ErrorKind.GATEWAY: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.PERSISTENCE: status.HTTP_503_SERVICE_UNAVAILABLE,
}


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SubscriptionResponse(_CamelModel):
    plan: str
    status: str
    current_period_end: datetime | None = Field(default=None, alias="currentPeriodEnd")
    provider: str | None = None
    provider_ref: str | None = Field(default=None, alias="providerRef")
    updated_at: datetime | None = Field(default=None, alias="updatedAt")

    @classmethod
    def from_record(cls, record: SubscriptionRecord) -> "SubscriptionResponse":
        return cls(
            plan=record.plan.value,
            status=record.status.value,
            current_period_end=record.current_period_end,
            provider=record.provider,
            provider_ref=record.provider_ref,
            updated_at=record.updated_at,
        )


class CheckoutRequest(_CamelModel):
    plan: str
    success_url: str = Field(alias="successUrl", min_length=1)
    cancel_url: str = Field(alias="cancelUrl", min_length=1)


class CheckoutResponse(_CamelModel):
    session_id: str = Field(alias="sessionId")
    redirect_url: str = Field(alias="redirectUrl")


class PaymentEventRequest(_CamelModel):
    event_id: str = Field(alias="eventId", min_length=1)
    type: str = Field(min_length=1)
    user_id: str = Field(alias="userId", min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)


class PaymentEventResponse(BaseModel):
    status: str
    outcome: str


class PaymentEventView(_CamelModel):
    event_id: str = Field(alias="eventId")
    type: str
    user_id: str = Field(alias="userId")
    processed: bool
    processed_at: datetime | None = Field(default=None, alias="processedAt")
    received_at: datetime = Field(alias="receivedAt")
    failure_reason: str | None = Field(default=None, alias="failureReason")
    attempt_count: int = Field(alias="attemptCount")

    @classmethod
    def from_event(cls, event: PaymentEvent) -> "PaymentEventView":
        return cls(
            event_id=event.event_id,
            type=event.type,
            user_id=event.user_id,
            processed=event.processed,
            processed_at=event.processed_at,
            received_at=event.received_at,
            failure_reason=event.failure_reason,
            attempt_count=event.attempt_count,
        )


class ReplayResponse(BaseModel):
    processed: list[str]
    failed: list[str]
    exhausted: list[str]


def require_user_id(x_user_id: str | None = Header(default=None, alias="X-User-Id")) -> str:
    """Identity forwarded by the authentication layer."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    return x_user_id


@router.get(
    "/api/subscriptions/me",
    response_model=SubscriptionResponse,
    response_model_by_alias=True,
)
async def get_subscription(
    user_id: str = Depends(require_user_id),
    billing: BillingServices = Depends(get_billing_services),
) -> SubscriptionResponse:
    """Return the caller's subscription mirror."""
    try:
        record = await run_in_threadpool(billing.subscriptions.get_user_subscription, user_id)
    except BillingError as exc:
        raise _to_http(exc, user_id=user_id) from exc
    return SubscriptionResponse.from_record(record)


@router.post(
    "/api/subscriptions/checkout",
    response_model=CheckoutResponse,
    response_model_by_alias=True,
)
async def create_checkout(
    payload: CheckoutRequest,
    user_id: str = Depends(require_user_id),
    billing: BillingServices = Depends(get_billing_services),
) -> CheckoutResponse:
    """Open a gateway checkout session for a paid plan."""
    try:
        session = await run_in_threadpool(
            billing.subscriptions.create_checkout,
            user_id,
            payload.plan,
            payload.success_url,
            payload.cancel_url,
        )
    except BillingError as exc:
        raise _to_http(exc, user_id=user_id) from exc
    return CheckoutResponse(session_id=session.session_id, redirect_url=session.redirect_url)


@router.post("/api/subscriptions/cancel")
async def cancel_subscription(
    user_id: str = Depends(require_user_id),
    billing: BillingServices = Depends(get_billing_services),
) -> dict[str, Any]:
    """Cancel the caller's active subscription."""
    try:
        ack = await run_in_threadpool(billing.subscriptions.cancel_subscription, user_id)
    except BillingError as exc:
        raise _to_http(exc, user_id=user_id) from exc
    return {"status": "cancelled", "gateway": ack}


@router.post("/internal/payment-events", response_model=PaymentEventResponse)
async def receive_payment_event(
    request: Request,
    signature: str | None = Header(default=None, alias="X-Payments-Signature"),
    billing: BillingServices = Depends(get_billing_services),
) -> PaymentEventResponse:
    """Ingest a gateway notification; non-2xx responses invite redelivery."""
    body = await request.body()
    _verify_signature(body, signature)
    try:
        event = PaymentEventRequest.model_validate(json.loads(body or b"{}"))
    except (ValueError, ValidationError) as exc:
        logger.warning("billing.event.invalid_payload")
        metrics.increment("event.invalid_payload")
        raise HTTPException(status_code=400, detail="Invalid payload") from exc
    try:
        result = await run_in_threadpool(
            billing.dispatcher.process_payment_event,
            event.event_id,
            event.type,
            event.user_id,
            event.data,
        )
    except BillingError as exc:
        raise _to_http(exc, user_id=event.user_id, event_id=event.event_id) from exc
    return PaymentEventResponse(status="ok", outcome=result.outcome)


@router.get("/admin/subscriptions/stats")
async def subscription_stats(
    billing: BillingServices = Depends(get_billing_services),
) -> dict[str, int]:
    """Subscription counts by status."""
    try:
        return await run_in_threadpool(billing.subscriptions.subscription_stats)
    except BillingError as exc:
        raise _to_http(exc) from exc


@router.get(
    "/admin/payment-events",
    response_model=list[PaymentEventView],
    response_model_by_alias=True,
)
async def list_payment_events(
    user_id: str | None = Query(None, description="Restrict to one user's events."),
    unprocessed: bool = Query(False, description="Only events still awaiting processing."),
    limit: int = Query(50, ge=1, le=500),
    billing: BillingServices = Depends(get_billing_services),
) -> list[PaymentEventView]:
    """Audit view over the payment event ledger."""
    if unprocessed:
        events = await run_in_threadpool(billing.ledger.list_unprocessed, limit=limit)
        if user_id:
            events = [event for event in events if event.user_id == user_id]
    elif user_id:
        events = await run_in_threadpool(billing.ledger.list_for_user, user_id, limit=limit)
    else:
        raise HTTPException(status_code=400, detail="user_id or unprocessed=true is required")
    return [PaymentEventView.from_event(event) for event in events]


@router.post("/admin/payment-events/replay", response_model=ReplayResponse)
async def replay_payment_events(
    limit: int = Query(100, ge=1, le=1000),
    billing: BillingServices = Depends(get_billing_services),
) -> ReplayResponse:
    """Re-run unprocessed ledger entries below the attempt cap."""
    summary = await run_in_threadpool(billing.dispatcher.replay_pending, limit=limit)
    return ReplayResponse(
        processed=summary.processed, failed=summary.failed, exhausted=summary.exhausted
    )


def _verify_signature(payload: bytes, signature_header: str | None) -> None:
    """HMAC-SHA256 over ``{t}.{body}``, header format ``t=<ts>,v1=<hex>``."""
    if not settings.payments_webhook_secret:
        return
    if not signature_header:
        logger.warning("billing.event.signature_missing")
        metrics.increment("event.signature_missing")
        raise HTTPException(status_code=403, detail="Invalid signature")
    pairs = dict(
        entry.split("=", 1) for entry in signature_header.split(",") if "=" in entry
    )
    timestamp = pairs.get("t")
    signature = pairs.get("v1")
    if not timestamp or not signature:
        logger.warning("billing.event.signature_parts_missing")
        metrics.increment("event.signature_invalid")
        raise HTTPException(status_code=403, detail="Invalid signature")
    expected = hmac.new(
        settings.payments_webhook_secret.encode(),
        msg=f"{timestamp}.".encode() + payload,
        digestmod=sha256,
    ).hexdigest()
    if not hmac.compare_digest(expected, signature):
        logger.warning("billing.event.signature_mismatch")
        metrics.increment("event.signature_invalid")
        raise HTTPException(status_code=403, detail="Invalid signature")


def _to_http(exc: BillingError, **context: Any) -> HTTPException:
    status_code = _map_error(exc)
    log = logger.warning if status_code < 500 else logger.error
    log(
        "billing.api_error",
        extra={"code": exc.code, "kind": exc.kind.value, **context},
    )
    return HTTPException(status_code=status_code, detail=str(exc))


def _map_error(exc: BillingError) -> int:
    if exc.code == "504_GATEWAY_TIMEOUT":
        return status.HTTP_504_GATEWAY_TIMEOUT
    if exc.code == "503_GATEWAY_UNCONFIGURED":
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return _KIND_STATUS.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
