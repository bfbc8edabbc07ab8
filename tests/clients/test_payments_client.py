from __future__ import annotations

import json

import httpx
import jwt
import pytest

from app.clients import payments as payments_module
from app.clients.payments import PaymentsClient
from app.models.subscription import SubscriptionStatus
from app.services.billing.errors import GatewayError
from tests.helpers.billing_stubs import RecordingCache, build_memory_billing, premium_active
from tests.helpers.metrics_stub import StubMetrics

SECRET = "test-secret"


def _client(handler) -> PaymentsClient:
    transport = httpx.MockTransport(handler)
    http_client = httpx.Client(transport=transport, base_url="https://payments.test")
    return PaymentsClient(
        "https://payments.test", SECRET, app_id="storytime", http_client=http_client
    )


def test_checkout_posts_payload_and_signs_request(monkeypatch):
    stub = StubMetrics()
    monkeypatch.setattr(payments_module, "metrics", stub)
    captured: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["path"] = request.url.path
        captured["body"] = json.loads(request.content)
        captured["headers"] = request.headers
        return httpx.Response(200, json={"sessionId": "cs_1", "redirectUrl": "https://pay/cs_1"})

    session = _client(handler).create_checkout_session(
        user_id="u1",
        email="u1@example.com",
        plan="premium",
        success_url="https://app/ok",
        cancel_url="https://app/cancel",
    )

    assert session.session_id == "cs_1"
    assert session.redirect_url == "https://pay/cs_1"
    assert captured["path"] == "/checkout"
    assert captured["body"] == {
        "userId": "u1",
        "userEmail": "u1@example.com",
        "plan": "premium",
        "successUrl": "https://app/ok",
        "cancelUrl": "https://app/cancel",
        "metadata": {"userId": "u1", "plan": "premium"},
    }
    headers = captured["headers"]
    assert headers["x-app-id"] == "storytime"
    token = headers["authorization"].removeprefix("Bearer ")
    claims = jwt.decode(token, SECRET, algorithms=["HS256"])
    assert claims["userId"] == "u1"
    assert claims["appId"] == "storytime"
    assert stub.timing_calls[0]["metric"] == "payments.request"
    assert stub.timing_calls[0]["tags"] == {"path": "/checkout", "outcome": "200"}


def test_checkout_accepts_data_envelope_and_alternate_keys():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"success": True, "data": {"subscriptionId": "sub_9", "shortUrl": "https://rzp.io/x"}},
        )

    session = _client(handler).create_checkout_session(
        user_id="u1", email="e", plan="family", success_url="ok", cancel_url="cancel"
    )

    assert session.session_id == "sub_9"
    assert session.redirect_url == "https://rzp.io/x"


def test_checkout_missing_fields_is_schema_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"success": True})

    with pytest.raises(GatewayError) as excinfo:
        _client(handler).create_checkout_session(
            user_id="u1", email="e", plan="premium", success_url="ok", cancel_url="cancel"
        )

    assert excinfo.value.code == "502_GATEWAY_SCHEMA"


def test_non_2xx_response_raises_gateway_error_with_status():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(402, text="card declined")

    with pytest.raises(GatewayError) as excinfo:
        _client(handler).cancel_subscription(user_id="u1", provider_ref="sub_1")

    assert excinfo.value.status_code == 402
    assert excinfo.value.body == "card declined"
    assert excinfo.value.retryable is True


def test_timeout_raises_gateway_timeout(monkeypatch):
    stub = StubMetrics()
    monkeypatch.setattr(payments_module, "metrics", stub)

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(GatewayError) as excinfo:
        _client(handler).cancel_subscription(user_id="u1", provider_ref="sub_1")

    assert excinfo.value.code == "504_GATEWAY_TIMEOUT"
    assert stub.timing_calls[0]["tags"] == {"path": "/cancel", "outcome": "timeout"}


def test_transport_error_raises_gateway_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(GatewayError) as excinfo:
        _client(handler).cancel_subscription(user_id="u1", provider_ref=None)

    assert excinfo.value.code == "502_GATEWAY_ERROR"


def test_cancel_returns_gateway_ack():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/cancel"
        assert json.loads(request.content) == {"userId": "u1", "providerRef": "sub_1"}
        return httpx.Response(200, json={"success": True, "status": "cancelled"})

    ack = _client(handler).cancel_subscription(user_id="u1", provider_ref="sub_1")

    assert ack == {"success": True, "status": "cancelled"}


def test_requires_base_url_and_secret():
    with pytest.raises(ValueError):
        PaymentsClient("", SECRET)
    with pytest.raises(ValueError):
        PaymentsClient("https://payments.test", "")


@pytest.mark.parametrize("response", [httpx.Response(204), httpx.Response(200, content=b"")])
def test_cancel_with_empty_success_body_returns_empty_ack(response):
    def handler(request: httpx.Request) -> httpx.Response:
        return response

    ack = _client(handler).cancel_subscription(user_id="u1", provider_ref="sub_1")

    assert ack == {}


def test_cancel_with_no_content_still_marks_mirror_cancelled():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(204)

    cache = RecordingCache()
    billing = build_memory_billing(gateway=_client(handler), cache=cache)
    billing.store.add_user("u1", "u1@example.com", premium_active())

    billing.subscriptions.cancel_subscription("u1")

    assert billing.store.get("u1").status == SubscriptionStatus.CANCELLED
    assert cache.invalidated == ["u1"]


def test_checkout_with_empty_body_is_schema_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(204)

    with pytest.raises(GatewayError) as excinfo:
        _client(handler).create_checkout_session(
            user_id="u1", email="e", plan="premium", success_url="ok", cancel_url="cancel"
        )

    assert excinfo.value.code == "502_GATEWAY_SCHEMA"
