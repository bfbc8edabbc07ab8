"""Client for the payments microservice (checkout and cancellation)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import jwt

from app.config import Settings, settings
from app.observability.metrics import metrics
from app.services.billing.errors import GatewayError

logger = logging.getLogger(__name__)

MAX_LOGGED_BODY = 500


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    redirect_url: str


class PaymentsClient:
    """Synchronous gateway client; every failure surfaces as GatewayError."""

    def __init__(
        self,
        base_url: str,
        jwt_secret: str,
        *,
        app_id: str = "storytime",
        timeout: float = 10.0,
        token_ttl_seconds: int = 3600,
        http_client: httpx.Client | None = None,
    ) -> None:
        if not base_url:
            raise ValueError("PAYMENTS_BASE_URL is required to create a PaymentsClient.")
        if not jwt_secret:
            raise ValueError("PAYMENTS_JWT_SECRET is required to create a PaymentsClient.")
        self._jwt_secret = jwt_secret
        self._app_id = app_id
        self._token_ttl = timedelta(seconds=token_ttl_seconds)
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout)

    @classmethod
    def from_settings(cls, config: Settings = settings) -> "PaymentsClient":
        """Instantiate the client from PAYMENTS_* settings."""
        return cls(
            base_url=config.payments_base_url or "",
            jwt_secret=config.payments_jwt_secret or "",
            app_id=config.payments_app_id,
            timeout=config.payments_timeout_seconds,
            token_ttl_seconds=config.payments_token_ttl_seconds,
        )

    def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._owns_http_client:
            self._http.close()

    def create_checkout_session(
        self,
        *,
        user_id: str,
        email: str,
        plan: str,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        """Ask the gateway for a hosted checkout session."""
        payload = {
            "userId": user_id,
            "userEmail": email,
            "plan": plan,
            "successUrl": success_url,
            "cancelUrl": cancel_url,
            "metadata": {"userId": user_id, "plan": plan},
        }
        data = self._post("/checkout", payload, user_id=user_id)
        session_id = data.get("sessionId") or data.get("subscriptionId")
        redirect_url = data.get("redirectUrl") or data.get("shortUrl")
        if not session_id or not redirect_url:
            raise GatewayError(
                "Checkout response missing session id or redirect url.",
                body=str(data)[:MAX_LOGGED_BODY],
                code="502_GATEWAY_SCHEMA",
            )
        return CheckoutSession(session_id=str(session_id), redirect_url=str(redirect_url))

    def cancel_subscription(self, *, user_id: str, provider_ref: str | None) -> dict[str, Any]:
        """Cancel the user's gateway subscription; returns the gateway acknowledgement."""
        return self._post("/cancel", {"userId": user_id, "providerRef": provider_ref}, user_id=user_id)

    def _post(self, path: str, payload: dict[str, Any], *, user_id: str) -> dict[str, Any]:
        with metrics.timer("payments.request", tags={"path": path}) as timing_tags:
            response = self._send(path, payload, user_id=user_id, timing_tags=timing_tags)
        return self._decode(response)

    def _send(
        self, path: str, payload: dict[str, Any], *, user_id: str, timing_tags: dict[str, Any]
    ) -> httpx.Response:
        try:
            response = self._http.post(path, json=payload, headers=self._headers(user_id))
        except httpx.TimeoutException as exc:
            timing_tags["outcome"] = "timeout"
            logger.error("payments.request.timeout", extra={"path": path, "user_id": user_id})
            raise GatewayError(
                f"Payments request to {path} timed out.", code="504_GATEWAY_TIMEOUT"
            ) from exc
        except httpx.HTTPError as exc:
            timing_tags["outcome"] = "transport_error"
            logger.error(
                "payments.request.transport_error",
                extra={"path": path, "user_id": user_id, "error": str(exc)},
            )
            raise GatewayError(f"HTTP error calling payments service: {exc}") from exc

        timing_tags["outcome"] = str(response.status_code)
        if response.status_code >= 400:
            body = response.text[:MAX_LOGGED_BODY]
            logger.error(
                "payments.request.failed",
                extra={
                    "path": path,
                    "user_id": user_id,
                    "status_code": response.status_code,
                    "body": body,
                },
            )
            raise GatewayError(
                f"Payments request failed: {response.status_code}",
                status_code=response.status_code,
                body=body,
            )

        return response

    def _decode(self, response: httpx.Response) -> dict[str, Any]:
        if response.status_code == 204 or not response.content.strip():
            return {}
        try:
            data = response.json()
        except ValueError as exc:
            raise GatewayError(
                "Failed to decode payments response JSON.",
                status_code=response.status_code,
                body=response.text[:MAX_LOGGED_BODY],
                code="502_GATEWAY_SCHEMA",
            ) from exc
        if not isinstance(data, dict):
            raise GatewayError(
                "Payments response must be a JSON object.",
                status_code=response.status_code,
                body=response.text[:MAX_LOGGED_BODY],
                code="502_GATEWAY_SCHEMA",
            )
        envelope = data.get("data")
        return envelope if isinstance(envelope, dict) else data

    def _headers(self, user_id: str) -> dict[str, str]:
        now = datetime.now(timezone.utc)
        token = jwt.encode(
            {"userId": user_id, "appId": self._app_id, "iat": now, "exp": now + self._token_ttl},
            self._jwt_secret,
            algorithm="HS256",
        )
        return {"Authorization": f"Bearer {token}", "x-app-id": self._app_id}

    def __enter__(self) -> "PaymentsClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
