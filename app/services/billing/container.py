"""Wiring for the billing core: one explicit instance graph per process."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastapi import Request
from sqlalchemy.engine import Engine

from app.clients.payments import CheckoutSession, PaymentsClient
from app.config import Settings, settings
from app.core.database import build_engine
from app.services.billing.cache import CacheInvalidator, build_cache
from app.services.billing.dispatcher import EventDispatcher
from app.services.billing.errors import GatewayError
from app.services.billing.handlers import SubscriptionEventHandlers
from app.services.billing.ledger import EventLedger, build_event_ledger
from app.services.billing.service import PaymentsGateway, SubscriptionService
from app.services.billing.store import SubscriptionStore, build_subscription_store

logger = logging.getLogger(__name__)


class UnconfiguredGateway(PaymentsGateway):
    """Used when PAYMENTS_BASE_URL / PAYMENTS_JWT_SECRET are unset."""

    def create_checkout_session(self, **_: Any) -> CheckoutSession:
        raise GatewayError("Payment service is not available.", code="503_GATEWAY_UNCONFIGURED")

    def cancel_subscription(self, **_: Any) -> dict[str, Any]:
        raise GatewayError("Payment service is not available.", code="503_GATEWAY_UNCONFIGURED")


@dataclass
class BillingServices:
    ledger: EventLedger
    store: SubscriptionStore
    cache: CacheInvalidator
    gateway: PaymentsGateway
    dispatcher: EventDispatcher
    subscriptions: SubscriptionService
    engine: Engine | None = None

    def close(self) -> None:
        if isinstance(self.gateway, PaymentsClient):
            self.gateway.close()
        if self.engine is not None:
            self.engine.dispose()


def assemble_billing_services(
    *,
    ledger: EventLedger,
    store: SubscriptionStore,
    cache: CacheInvalidator,
    gateway: PaymentsGateway,
    enforce_event_order: bool = True,
    max_attempts: int = 3,
    engine: Engine | None = None,
) -> BillingServices:
    handlers = SubscriptionEventHandlers(store, cache, enforce_order=enforce_event_order)
    dispatcher = EventDispatcher(ledger, handlers.table(), max_attempts=max_attempts)
    return BillingServices(
        ledger=ledger,
        store=store,
        cache=cache,
        gateway=gateway,
        dispatcher=dispatcher,
        subscriptions=SubscriptionService(store, gateway, cache),
        engine=engine,
    )


def build_billing_services(config: Settings = settings) -> BillingServices:
    """Build the billing graph from settings; called once from the app lifespan."""
    engine = None
    if config.database_url:
        engine = build_engine(
            config.database_url,
            pool_min_size=config.db_pool_min_size,
            pool_max_size=config.db_pool_max_size,
            auto_create_schema=config.db_auto_create_schema,
        )
    if config.payments_configured:
        gateway: PaymentsGateway = PaymentsClient.from_settings(config)
    else:
        logger.warning("billing.gateway.unconfigured")
        gateway = UnconfiguredGateway()
    return assemble_billing_services(
        ledger=build_event_ledger(engine),
        store=build_subscription_store(engine),
        cache=build_cache(config.cache_backend, config.redis_url),
        gateway=gateway,
        enforce_event_order=config.billing_enforce_event_order,
        max_attempts=config.ledger_max_attempts,
        engine=engine,
    )


def get_billing_services(request: Request) -> BillingServices:
    """FastAPI dependency returning the process-wide billing graph."""
    return request.app.state.billing
