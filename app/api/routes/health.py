from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from starlette.concurrency import run_in_threadpool

from app.config import settings
from app.core.database import check_database_health
from app.services.billing.container import BillingServices, get_billing_services

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("")
async def health_check():
    """Basic health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
    }


@router.get("/ready")
async def readiness_check(billing: BillingServices = Depends(get_billing_services)):
    """Readiness check endpoint that includes database connectivity."""
    db_status = await run_in_threadpool(check_database_health, billing.engine)

    if not db_status:
        raise HTTPException(status_code=503, detail="Database is not available")

    return {
        "status": "ready",
        "version": settings.app_version,
        "environment": settings.environment,
        "database": "connected" if billing.engine is not None else "not configured",
        "payments": "configured" if settings.payments_configured else "not configured",
    }
