"""
Shared FastAPI dependencies for the access API.

The payment provider client is built once in the application lifespan and
kept on app.state; routes never construct one.
"""

import logging

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from gateflow.config.settings import AccessSettings, get_settings
from gateflow.database.session import get_db_session
from gateflow.integrations.stripe.refund_client import PaymentProvider
from gateflow.services.refund_requests import RefundRequestService
from gateflow.services.refund_service import RefundService

logger = logging.getLogger(__name__)


def get_access_settings() -> AccessSettings:
    """FastAPI dependency for settings (overridable in tests)."""
    return get_settings()


def get_payment_provider(request: Request) -> PaymentProvider:
    provider = getattr(request.app.state, "payment_provider", None)
    if provider is None:
        logger.error("Refund requested but no payment provider is configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider not configured",
        )
    return provider


def get_refund_service(
    db_session: Session = Depends(get_db_session),
    provider: PaymentProvider = Depends(get_payment_provider),
    settings: AccessSettings = Depends(get_access_settings),
) -> RefundService:
    return RefundService(db_session, provider, settings=settings)


def get_refund_request_service(
    db_session: Session = Depends(get_db_session),
) -> RefundRequestService:
    """Refund request service without refund capability (create / reject)."""
    return RefundRequestService(db_session)


def get_refund_approval_service(
    db_session: Session = Depends(get_db_session),
    refund_service: RefundService = Depends(get_refund_service),
) -> RefundRequestService:
    return RefundRequestService(db_session, refund_service=refund_service)
