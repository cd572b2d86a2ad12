"""
Payment admin API routes.

POST /api/v1/payments/{transaction_id}/refund refunds a transaction and
revokes the access it granted. Admin only.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from gateflow.api.auth import TokenClaims, require_admin
from gateflow.api.dependencies import get_refund_service
from gateflow.api.errors import to_http_exception
from gateflow.models.payment_transaction import RefundReason
from gateflow.services.refund_service import RefundError, RefundService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/payments", tags=["payments"])


class RefundBody(BaseModel):
    """Request to refund a transaction."""
    amount: Optional[int] = Field(
        None, description="Minor units; omitted refunds the remaining balance"
    )
    reason: str = Field(
        RefundReason.REQUESTED_BY_CUSTOMER.value,
        description="requested_by_customer | duplicate | fraudulent",
    )


class RefundResponse(BaseModel):
    transaction_id: str
    refund_id: str
    refunded_amount: int
    currency: str
    provider_status: str
    access_revoked: Optional[str] = None
    status: str


@router.post("/{transaction_id}/refund", response_model=RefundResponse)
async def refund_transaction(
    transaction_id: str,
    body: RefundBody,
    admin: TokenClaims = Depends(require_admin),
    refund_service: RefundService = Depends(get_refund_service),
):
    """
    Refund a completed transaction.

    Status codes: 404 unknown transaction, 400 invalid amount or reason,
    409 not refundable in its current state or a refund already in flight,
    502 provider rejection, 500 refund issued but not yet recorded.
    """
    logger.info(
        "Admin refund requested",
        extra={"transaction_id": transaction_id, "admin_id": admin.user_id},
    )

    try:
        result = await refund_service.refund(
            transaction_id,
            amount=body.amount,
            reason=body.reason,
            refunded_by=admin.user_id,
        )
    except RefundError as e:
        raise to_http_exception(e)

    return RefundResponse(**result.to_dict())
