"""
Refund request API routes.

Customer routes (bearer token):
- GET  /api/refund-requests/eligibility/{transaction_id}
- POST /api/refund-requests

Admin routes:
- POST /api/v1/refund-requests/{request_id}/approve
- POST /api/v1/refund-requests/{request_id}/reject
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from gateflow.api.auth import TokenClaims, require_admin, require_user
from gateflow.api.dependencies import get_refund_approval_service, get_refund_request_service
from gateflow.api.errors import to_http_exception
from gateflow.errors import GateflowError
from gateflow.models.refund_request import RefundRequest
from gateflow.services.refund_requests import (
    MAX_REASON_LENGTH,
    RefundRequestError,
    RefundRequestService,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/refund-requests", tags=["refund-requests"])
admin_router = APIRouter(prefix="/api/v1/refund-requests", tags=["refund-requests"])


class CreateRefundRequestBody(BaseModel):
    transaction_id: str = Field(..., min_length=1)
    reason: Optional[str] = Field(None, max_length=MAX_REASON_LENGTH)


class ProcessRefundRequestBody(BaseModel):
    admin_response: Optional[str] = Field(None, max_length=MAX_REASON_LENGTH)


class RefundRequestResponse(BaseModel):
    id: str
    transaction_id: str
    product_id: str
    status: str
    requested_amount: int
    currency: str
    reason: Optional[str] = None
    admin_response: Optional[str] = None


class EligibilityResponse(BaseModel):
    eligible: bool
    reason: Optional[str] = None
    transaction_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    refund_period_days: Optional[int] = None
    days_since_purchase: Optional[int] = None
    days_remaining: Optional[int] = None
    existing_request_id: Optional[str] = None


class ApproveResponse(BaseModel):
    request_id: str
    status: str
    refund_id: str
    refunded_amount: int
    access_revoked: Optional[str] = None


def _to_response(request: RefundRequest) -> RefundRequestResponse:
    return RefundRequestResponse(
        id=request.id,
        transaction_id=request.transaction_id,
        product_id=request.product_id,
        status=request.status,
        requested_amount=request.requested_amount,
        currency=request.currency,
        reason=request.reason,
        admin_response=request.admin_response,
    )


@router.get("/eligibility/{transaction_id}", response_model=EligibilityResponse)
async def get_eligibility(
    transaction_id: str,
    claims: TokenClaims = Depends(require_user),
    service: RefundRequestService = Depends(get_refund_request_service),
):
    eligibility = service.check_eligibility(transaction_id, user_id=claims.user_id)
    return EligibilityResponse(**eligibility.to_dict())


@router.post("", response_model=RefundRequestResponse, status_code=status.HTTP_201_CREATED)
async def create_refund_request(
    body: CreateRefundRequestBody,
    claims: TokenClaims = Depends(require_user),
    service: RefundRequestService = Depends(get_refund_request_service),
):
    """File a refund request for one of the caller's purchases."""
    try:
        request = service.create_request(body.transaction_id, claims.user_id, body.reason)
    except RefundRequestError as e:
        raise to_http_exception(e)
    return _to_response(request)


@admin_router.post("/{request_id}/approve", response_model=ApproveResponse)
async def approve_refund_request(
    request_id: str,
    body: ProcessRefundRequestBody,
    admin: TokenClaims = Depends(require_admin),
    service: RefundRequestService = Depends(get_refund_approval_service),
):
    """Approve a pending request; the refund runs before the request closes."""
    try:
        result = await service.approve(request_id, admin.user_id, body.admin_response)
    except GateflowError as e:
        raise to_http_exception(e)

    return ApproveResponse(
        request_id=request_id,
        status="approved",
        refund_id=result.refund_id,
        refunded_amount=result.refunded_amount,
        access_revoked=result.access_revoked,
    )


@admin_router.post("/{request_id}/reject", response_model=RefundRequestResponse)
async def reject_refund_request(
    request_id: str,
    body: ProcessRefundRequestBody,
    admin: TokenClaims = Depends(require_admin),
    service: RefundRequestService = Depends(get_refund_request_service),
):
    try:
        request = service.reject(request_id, admin.user_id, body.admin_response)
    except RefundRequestError as e:
        raise to_http_exception(e)
    return _to_response(request)
