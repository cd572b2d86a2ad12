"""
Product access API routes.

- POST /api/access/check: resolve access for one product or a batch
- POST /api/access/claim: claim guest purchases made with the caller's email

Anonymous callers may check access (always denied:no_access); claiming
requires a bearer token.
"""

import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from gateflow.api.auth import TokenClaims, get_identity, require_user
from gateflow.api.dependencies import get_access_settings
from gateflow.api.errors import to_http_exception
from gateflow.config.settings import AccessSettings
from gateflow.database.session import get_db_session
from gateflow.entitlements import EntitlementResolver, Identity
from gateflow.errors import ProductNotFoundError
from gateflow.services.claim_reconciler import ClaimReconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/access", tags=["access"])

MAX_BATCH_SLUGS = 50


class AccessCheckRequest(BaseModel):
    """Request to check access to one or more products."""
    product_slug: Optional[str] = Field(None, min_length=1, max_length=255)
    product_slugs: Optional[List[str]] = Field(None, min_length=1, max_length=MAX_BATCH_SLUGS)


class AccessDecisionResponse(BaseModel):
    status: str
    has_access: bool
    reason: Optional[str] = None
    product_id: Optional[str] = None
    product_slug: Optional[str] = None
    access_granted_at: Optional[str] = None
    access_expires_at: Optional[str] = None
    is_expiring_soon: bool = False
    availability_ending_soon: bool = False
    detail: Optional[str] = None


class AccessBatchResponse(BaseModel):
    results: Dict[str, AccessDecisionResponse]


class ClaimResponse(BaseModel):
    claimed_count: int
    granted_product_ids: List[str]
    skipped_session_ids: List[str]


@router.post("/check", response_model=None)
async def check_access(
    body: AccessCheckRequest,
    identity: Identity = Depends(get_identity),
    db_session: Session = Depends(get_db_session),
    settings: AccessSettings = Depends(get_access_settings),
):
    """
    Check access to a product (product_slug) or several (product_slugs).

    An undetermined decision is returned with HTTP 503 so clients retry
    instead of treating it as a denial.
    """
    if bool(body.product_slug) == bool(body.product_slugs):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Provide exactly one of product_slug or product_slugs",
        )

    resolver = EntitlementResolver(db_session, settings=settings)

    if body.product_slug:
        try:
            decision = resolver.resolve_by_slug(identity, body.product_slug)
        except ProductNotFoundError as e:
            raise to_http_exception(e)

        payload = AccessDecisionResponse(
            product_slug=body.product_slug, **decision.to_dict()
        )
        if decision.is_undetermined:
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content=payload.model_dump(),
            )
        return payload

    decisions = resolver.resolve_many(identity, body.product_slugs)
    payload = AccessBatchResponse(results={
        slug: AccessDecisionResponse(product_slug=slug, **decision.to_dict())
        for slug, decision in decisions.items()
    })
    if any(d.is_undetermined for d in decisions.values()):
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=payload.model_dump(),
        )
    return payload


@router.post("/claim", response_model=ClaimResponse)
async def claim_guest_purchases(
    claims: TokenClaims = Depends(require_user),
    db_session: Session = Depends(get_db_session),
):
    """Claim guest purchases made with the caller's email."""
    if not claims.email:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Token has no email claim",
        )

    try:
        result = ClaimReconciler(db_session).claim_guest_purchases(
            claims.user_id, claims.email
        )
    except SQLAlchemyError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Could not claim purchases, retry later",
        )

    return ClaimResponse(**result.to_dict())
