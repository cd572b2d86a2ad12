"""
Customer refund requests reviewed by an admin.

A customer files a request for one of their completed purchases; an admin
approves it (which runs the refund protocol) or rejects it. Approval only
sticks when the refund itself succeeds.
"""

import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from gateflow.errors import ErrorCode, GateflowError
from gateflow.models.admin_action import AdminAction, AdminActionType
from gateflow.models.base import ensure_utc, utcnow
from gateflow.models.payment_transaction import (
    PaymentTransaction,
    RefundReason,
    TransactionStatus,
)
from gateflow.models.product import Product
from gateflow.models.refund_request import RefundRequest, RefundRequestStatus
from gateflow.services.refund_service import RefundResult, RefundService

logger = logging.getLogger(__name__)

MAX_REASON_LENGTH = 2000


class IneligibleReason:
    TRANSACTION_NOT_FOUND = "transaction_not_found"
    NOT_OWNER = "not_owner"
    ALREADY_REFUNDED = "already_refunded"
    NOT_COMPLETED = "transaction_not_completed"
    PRODUCT_NOT_REFUNDABLE = "product_not_refundable"
    REQUEST_ALREADY_EXISTS = "request_already_exists"
    REFUND_PERIOD_EXPIRED = "refund_period_expired"


class RefundRequestError(GateflowError):
    """Raised when a refund request cannot be created or processed."""
    pass


@dataclass
class RefundEligibility:
    eligible: bool
    reason: Optional[str] = None
    transaction_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    refund_period_days: Optional[int] = None
    days_since_purchase: Optional[int] = None
    days_remaining: Optional[int] = None
    existing_request_id: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


class RefundRequestService:
    """Creates and processes customer refund requests."""

    def __init__(
        self,
        db_session: Session,
        refund_service: Optional[RefundService] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db_session
        self.refund_service = refund_service
        self._clock = clock or utcnow

    def check_eligibility(
        self,
        transaction_id: str,
        user_id: Optional[str] = None,
    ) -> RefundEligibility:
        """
        Check whether a transaction can have a refund requested.

        When user_id is given the transaction must belong to that user.
        """
        transaction = self.db.get(PaymentTransaction, transaction_id)
        if transaction is None:
            return RefundEligibility(False, IneligibleReason.TRANSACTION_NOT_FOUND)

        if user_id is not None and transaction.user_id != user_id:
            return RefundEligibility(False, IneligibleReason.NOT_OWNER)

        if transaction.status == TransactionStatus.REFUNDED.value:
            return RefundEligibility(False, IneligibleReason.ALREADY_REFUNDED, transaction.id)
        if transaction.status != TransactionStatus.COMPLETED.value:
            return RefundEligibility(False, IneligibleReason.NOT_COMPLETED, transaction.id)

        product = self.db.get(Product, transaction.product_id)
        if product is None or not product.is_refundable:
            return RefundEligibility(
                False, IneligibleReason.PRODUCT_NOT_REFUNDABLE, transaction.id
            )

        existing = (
            self.db.query(RefundRequest)
            .filter(
                RefundRequest.transaction_id == transaction.id,
                RefundRequest.status.in_([
                    RefundRequestStatus.PENDING.value,
                    RefundRequestStatus.APPROVED.value,
                ]),
            )
            .first()
        )
        if existing is not None:
            return RefundEligibility(
                False,
                IneligibleReason.REQUEST_ALREADY_EXISTS,
                transaction.id,
                existing_request_id=existing.id,
            )

        purchased_at = ensure_utc(transaction.created_at) or self._clock()
        days_since_purchase = max(0, (self._clock() - purchased_at).days)
        period = product.refund_period_days

        if period is not None and days_since_purchase > period:
            return RefundEligibility(
                False,
                IneligibleReason.REFUND_PERIOD_EXPIRED,
                transaction.id,
                refund_period_days=period,
                days_since_purchase=days_since_purchase,
            )

        return RefundEligibility(
            eligible=True,
            transaction_id=transaction.id,
            amount=transaction.refundable_amount,
            currency=transaction.currency,
            refund_period_days=period,
            days_since_purchase=days_since_purchase,
            days_remaining=(period - days_since_purchase) if period is not None else None,
        )

    def create_request(
        self,
        transaction_id: str,
        user_id: str,
        reason: Optional[str] = None,
    ) -> RefundRequest:
        """
        File a pending refund request for the full remaining amount.

        Raises:
            RefundRequestError: NOT_FOUND if the transaction does not exist or
                is not the caller's, INVALID_STATE if it is not eligible,
                INVALID_INPUT for an overlong reason
        """
        if reason is not None and len(reason) > MAX_REASON_LENGTH:
            raise RefundRequestError(
                ErrorCode.INVALID_INPUT,
                f"reason must be at most {MAX_REASON_LENGTH} characters",
            )

        eligibility = self.check_eligibility(transaction_id, user_id=user_id)
        if not eligibility.eligible:
            code = (
                ErrorCode.NOT_FOUND
                if eligibility.reason in (
                    IneligibleReason.TRANSACTION_NOT_FOUND,
                    IneligibleReason.NOT_OWNER,
                )
                else ErrorCode.INVALID_STATE
            )
            logger.warning(
                "Refund request rejected",
                extra={
                    "transaction_id": transaction_id,
                    "user_id": user_id,
                    "reason": eligibility.reason,
                },
            )
            raise RefundRequestError(code, eligibility.reason, eligibility.to_dict())

        transaction = self.db.get(PaymentTransaction, transaction_id)
        request = RefundRequest(
            transaction_id=transaction.id,
            product_id=transaction.product_id,
            user_id=user_id,
            customer_email=transaction.customer_email or "",
            requested_amount=transaction.refundable_amount,
            currency=transaction.currency,
            reason=reason,
            status=RefundRequestStatus.PENDING.value,
        )
        self.db.add(request)
        self.db.commit()

        logger.info(
            "Refund request created",
            extra={
                "request_id": request.id,
                "transaction_id": transaction_id,
                "user_id": user_id,
            },
        )
        return request

    async def approve(
        self,
        request_id: str,
        admin_id: str,
        admin_response: Optional[str] = None,
    ) -> RefundResult:
        """
        Approve a pending request by running the refund.

        The request is marked approved only after the refund succeeds; if the
        refund raises, the request stays pending and the error propagates.
        """
        if self.refund_service is None:
            raise RuntimeError("RefundRequestService.approve requires a refund_service")

        request = self._get_pending(request_id)
        result = await self.refund_service.refund(
            request.transaction_id,
            amount=request.requested_amount,
            reason=RefundReason.REQUESTED_BY_CUSTOMER.value,
            refunded_by=admin_id,
        )

        self._close(
            request,
            RefundRequestStatus.APPROVED.value,
            AdminActionType.REFUND_REQUEST_APPROVED,
            admin_id,
            admin_response,
            {"refund_id": result.refund_id, "amount": result.refunded_amount},
        )
        return result

    def reject(
        self,
        request_id: str,
        admin_id: str,
        admin_response: Optional[str] = None,
    ) -> RefundRequest:
        request = self._get_pending(request_id)
        self._close(
            request,
            RefundRequestStatus.REJECTED.value,
            AdminActionType.REFUND_REQUEST_REJECTED,
            admin_id,
            admin_response,
            {},
        )
        return request

    def _get_pending(self, request_id: str) -> RefundRequest:
        request = self.db.get(RefundRequest, request_id)
        if request is None:
            raise RefundRequestError(ErrorCode.NOT_FOUND, "Refund request not found")
        if not request.is_pending:
            raise RefundRequestError(
                ErrorCode.INVALID_STATE,
                "Request already processed",
                {"current_status": request.status},
            )
        return request

    def _close(
        self,
        request: RefundRequest,
        status: str,
        action: str,
        admin_id: str,
        admin_response: Optional[str],
        details: dict,
    ) -> None:
        request.status = status
        request.admin_id = admin_id
        request.admin_response = admin_response
        request.processed_at = self._clock()
        self.db.add(AdminAction(
            admin_id=admin_id,
            action=action,
            target_type="refund_request",
            target_id=request.id,
            details={"transaction_id": request.transaction_id, **details},
        ))
        self.db.commit()

        logger.info(
            "Refund request processed",
            extra={"request_id": request.id, "status": status, "admin_id": admin_id},
        )
