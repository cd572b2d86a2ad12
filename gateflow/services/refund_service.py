"""
Refund service - executes a provider refund and revokes the matching access.

Protocol for one refund call:
1. Validate reason, transaction state and amount (no provider call on failure)
2. Claim the transaction with a conditional UPDATE of refund_lock_token and
   commit, so a concurrent call sees the claim and backs off
3. Call the payment provider with an idempotency key
4. On provider success, in ONE database transaction: mark the transaction
   refunded, delete the AccessRecord (user purchase) or GuestPurchase (guest
   purchase), release the claim and write the audit row
5. On provider failure, release the claim and surface the provider error

If step 4 keeps failing after the provider succeeded, the claim is kept and
the reconciliation sweep (gateflow.jobs.reconcile_refunds) finishes the
revocation once the claim goes stale. Access is never revoked before the
provider confirms the refund.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from gateflow.config.settings import AccessSettings, get_settings
from gateflow.errors import ErrorCode, GateflowError
from gateflow.integrations.stripe.refund_client import (
    PaymentProvider,
    PaymentProviderError,
    ProviderRefund,
)
from gateflow.models.access_record import AccessRecord
from gateflow.models.admin_action import AdminAction, AdminActionType
from gateflow.models.base import utcnow
from gateflow.models.guest_purchase import GuestPurchase
from gateflow.models.payment_transaction import (
    PaymentTransaction,
    RefundReason,
    TransactionStatus,
)

logger = logging.getLogger(__name__)

REVOKED_ACCESS_RECORD = "access_record"
REVOKED_GUEST_PURCHASE = "guest_purchase"


class RefundError(GateflowError):
    """Raised when a refund is rejected or cannot be completed."""

    @property
    def public_code(self) -> str:
        # A refund already in flight is an illegal state for a second caller
        if self.code == ErrorCode.REFUND_IN_PROGRESS:
            return ErrorCode.INVALID_STATE
        return self.code


@dataclass
class RefundResult:
    """Outcome of a successful refund."""
    transaction_id: str
    refund_id: str
    refunded_amount: int
    currency: str
    provider_status: str
    access_revoked: Optional[str]
    status: str = TransactionStatus.REFUNDED.value

    def to_dict(self) -> dict:
        return asdict(self)


def refund_idempotency_key(transaction_id: str, refunded_amount_before: int) -> str:
    """Provider idempotency key; stable across retries of the same refund attempt."""
    return f"refund-{transaction_id}-{refunded_amount_before}"


# ---------------------------------------------------------------------------
# Exclusive claim primitives (shared with the reconciliation sweep)
# ---------------------------------------------------------------------------

def acquire_refund_lock(
    db: Session,
    transaction_id: str,
    now: datetime,
    lock_ttl_seconds: int,
) -> Optional[str]:
    """
    Claim a completed transaction for refund processing.

    The claim succeeds when no claim exists or the existing one is older than
    the TTL. Commits on success.

    Returns:
        The new lock token, or None if another caller holds the claim or the
        transaction is no longer completed
    """
    token = str(uuid.uuid4())
    stale_before = now - timedelta(seconds=lock_ttl_seconds)

    updated = (
        db.query(PaymentTransaction)
        .filter(
            PaymentTransaction.id == transaction_id,
            PaymentTransaction.status == TransactionStatus.COMPLETED.value,
            or_(
                PaymentTransaction.refund_lock_token.is_(None),
                PaymentTransaction.refund_locked_at < stale_before,
            ),
        )
        .update(
            {
                PaymentTransaction.refund_lock_token: token,
                PaymentTransaction.refund_locked_at: now,
            },
            synchronize_session=False,
        )
    )
    if updated != 1:
        db.rollback()
        return None

    db.commit()
    return token


def release_refund_lock(db: Session, transaction_id: str, token: str) -> None:
    """Release a claim held under token. A claim taken over by someone else is left alone."""
    (
        db.query(PaymentTransaction)
        .filter(
            PaymentTransaction.id == transaction_id,
            PaymentTransaction.refund_lock_token == token,
        )
        .update(
            {
                PaymentTransaction.refund_lock_token: None,
                PaymentTransaction.refund_locked_at: None,
            },
            synchronize_session=False,
        )
    )
    db.commit()


def revoke_transaction_access(db: Session, transaction: PaymentTransaction) -> Optional[str]:
    """
    Delete the access granted by one transaction. Does not commit.

    A user purchase loses its AccessRecord for (user_id, product_id). A guest
    purchase loses its GuestPurchase row; if that row was already claimed,
    the claimant's AccessRecord for the product goes too.

    Returns:
        What was revoked, or None when nothing existed
    """
    if transaction.user_id is not None:
        deleted = (
            db.query(AccessRecord)
            .filter(
                AccessRecord.user_id == transaction.user_id,
                AccessRecord.product_id == transaction.product_id,
            )
            .delete(synchronize_session=False)
        )
        return REVOKED_ACCESS_RECORD if deleted else None

    # Row lock: a claim in flight must commit before the claimant is read
    guest = (
        db.query(GuestPurchase)
        .filter(GuestPurchase.session_id == transaction.session_id)
        .with_for_update()
        .first()
    )
    if guest is None:
        return None

    if guest.is_claimed:
        (
            db.query(AccessRecord)
            .filter(
                AccessRecord.user_id == guest.claimed_by_user_id,
                AccessRecord.product_id == transaction.product_id,
            )
            .delete(synchronize_session=False)
        )
    db.delete(guest)
    return REVOKED_GUEST_PURCHASE


def finalize_refund(
    db: Session,
    transaction: PaymentTransaction,
    lock_token: str,
    refund: ProviderRefund,
    refund_amount: int,
    reason: str,
    refunded_by: Optional[str],
    now: datetime,
    audit_action: str = AdminActionType.REFUND_PROCESSED,
) -> Optional[str]:
    """
    Record a provider-confirmed refund and revoke access in one commit.

    Raises:
        SQLAlchemyError: On persistence failure (session rolled back)
        RefundError: PERSISTENCE_ERROR if the claim is no longer held
    """
    try:
        updated = (
            db.query(PaymentTransaction)
            .filter(
                PaymentTransaction.id == transaction.id,
                PaymentTransaction.status == TransactionStatus.COMPLETED.value,
                PaymentTransaction.refund_lock_token == lock_token,
            )
            .update(
                {
                    PaymentTransaction.status: TransactionStatus.REFUNDED.value,
                    PaymentTransaction.refund_id: refund.id,
                    PaymentTransaction.refunded_amount: (
                        PaymentTransaction.refunded_amount + refund_amount
                    ),
                    PaymentTransaction.refund_reason: reason,
                    PaymentTransaction.refunded_at: now,
                    PaymentTransaction.refunded_by: refunded_by,
                    PaymentTransaction.refund_lock_token: None,
                    PaymentTransaction.refund_locked_at: None,
                },
                synchronize_session=False,
            )
        )
        if updated != 1:
            db.rollback()
            raise RefundError(
                ErrorCode.PERSISTENCE_ERROR,
                "Refund claim was lost before the refund could be recorded",
                {"transaction_id": transaction.id, "refund_id": refund.id},
            )

        revoked = revoke_transaction_access(db, transaction)

        db.add(AdminAction(
            admin_id=refunded_by,
            action=audit_action,
            target_type="payment_transaction",
            target_id=transaction.id,
            details={
                "refund_id": refund.id,
                "amount": refund_amount,
                "currency": transaction.currency,
                "reason": reason,
                "product_id": transaction.product_id,
                "user_id": transaction.user_id,
                "access_revoked": revoked,
            },
        ))
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    db.expire(transaction)
    return revoked


class RefundService:
    """
    Service for refunding payment transactions.

    The provider is passed in explicitly; the service never builds one.
    """

    def __init__(
        self,
        db_session: Session,
        provider: PaymentProvider,
        settings: Optional[AccessSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db_session
        self.provider = provider
        self.settings = settings or get_settings()
        self._clock = clock or utcnow

    async def refund(
        self,
        transaction_id: str,
        amount: Optional[int] = None,
        reason: str = RefundReason.REQUESTED_BY_CUSTOMER.value,
        refunded_by: Optional[str] = None,
    ) -> RefundResult:
        """
        Refund a completed transaction and revoke the access it granted.

        Args:
            transaction_id: PaymentTransaction id
            amount: Minor units to refund; None refunds the remaining balance
            reason: One of RefundReason
            refunded_by: Admin identity recorded on the transaction

        Returns:
            RefundResult

        Raises:
            RefundError: NOT_FOUND, INVALID_STATE, INVALID_INPUT,
                REFUND_IN_PROGRESS, PROVIDER_ERROR or PERSISTENCE_ERROR
        """
        transaction, refund_amount = self._validate(transaction_id, amount, reason)
        refunded_amount_before = transaction.refunded_amount or 0

        token = acquire_refund_lock(
            self.db, transaction_id, self._clock(), self.settings.refund_lock_ttl_seconds
        )
        if token is None:
            self.db.expire(transaction)
            if transaction.status != TransactionStatus.COMPLETED.value:
                raise RefundError(
                    ErrorCode.INVALID_STATE,
                    "Only completed transactions can be refunded",
                    {"transaction_id": transaction_id, "status": transaction.status},
                )
            logger.warning(
                "Refund rejected, another refund is in progress",
                extra={"transaction_id": transaction_id},
            )
            raise RefundError(
                ErrorCode.REFUND_IN_PROGRESS,
                "A refund for this transaction is already in progress",
                {"transaction_id": transaction_id},
            )

        logger.info(
            "Refund lock acquired",
            extra={"transaction_id": transaction_id, "amount": refund_amount},
        )

        try:
            refund = await self.provider.create_refund(
                payment_reference=transaction.payment_reference,
                amount=refund_amount,
                reason=reason,
                idempotency_key=refund_idempotency_key(transaction_id, refunded_amount_before),
                metadata={"transaction_id": transaction_id},
            )
        except PaymentProviderError as e:
            self._release(transaction_id, token)
            logger.error(
                "Payment provider rejected refund",
                extra={
                    "transaction_id": transaction_id,
                    "status_code": e.status_code,
                    "provider_code": e.code,
                },
            )
            raise RefundError(
                ErrorCode.PROVIDER_ERROR,
                e.message,
                {"provider_code": e.code, "provider_status_code": e.status_code},
            ) from e
        except Exception:
            self._release(transaction_id, token)
            raise

        if not refund.succeeded:
            self._release(transaction_id, token)
            logger.error(
                "Payment provider returned a failed refund",
                extra={
                    "transaction_id": transaction_id,
                    "refund_id": refund.id,
                    "provider_status": refund.status,
                },
            )
            raise RefundError(
                ErrorCode.PROVIDER_ERROR,
                f"Refund {refund.id} ended with status {refund.status}",
                {"refund_id": refund.id, "provider_status": refund.status},
            )

        revoked = await self._finalize_with_retry(
            transaction, token, refund, refund_amount, reason, refunded_by
        )

        logger.info(
            "Refund completed and access revoked",
            extra={
                "transaction_id": transaction_id,
                "refund_id": refund.id,
                "amount": refund_amount,
                "access_revoked": revoked,
            },
        )

        return RefundResult(
            transaction_id=transaction_id,
            refund_id=refund.id,
            refunded_amount=refunded_amount_before + refund_amount,
            currency=transaction.currency,
            provider_status=refund.status,
            access_revoked=revoked,
        )

    def _validate(self, transaction_id: str, amount: Optional[int], reason: str):
        if reason not in RefundReason.values():
            raise RefundError(
                ErrorCode.INVALID_INPUT,
                f"Invalid refund reason. Must be one of: {', '.join(RefundReason.values())}",
                {"reason": reason},
            )

        transaction = self.db.get(PaymentTransaction, transaction_id)
        if transaction is None:
            raise RefundError(
                ErrorCode.NOT_FOUND,
                "Transaction not found",
                {"transaction_id": transaction_id},
            )

        if not transaction.can_transition(TransactionStatus.REFUNDED.value):
            logger.warning(
                "Refund rejected, transaction not completed",
                extra={"transaction_id": transaction_id, "status": transaction.status},
            )
            raise RefundError(
                ErrorCode.INVALID_STATE,
                "Only completed transactions can be refunded",
                {"transaction_id": transaction_id, "status": transaction.status},
            )

        if not transaction.payment_reference:
            raise RefundError(
                ErrorCode.INVALID_STATE,
                "Transaction has no payment reference to refund",
                {"transaction_id": transaction_id},
            )

        refundable = transaction.refundable_amount
        if refundable <= 0:
            raise RefundError(
                ErrorCode.INVALID_STATE,
                "Transaction has no refundable balance",
                {"transaction_id": transaction_id},
            )

        if amount is None:
            return transaction, refundable

        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise RefundError(
                ErrorCode.INVALID_INPUT,
                "Refund amount must be a positive integer",
                {"amount": amount},
            )
        if amount > self.settings.max_refund_amount:
            raise RefundError(
                ErrorCode.INVALID_INPUT,
                "Refund amount exceeds maximum allowed value",
                {"amount": amount, "max_refund_amount": self.settings.max_refund_amount},
            )
        if amount > refundable:
            raise RefundError(
                ErrorCode.INVALID_INPUT,
                f"Refund amount ({amount}) cannot exceed the refundable amount ({refundable})",
                {"amount": amount, "refundable_amount": refundable},
            )
        return transaction, amount

    async def _finalize_with_retry(
        self,
        transaction: PaymentTransaction,
        token: str,
        refund: ProviderRefund,
        refund_amount: int,
        reason: str,
        refunded_by: Optional[str],
    ) -> Optional[str]:
        attempts = max(1, self.settings.refund_finalize_retries)
        backoff = self.settings.refund_finalize_backoff_seconds
        last_error: Optional[SQLAlchemyError] = None

        for attempt in range(attempts):
            try:
                return finalize_refund(
                    self.db,
                    transaction,
                    token,
                    refund,
                    refund_amount,
                    reason,
                    refunded_by,
                    self._clock(),
                )
            except SQLAlchemyError as e:
                last_error = e
                logger.warning(
                    "Refund finalize failed, retrying",
                    extra={
                        "transaction_id": transaction.id,
                        "refund_id": refund.id,
                        "attempt": attempt + 1,
                        "error": str(e),
                    },
                )
                if attempt + 1 < attempts:
                    await asyncio.sleep(backoff * (2 ** attempt))

        # Lock stays held; the sweep finalizes once it goes stale
        logger.error(
            "Refund succeeded at provider but could not be recorded",
            extra={"transaction_id": transaction.id, "refund_id": refund.id},
            exc_info=last_error,
        )
        raise RefundError(
            ErrorCode.PERSISTENCE_ERROR,
            "Refund was issued but could not be recorded; it will be reconciled",
            {"transaction_id": transaction.id, "refund_id": refund.id},
        ) from last_error

    def _release(self, transaction_id: str, token: str) -> None:
        try:
            release_refund_lock(self.db, transaction_id, token)
        except SQLAlchemyError:
            self.db.rollback()
            logger.error(
                "Failed to release refund lock; it expires after the TTL",
                extra={"transaction_id": transaction_id},
                exc_info=True,
            )
