"""
Guest claim reconciler.

When a user signs in, guest purchases made with their email become theirs:
each unclaimed GuestPurchase whose transaction is still completed is claimed
with a conditional UPDATE and turned into an AccessRecord.

The conditional UPDATE (claimed_by_user_id IS NULL) is what makes concurrent
claims safe: only the caller whose UPDATE touched the row grants access.
Each row is committed on its own, so a rerun after a partial failure picks
up exactly the rows that are still unclaimed.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import exists
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from gateflow.models.base import utcnow
from gateflow.models.guest_purchase import GuestPurchase
from gateflow.models.payment_transaction import PaymentTransaction, TransactionStatus
from gateflow.models.product import Product
from gateflow.models.user import normalize_email
from gateflow.services.access_grants import AccessGrantService

logger = logging.getLogger(__name__)


@dataclass
class ClaimResult:
    """Outcome of one claim run."""
    claimed_count: int = 0
    granted_product_ids: List[str] = field(default_factory=list)
    skipped_session_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "claimed_count": self.claimed_count,
            "granted_product_ids": list(self.granted_product_ids),
            "skipped_session_ids": list(self.skipped_session_ids),
        }


class ClaimReconciler:
    """Claims guest purchases for a signed-in user."""

    def __init__(self, db_session: Session, clock: Optional[Callable[[], datetime]] = None):
        self.db = db_session
        self._clock = clock or utcnow
        self.grants = AccessGrantService(db_session, clock=self._clock)

    def claim_guest_purchases(self, user_id: str, email: str) -> ClaimResult:
        """
        Claim every unclaimed guest purchase made with this email.

        Args:
            user_id: The signed-in user
            email: The user's email, matched case-insensitively

        Returns:
            ClaimResult

        Raises:
            SQLAlchemyError: If a row cannot be claimed (that row is rolled back)
        """
        result = ClaimResult()
        email = normalize_email(email)
        if not user_id or not email:
            return result

        candidates = (
            self.db.query(GuestPurchase)
            .filter(
                GuestPurchase.customer_email == email,
                GuestPurchase.claimed_by_user_id.is_(None),
            )
            .order_by(GuestPurchase.created_at)
            .all()
        )

        for guest in candidates:
            session_id = guest.session_id
            product_id = guest.product_id
            try:
                granted = self._claim_one(user_id, guest)
            except SQLAlchemyError:
                self.db.rollback()
                logger.error(
                    "Failed to claim guest purchase",
                    extra={"user_id": user_id, "session_id": session_id},
                    exc_info=True,
                )
                raise

            if granted is None:
                result.skipped_session_ids.append(session_id)
            elif granted:
                result.claimed_count += 1
                result.granted_product_ids.append(product_id)

        if result.claimed_count or result.skipped_session_ids:
            logger.info(
                "Guest purchases reconciled",
                extra={
                    "user_id": user_id,
                    "claimed_count": result.claimed_count,
                    "skipped": len(result.skipped_session_ids),
                },
            )
        return result

    def _claim_one(self, user_id: str, guest: GuestPurchase) -> Optional[bool]:
        """
        Claim one row and grant access, committing on success.

        Returns:
            True if claimed, False if another caller claimed it first,
            None if the row is not claimable (transaction not completed,
            or a refund holds the transaction lock)
        """
        guest_id = guest.id
        session_id = guest.session_id
        product_id = guest.product_id

        transaction = (
            self.db.query(PaymentTransaction)
            .filter(PaymentTransaction.session_id == session_id)
            .first()
        )
        if transaction is None or transaction.status != TransactionStatus.COMPLETED.value:
            logger.warning(
                "Skipping guest purchase with non-completed transaction",
                extra={
                    "session_id": session_id,
                    "status": transaction.status if transaction else None,
                },
            )
            return None

        product = self.db.get(Product, product_id)
        if product is None:
            return None

        # The transaction must still be completed and not mid-refund when the row flips
        claimable = exists().where(
            PaymentTransaction.session_id == GuestPurchase.session_id,
            PaymentTransaction.status == TransactionStatus.COMPLETED.value,
            PaymentTransaction.refund_lock_token.is_(None),
        ).correlate(GuestPurchase)
        updated = (
            self.db.query(GuestPurchase)
            .filter(
                GuestPurchase.id == guest_id,
                GuestPurchase.claimed_by_user_id.is_(None),
                claimable,
            )
            .update(
                {
                    GuestPurchase.claimed_by_user_id: user_id,
                    GuestPurchase.claimed_at: self._clock(),
                },
                synchronize_session=False,
            )
        )
        if updated != 1:
            self.db.rollback()
            claimed_by = (
                self.db.query(GuestPurchase.claimed_by_user_id)
                .filter(GuestPurchase.id == guest_id)
                .scalar()
            )
            if claimed_by is None:
                logger.warning(
                    "Skipping guest purchase with a refund in progress",
                    extra={"session_id": session_id, "user_id": user_id},
                )
                return None
            logger.info(
                "Guest purchase already claimed by a concurrent request",
                extra={"session_id": session_id, "user_id": user_id},
            )
            return False

        self.grants.grant_or_refresh(user_id, product)
        self.db.commit()
        self.db.expire(guest)
        return True
