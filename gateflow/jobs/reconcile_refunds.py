"""
Refund reconciliation job.

Finishes refunds whose caller went away after the payment provider accepted
the refund, and removes access that survived a recorded refund.

1. Stale refund locks: a completed transaction still locked after the lock
   TTL is checked against the provider. If the provider holds a successful
   refund, the refund is recorded and access revoked; otherwise the lock is
   released so a new refund can be attempted.
2. Leftover access: a refunded transaction whose AccessRecord or
   GuestPurchase still exists (granted before the refund) loses it.

Usage:
    python -m gateflow.jobs.reconcile_refunds
"""

import asyncio
import logging
import sys
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from gateflow.config.settings import AccessSettings, get_settings
from gateflow.database.session import get_session_factory
from gateflow.integrations.stripe.refund_client import (
    PaymentProvider,
    PaymentProviderError,
    build_refund_client,
)
from gateflow.models.access_record import AccessRecord
from gateflow.models.admin_action import AdminActionType
from gateflow.models.base import ensure_utc, utcnow
from gateflow.models.guest_purchase import GuestPurchase
from gateflow.models.payment_transaction import (
    PaymentTransaction,
    RefundReason,
    TransactionStatus,
)
from gateflow.services.refund_service import (
    RefundError,
    acquire_refund_lock,
    finalize_refund,
    release_refund_lock,
    revoke_transaction_access,
)

logger = logging.getLogger(__name__)

# Maximum stale locks handled per run (provider rate limits)
MAX_LOCKS_PER_RUN = 100

OUTCOME_FINALIZED = "finalized"
OUTCOME_RELEASED = "released"
OUTCOME_SKIPPED = "skipped"
OUTCOME_ERROR = "error"


class ReconciliationStats:
    """Track reconciliation run statistics."""

    def __init__(self):
        self.locks_checked = 0
        self.refunds_finalized = 0
        self.locks_released = 0
        self.access_revoked = 0
        self.errors = 0
        self.start_time = utcnow()

    def to_dict(self) -> dict:
        duration = (utcnow() - self.start_time).total_seconds()
        return {
            "locks_checked": self.locks_checked,
            "refunds_finalized": self.refunds_finalized,
            "locks_released": self.locks_released,
            "access_revoked": self.access_revoked,
            "errors": self.errors,
            "duration_seconds": duration,
        }


class RefundReconciler:
    """Repairs refunds interrupted between the provider call and the database write."""

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

    async def reconcile_stale_locks(self) -> List[dict]:
        """
        Resolve completed transactions whose refund lock outlived the TTL.

        Returns:
            One outcome dict per transaction examined
        """
        now = self._clock()
        stale_before = now - timedelta(seconds=self.settings.refund_lock_ttl_seconds)

        stale_ids = [
            row.id
            for row in (
                self.db.query(PaymentTransaction.id)
                .filter(
                    PaymentTransaction.status == TransactionStatus.COMPLETED.value,
                    PaymentTransaction.refund_lock_token.isnot(None),
                    PaymentTransaction.refund_locked_at < stale_before,
                )
                .limit(MAX_LOCKS_PER_RUN)
                .all()
            )
        ]

        outcomes = []
        for transaction_id in stale_ids:
            outcomes.append(await self._reconcile_one(transaction_id))
        return outcomes

    async def _reconcile_one(self, transaction_id: str) -> dict:
        token = acquire_refund_lock(
            self.db, transaction_id, self._clock(), self.settings.refund_lock_ttl_seconds
        )
        if token is None:
            # Finished or re-locked by a live caller since the scan
            return {"transaction_id": transaction_id, "outcome": OUTCOME_SKIPPED}

        transaction = self.db.get(PaymentTransaction, transaction_id)

        try:
            refunds = await self.provider.list_refunds(transaction.payment_reference)
        except PaymentProviderError as e:
            # Lock stays held; the next run retries once it is stale again
            logger.error(
                "Could not list provider refunds",
                extra={
                    "transaction_id": transaction_id,
                    "status_code": e.status_code,
                    "error": e.message,
                },
            )
            return {"transaction_id": transaction_id, "outcome": OUTCOME_ERROR, "error": e.message}

        succeeded = [r for r in refunds if r.succeeded]
        refunded_total = min(sum(r.amount for r in succeeded), transaction.amount)
        delta = refunded_total - (transaction.refunded_amount or 0)

        if not succeeded or delta <= 0:
            release_refund_lock(self.db, transaction_id, token)
            logger.info(
                "Released stale refund lock, provider holds no refund",
                extra={"transaction_id": transaction_id},
            )
            return {"transaction_id": transaction_id, "outcome": OUTCOME_RELEASED}

        refund = succeeded[0]
        reason = (
            refund.reason
            if refund.reason in RefundReason.values()
            else RefundReason.REQUESTED_BY_CUSTOMER.value
        )

        try:
            revoked = finalize_refund(
                self.db,
                transaction,
                token,
                refund,
                delta,
                reason,
                None,
                self._clock(),
                audit_action=AdminActionType.REFUND_FINALIZED_BY_SWEEP,
            )
        except (SQLAlchemyError, RefundError) as e:
            logger.error(
                "Failed to record refund found at provider",
                extra={"transaction_id": transaction_id, "refund_id": refund.id},
                exc_info=True,
            )
            return {"transaction_id": transaction_id, "outcome": OUTCOME_ERROR, "error": str(e)}

        logger.info(
            "Finalized interrupted refund",
            extra={
                "transaction_id": transaction_id,
                "refund_id": refund.id,
                "amount": delta,
                "access_revoked": revoked,
            },
        )
        return {
            "transaction_id": transaction_id,
            "outcome": OUTCOME_FINALIZED,
            "refund_id": refund.id,
            "access_revoked": revoked,
        }

    def revoke_leftover_access(self) -> int:
        """
        Delete access that predates a recorded refund.

        Access granted after the refund (a new purchase or an admin grant)
        is left alone. Commits once at the end.

        Returns:
            Number of rows revoked
        """
        revoked = 0

        user_rows = (
            self.db.query(PaymentTransaction, AccessRecord)
            .join(
                AccessRecord,
                and_(
                    AccessRecord.user_id == PaymentTransaction.user_id,
                    AccessRecord.product_id == PaymentTransaction.product_id,
                ),
            )
            .filter(PaymentTransaction.status == TransactionStatus.REFUNDED.value)
            .all()
        )
        for transaction, record in user_rows:
            refunded_at = ensure_utc(transaction.refunded_at)
            if refunded_at is not None and record.granted_at_utc > refunded_at:
                continue
            self.db.delete(record)
            revoked += 1
            logger.warning(
                "Revoked access left behind by a refund",
                extra={
                    "transaction_id": transaction.id,
                    "user_id": transaction.user_id,
                    "product_id": transaction.product_id,
                },
            )

        guest_transactions = (
            self.db.query(PaymentTransaction)
            .join(GuestPurchase, GuestPurchase.session_id == PaymentTransaction.session_id)
            .filter(
                PaymentTransaction.status == TransactionStatus.REFUNDED.value,
                PaymentTransaction.user_id.is_(None),
            )
            .all()
        )
        for transaction in guest_transactions:
            if revoke_transaction_access(self.db, transaction):
                revoked += 1
                logger.warning(
                    "Removed guest purchase left behind by a refund",
                    extra={"transaction_id": transaction.id, "session_id": transaction.session_id},
                )

        if revoked:
            self.db.commit()
        return revoked


async def run_refund_reconciliation(
    db_session: Optional[Session] = None,
    provider: Optional[PaymentProvider] = None,
    settings: Optional[AccessSettings] = None,
) -> dict:
    """
    Run the refund reconciliation job.

    Returns:
        Statistics dictionary with job results
    """
    logger.info("Starting refund reconciliation job")

    settings = settings or get_settings()
    stats = ReconciliationStats()
    owns_session = db_session is None
    session = db_session or get_session_factory()()
    owns_provider = provider is None
    provider = provider or build_refund_client(settings)

    try:
        reconciler = RefundReconciler(session, provider, settings=settings)

        for outcome in await reconciler.reconcile_stale_locks():
            stats.locks_checked += 1
            if outcome["outcome"] == OUTCOME_FINALIZED:
                stats.refunds_finalized += 1
            elif outcome["outcome"] == OUTCOME_RELEASED:
                stats.locks_released += 1
            elif outcome["outcome"] == OUTCOME_ERROR:
                stats.errors += 1

        stats.access_revoked = reconciler.revoke_leftover_access()

        result = stats.to_dict()
        logger.info("Refund reconciliation job completed", extra=result)
        return result

    except Exception as e:
        session.rollback()
        logger.error("Refund reconciliation job failed", extra={"error": str(e)}, exc_info=True)
        raise
    finally:
        if owns_provider:
            await provider.close()
        if owns_session:
            session.close()


def main():
    """Entry point for running the job from the command line."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    try:
        result = asyncio.run(run_refund_reconciliation())
        print(f"Refund reconciliation completed: {result}")
        sys.exit(0)
    except Exception as e:
        print(f"Refund reconciliation failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
