"""
Checkout fulfillment - turns a completed payment session into access.

Scenarios, checked in order:
- idempotent_transaction: the session was already fulfilled; nothing changes
- logged_in_user: buyer was signed in, access goes to that account
- existing_user_email: buyer was not signed in but an account exists for the
  email; access goes to that account and the buyer is asked to log in
- guest_purchase: no account; a GuestPurchase row waits for the claim
  reconciler

The PaymentTransaction records the account that received access (user_id is
null only for guest purchases), so a later refund revokes the right thing.
"""

import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from gateflow.errors import ErrorCode, GateflowError
from gateflow.models.base import utcnow
from gateflow.models.guest_purchase import GuestPurchase
from gateflow.models.payment_transaction import PaymentTransaction, TransactionStatus
from gateflow.models.product import Product
from gateflow.models.user import User, normalize_email
from gateflow.services.access_grants import AccessGrantService

logger = logging.getLogger(__name__)


class FulfillmentScenario:
    IDEMPOTENT_TRANSACTION = "idempotent_transaction"
    LOGGED_IN_USER = "logged_in_user"
    EXISTING_USER_EMAIL = "existing_user_email"
    GUEST_PURCHASE = "guest_purchase"


class FulfillmentError(GateflowError):
    """Raised when a checkout cannot be fulfilled."""
    pass


@dataclass
class CompletedCheckout:
    """A payment session the provider reported as paid."""
    session_id: str
    product_id: str
    customer_email: str
    amount: int
    currency: str = "usd"
    payment_reference: Optional[str] = None
    user_id: Optional[str] = None


@dataclass
class FulfillmentResult:
    scenario: str
    transaction_id: str
    access_granted: bool
    already_had_access: bool
    requires_login: bool
    access_expires_at: Optional[datetime] = None
    user_id: Optional[str] = None

    @property
    def is_guest_purchase(self) -> bool:
        return self.scenario == FulfillmentScenario.GUEST_PURCHASE

    def to_dict(self) -> dict:
        data = asdict(self)
        data["access_expires_at"] = (
            self.access_expires_at.isoformat() if self.access_expires_at else None
        )
        data["is_guest_purchase"] = self.is_guest_purchase
        return data


class CheckoutFulfillmentService:
    """Records completed checkouts and grants the resulting access."""

    def __init__(self, db_session: Session, clock: Optional[Callable[[], datetime]] = None):
        self.db = db_session
        self._clock = clock or utcnow
        self.grants = AccessGrantService(db_session, clock=self._clock)

    def fulfill(self, checkout: CompletedCheckout) -> FulfillmentResult:
        """
        Fulfill a completed checkout. Safe to call repeatedly for one session.

        Raises:
            FulfillmentError: NOT_FOUND for unknown product, INVALID_INPUT for
                missing session id / email or a negative amount
        """
        email = normalize_email(checkout.customer_email)
        if not checkout.session_id:
            raise FulfillmentError(ErrorCode.INVALID_INPUT, "session_id is required")
        if not email:
            raise FulfillmentError(ErrorCode.INVALID_INPUT, "customer_email is required")
        if checkout.amount is None or checkout.amount < 0:
            raise FulfillmentError(ErrorCode.INVALID_INPUT, "amount must be non-negative")

        existing = self._find_transaction(checkout.session_id)
        if existing is not None:
            return self._idempotent_result(existing)

        product = self.db.get(Product, checkout.product_id)
        if product is None:
            raise FulfillmentError(
                ErrorCode.NOT_FOUND,
                "Product not found",
                {"product_id": checkout.product_id},
            )

        if checkout.user_id:
            recipient_id = checkout.user_id
            scenario = FulfillmentScenario.LOGGED_IN_USER
        else:
            account = self.db.query(User).filter(User.email == email).first()
            recipient_id = account.id if account else None
            scenario = (
                FulfillmentScenario.EXISTING_USER_EMAIL
                if account
                else FulfillmentScenario.GUEST_PURCHASE
            )

        transaction = PaymentTransaction(
            session_id=checkout.session_id,
            product_id=product.id,
            user_id=recipient_id,
            customer_email=email,
            amount=checkout.amount,
            currency=checkout.currency,
            payment_reference=checkout.payment_reference,
            status=TransactionStatus.COMPLETED.value,
        )
        self.db.add(transaction)
        try:
            self.db.flush()
        except IntegrityError:
            # Concurrent delivery of the same session won the insert
            self.db.rollback()
            existing = self._find_transaction(checkout.session_id)
            if existing is None:
                raise
            return self._idempotent_result(existing)

        already_had_access = False
        expires_at = None
        if recipient_id is not None:
            record = self.grants.get_record(recipient_id, product.id)
            already_had_access = record is not None and record.is_valid_at(self._clock())
            expires_at = self.grants.grant_or_refresh(recipient_id, product).expires_at_utc
        else:
            self.db.add(GuestPurchase(
                session_id=checkout.session_id,
                customer_email=email,
                product_id=product.id,
                transaction_amount=checkout.amount,
            ))

        self.db.commit()

        logger.info(
            "Checkout fulfilled",
            extra={
                "session_id": checkout.session_id,
                "product_id": product.id,
                "scenario": scenario,
                "user_id": recipient_id,
            },
        )

        return FulfillmentResult(
            scenario=scenario,
            transaction_id=transaction.id,
            access_granted=recipient_id is not None,
            already_had_access=already_had_access,
            requires_login=scenario != FulfillmentScenario.LOGGED_IN_USER,
            access_expires_at=expires_at,
            user_id=recipient_id,
        )

    def _find_transaction(self, session_id: str) -> Optional[PaymentTransaction]:
        return (
            self.db.query(PaymentTransaction)
            .filter(PaymentTransaction.session_id == session_id)
            .first()
        )

    def _idempotent_result(self, transaction: PaymentTransaction) -> FulfillmentResult:
        logger.info(
            "Checkout already fulfilled",
            extra={"session_id": transaction.session_id, "transaction_id": transaction.id},
        )
        return FulfillmentResult(
            scenario=FulfillmentScenario.IDEMPOTENT_TRANSACTION,
            transaction_id=transaction.id,
            access_granted=transaction.user_id is not None,
            already_had_access=True,
            requires_login=False,
            user_id=transaction.user_id,
        )
