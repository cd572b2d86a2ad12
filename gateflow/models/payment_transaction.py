"""
PaymentTransaction model - one row per completed payment session.

Status lifecycle is monotonic:
    pending -> completed | failed | cancelled
    completed -> refunded | disputed
Nothing moves backward. status = refunded implies refund_id is set and
refunded_amount > 0.

refund_lock_token / refund_locked_at implement the exclusive claim that
serializes refund attempts for a transaction.
"""

import enum

from sqlalchemy import (
    Column,
    String,
    Integer,
    DateTime,
    ForeignKey,
    Index,
    CheckConstraint,
)
from sqlalchemy.orm import validates

from gateflow.db_base import Base
from gateflow.models.base import TimestampMixin, generate_uuid
from gateflow.models.user import normalize_email


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    REFUNDED = "refunded"
    DISPUTED = "disputed"
    FAILED = "failed"
    CANCELLED = "cancelled"


_ALLOWED_TRANSITIONS = {
    TransactionStatus.PENDING.value: {
        TransactionStatus.COMPLETED.value,
        TransactionStatus.FAILED.value,
        TransactionStatus.CANCELLED.value,
    },
    TransactionStatus.COMPLETED.value: {
        TransactionStatus.REFUNDED.value,
        TransactionStatus.DISPUTED.value,
    },
}


class RefundReason(str, enum.Enum):
    """Refund reasons accepted by the payment provider."""
    REQUESTED_BY_CUSTOMER = "requested_by_customer"
    DUPLICATE = "duplicate"
    FRAUDULENT = "fraudulent"

    @classmethod
    def values(cls) -> list:
        return [r.value for r in cls]


class PaymentTransaction(Base, TimestampMixin):
    __tablename__ = "payment_transactions"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    session_id = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        comment="Payment provider checkout session id"
    )
    product_id = Column(
        String(36),
        ForeignKey("products.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    user_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        comment="Null for guest purchases"
    )
    customer_email = Column(String(320), nullable=True)

    amount = Column(Integer, nullable=False, comment="Minor currency units")
    currency = Column(String(3), nullable=False, default="usd")

    payment_reference = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Provider payment intent id used for refunds"
    )

    status = Column(
        String(20),
        nullable=False,
        default=TransactionStatus.PENDING.value,
        index=True,
    )

    refunded_amount = Column(Integer, nullable=False, default=0)
    refund_id = Column(String(255), nullable=True)
    refund_reason = Column(String(50), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
    refunded_by = Column(String(36), nullable=True, comment="Admin identity")

    refund_lock_token = Column(String(36), nullable=True)
    refund_locked_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_payment_transactions_amount"),
        CheckConstraint(
            "refunded_amount >= 0 AND refunded_amount <= amount",
            name="ck_payment_transactions_refunded_amount",
        ),
        CheckConstraint(
            "status <> 'refunded' OR (refund_id IS NOT NULL AND refunded_amount > 0)",
            name="ck_payment_transactions_refund_fields",
        ),
        Index("ix_payment_transactions_lock", "status", "refund_locked_at"),
    )

    @validates("customer_email")
    def _normalize_email(self, key, value):
        return normalize_email(value) if value else value

    @property
    def is_guest(self) -> bool:
        return self.user_id is None

    @property
    def refundable_amount(self) -> int:
        return (self.amount or 0) - (self.refunded_amount or 0)

    def can_transition(self, to_status: str) -> bool:
        return to_status in _ALLOWED_TRANSITIONS.get(self.status, set())

    def __repr__(self) -> str:
        return (
            f"<PaymentTransaction(id={self.id}, session_id={self.session_id}, "
            f"status={self.status}, amount={self.amount})>"
        )
