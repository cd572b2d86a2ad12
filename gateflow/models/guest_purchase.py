"""
GuestPurchase model - a paid purchase made without an account.

Lifecycle:
1. Created at guest checkout completion (one row per payment session)
2. Claimed when an account with the same email signs in
   (claimed_by_user_id set once, never cleared)
3. OR deleted when the underlying transaction is refunded
"""

from sqlalchemy import Column, String, Integer, DateTime, ForeignKey
from sqlalchemy.orm import validates

from gateflow.db_base import Base
from gateflow.models.base import TimestampMixin, generate_uuid
from gateflow.models.user import normalize_email


class GuestPurchase(Base, TimestampMixin):
    __tablename__ = "guest_purchases"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    session_id = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        comment="Payment session id; matches payment_transactions.session_id"
    )
    customer_email = Column(String(320), nullable=False, index=True)
    product_id = Column(
        String(36),
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    transaction_amount = Column(Integer, nullable=False, default=0)

    claimed_by_user_id = Column(
        String(36),
        ForeignKey("users.id"),
        nullable=True,
        index=True,
    )
    claimed_at = Column(DateTime(timezone=True), nullable=True)

    @validates("customer_email")
    def _normalize_email(self, key, value):
        return normalize_email(value)

    @property
    def is_claimed(self) -> bool:
        return self.claimed_by_user_id is not None

    def __repr__(self) -> str:
        return (
            f"<GuestPurchase(id={self.id}, session_id={self.session_id}, "
            f"product_id={self.product_id}, claimed_by={self.claimed_by_user_id})>"
        )
