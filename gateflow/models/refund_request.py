"""
RefundRequest model - a customer's request for a refund, reviewed by an admin.

Lifecycle:
1. Customer files request -> status=pending
2. Admin approves -> refund executed, status=approved
3. OR admin rejects -> status=rejected
"""

import enum

from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Text, Index

from gateflow.db_base import Base
from gateflow.models.base import TimestampMixin, generate_uuid


class RefundRequestStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class RefundRequest(Base, TimestampMixin):
    __tablename__ = "refund_requests"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    transaction_id = Column(
        String(36),
        ForeignKey("payment_transactions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    product_id = Column(String(36), ForeignKey("products.id"), nullable=False)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=True, index=True)
    customer_email = Column(String(320), nullable=False)

    requested_amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    reason = Column(Text, nullable=True)

    status = Column(
        String(20),
        nullable=False,
        default=RefundRequestStatus.PENDING.value,
        index=True,
    )
    admin_id = Column(String(36), nullable=True)
    admin_response = Column(Text, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_refund_requests_transaction_status", "transaction_id", "status"),
    )

    @property
    def is_pending(self) -> bool:
        return self.status == RefundRequestStatus.PENDING.value

    def __repr__(self) -> str:
        return (
            f"<RefundRequest(id={self.id}, transaction_id={self.transaction_id}, "
            f"status={self.status})>"
        )
