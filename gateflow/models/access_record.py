"""
AccessRecord model - a user's persisted entitlement to a product.

Invariant: at most one row per (user_id, product_id). A new purchase or
claim refreshes the existing row instead of inserting a duplicate.
Rows are deleted only by refund revocation or an explicit admin revoke.
"""

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import (
    Column,
    String,
    Integer,
    DateTime,
    ForeignKey,
    UniqueConstraint,
)

from gateflow.db_base import Base
from gateflow.models.base import TimestampMixin, generate_uuid, ensure_utc, utcnow


class AccessRecord(Base, TimestampMixin):
    """Grant of a user's access to a product, with optional expiry."""

    __tablename__ = "user_product_access"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    user_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    product_id = Column(
        String(36),
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    access_granted_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    access_duration_days = Column(Integer, nullable=True)
    access_expires_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="granted_at + duration_days, null when perpetual"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "product_id", name="uq_user_product_access_pair"),
    )

    @staticmethod
    def compute_expiry(
        granted_at: datetime,
        duration_days: Optional[int],
    ) -> Optional[datetime]:
        if duration_days is None:
            return None
        return ensure_utc(granted_at) + timedelta(days=duration_days)

    @property
    def granted_at_utc(self) -> Optional[datetime]:
        return ensure_utc(self.access_granted_at)

    @property
    def expires_at_utc(self) -> Optional[datetime]:
        return ensure_utc(self.access_expires_at)

    def is_valid_at(self, now: datetime) -> bool:
        expires_at = self.expires_at_utc
        return expires_at is None or expires_at > now

    def __repr__(self) -> str:
        return (
            f"<AccessRecord(id={self.id}, user_id={self.user_id}, "
            f"product_id={self.product_id}, expires_at={self.access_expires_at})>"
        )
