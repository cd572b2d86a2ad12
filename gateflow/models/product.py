"""
Product model for digital products sold in the storefront.

A product is visible for purchase while it is active and "now" falls inside
its [available_from, available_until) window. Access lifetime for new grants
comes from auto_grant_duration_days (null = perpetual).
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, Column, DateTime, Integer, String, CheckConstraint
from sqlalchemy.orm import validates

from gateflow.db_base import Base
from gateflow.errors import InvalidProductWindowError
from gateflow.models.base import TimestampMixin, generate_uuid, ensure_utc


def validate_window(
    available_from: Optional[datetime],
    available_until: Optional[datetime],
) -> None:
    """
    Reject inverted availability windows.

    Both bounds are optional; the check only applies when both are set.

    Raises:
        InvalidProductWindowError: If available_from >= available_until
    """
    if available_from is None or available_until is None:
        return
    if ensure_utc(available_from) >= ensure_utc(available_until):
        raise InvalidProductWindowError(available_from, available_until)


class Product(Base, TimestampMixin):
    """A purchasable digital product."""

    __tablename__ = "products"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    slug = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        comment="URL-safe unique identifier"
    )
    name = Column(String(255), nullable=False, default="")

    price = Column(
        Integer,
        nullable=False,
        default=0,
        comment="Price in minor currency units, 0 for free products"
    )
    currency = Column(String(3), nullable=False, default="usd")

    is_active = Column(Boolean, nullable=False, default=True)

    available_from = Column(DateTime(timezone=True), nullable=True)
    available_until = Column(DateTime(timezone=True), nullable=True)

    auto_grant_duration_days = Column(
        Integer,
        nullable=True,
        comment="Access lifetime from grant; null means perpetual"
    )

    is_refundable = Column(Boolean, nullable=False, default=True)
    refund_period_days = Column(
        Integer,
        nullable=True,
        comment="Days after purchase a refund may be requested; null means unlimited"
    )

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_products_price_non_negative"),
    )

    @validates("available_from", "available_until")
    def _validate_window_bound(self, key, value):
        other = self.available_until if key == "available_from" else self.available_from
        if key == "available_from":
            validate_window(value, other)
        else:
            validate_window(other, value)
        return value

    @property
    def is_free(self) -> bool:
        return (self.price or 0) == 0

    def __repr__(self) -> str:
        return f"<Product(id={self.id}, slug={self.slug}, is_active={self.is_active})>"
