"""
Access grant service - creates, refreshes, extends and revokes AccessRecords.

All writers of user_product_access go through this module so the
one-row-per-(user, product) invariant holds everywhere:
- checkout fulfillment and guest claims use grant_or_refresh()
- admin tooling uses admin_grant() / extend_access() / revoke_access()
- free products use claim_free_product()

Methods flush but do not commit; the caller owns the transaction.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from gateflow.entitlements.time_window import evaluate_window
from gateflow.errors import ErrorCode, GateflowError
from gateflow.models.access_record import AccessRecord
from gateflow.models.admin_action import AdminAction, AdminActionType
from gateflow.models.base import ensure_utc, utcnow
from gateflow.models.product import Product

logger = logging.getLogger(__name__)

MIN_DURATION_DAYS = 1
MAX_DURATION_DAYS = 3650

# Sentinel: take the duration from product.auto_grant_duration_days
USE_PRODUCT_DEFAULT = object()


class AccessGrantError(GateflowError):
    """Raised when an access grant operation is rejected."""
    pass


def _validate_days(value: int, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise AccessGrantError(ErrorCode.INVALID_INPUT, f"{field} must be an integer")
    if value < MIN_DURATION_DAYS or value > MAX_DURATION_DAYS:
        raise AccessGrantError(
            ErrorCode.INVALID_INPUT,
            f"{field} must be between {MIN_DURATION_DAYS} and {MAX_DURATION_DAYS}",
        )
    return value


class AccessGrantService:
    """Service for writing AccessRecords."""

    def __init__(self, db_session: Session, clock: Optional[Callable[[], datetime]] = None):
        self.db = db_session
        self._clock = clock or utcnow

    def get_record(self, user_id: str, product_id: str) -> Optional[AccessRecord]:
        return (
            self.db.query(AccessRecord)
            .filter(
                AccessRecord.user_id == user_id,
                AccessRecord.product_id == product_id,
            )
            .first()
        )

    def grant_or_refresh(
        self,
        user_id: str,
        product: Product,
        duration_days=USE_PRODUCT_DEFAULT,
    ) -> AccessRecord:
        """
        Create the AccessRecord for (user, product) or refresh the existing one.

        Refresh resets the grant time. Expiry never shrinks:
        - perpetual access stays perpetual
        - active timed access is extended from its current expiry
          (or becomes perpetual when the new duration is None)
        - expired access restarts at now + duration
        """
        if duration_days is USE_PRODUCT_DEFAULT:
            duration_days = product.auto_grant_duration_days

        now = self._clock()
        expires_at = AccessRecord.compute_expiry(now, duration_days)

        record = self.get_record(user_id, product.id)
        if record is None:
            record = AccessRecord(
                user_id=user_id,
                product_id=product.id,
                access_granted_at=now,
                access_duration_days=duration_days,
                access_expires_at=expires_at,
            )
            self.db.add(record)
            action = "created"
        else:
            current = record.expires_at_utc
            if current is None:
                duration_days = None
                expires_at = None
            elif current > now and duration_days is not None:
                expires_at = current + timedelta(days=duration_days)
            record.access_granted_at = now
            record.access_duration_days = duration_days
            record.access_expires_at = expires_at
            action = "refreshed"

        self.db.flush()

        logger.info(
            "Product access granted",
            extra={
                "user_id": user_id,
                "product_id": product.id,
                "action": action,
                "access_expires_at": expires_at.isoformat() if expires_at else None,
            },
        )
        return record

    def admin_grant(
        self,
        user_id: str,
        product_id: str,
        duration_days: Optional[int] = None,
        expires_at: Optional[datetime] = None,
        admin_id: Optional[str] = None,
    ) -> AccessRecord:
        """
        Grant access on behalf of an admin.

        Raises:
            AccessGrantError: NOT_FOUND for unknown product, INVALID_STATE for an
                inactive product, ALREADY_EXISTS when the user already has a row,
                INVALID_INPUT for bad duration / expiry
        """
        product = self.db.get(Product, product_id)
        if product is None:
            raise AccessGrantError(ErrorCode.NOT_FOUND, "Product not found")
        if not product.is_active:
            raise AccessGrantError(
                ErrorCode.INVALID_STATE, "Cannot grant access to inactive product"
            )
        if self.get_record(user_id, product_id) is not None:
            raise AccessGrantError(
                ErrorCode.ALREADY_EXISTS, "User already has access to this product"
            )

        now = self._clock()
        if duration_days is not None:
            duration_days = _validate_days(duration_days, "access_duration_days")
            expires_at = AccessRecord.compute_expiry(now, duration_days)
        elif expires_at is not None:
            expires_at = ensure_utc(expires_at)
            if expires_at <= now:
                raise AccessGrantError(
                    ErrorCode.INVALID_INPUT, "access_expires_at must be in the future"
                )

        record = AccessRecord(
            user_id=user_id,
            product_id=product_id,
            access_granted_at=now,
            access_duration_days=duration_days,
            access_expires_at=expires_at,
        )
        self.db.add(record)
        self._audit(admin_id, AdminActionType.ACCESS_GRANTED, user_id, {
            "product_id": product_id,
            "access_duration_days": duration_days,
            "access_expires_at": expires_at.isoformat() if expires_at else None,
        })
        self.db.flush()

        logger.info(
            "Admin granted product access",
            extra={"user_id": user_id, "product_id": product_id, "admin_id": admin_id},
        )
        return record

    def extend_access(
        self,
        user_id: str,
        access_id: str,
        extend_days: Optional[int] = None,
        expires_at: Optional[datetime] = None,
        duration_days: Optional[int] = None,
        admin_id: Optional[str] = None,
    ) -> AccessRecord:
        """
        Extend or reset an access expiry. Exactly one option is applied, in the
        order extend_days, expires_at, duration_days.

        extend_days counts from the later of now and the current expiry. A
        perpetual record stays perpetual under extend_days.
        """
        record = self._get_owned_record(user_id, access_id)
        now = self._clock()

        if extend_days is not None:
            extend_days = _validate_days(extend_days, "extend_days")
            current = record.expires_at_utc
            if current is not None:
                base = max(current, now)
                record.access_expires_at = base + timedelta(days=extend_days)
        elif expires_at is not None:
            expires_at = ensure_utc(expires_at)
            if expires_at <= now:
                raise AccessGrantError(
                    ErrorCode.INVALID_INPUT, "access_expires_at must be in the future"
                )
            record.access_expires_at = expires_at
        elif duration_days is not None:
            duration_days = _validate_days(duration_days, "access_duration_days")
            record.access_duration_days = duration_days
            record.access_expires_at = AccessRecord.compute_expiry(now, duration_days)
        else:
            raise AccessGrantError(ErrorCode.INVALID_INPUT, "No valid update fields provided")

        self._audit(admin_id, AdminActionType.ACCESS_EXTENDED, user_id, {
            "access_id": access_id,
            "access_expires_at": (
                record.expires_at_utc.isoformat() if record.access_expires_at else None
            ),
        })
        self.db.flush()
        return record

    def revoke_access(
        self,
        user_id: str,
        access_id: str,
        admin_id: Optional[str] = None,
    ) -> None:
        """Explicit admin revoke of one AccessRecord."""
        record = self._get_owned_record(user_id, access_id)
        product_id = record.product_id
        self.db.delete(record)
        self._audit(admin_id, AdminActionType.ACCESS_REVOKED, user_id, {
            "access_id": access_id,
            "product_id": product_id,
        })
        self.db.flush()

        logger.info(
            "Admin revoked product access",
            extra={"user_id": user_id, "product_id": product_id, "admin_id": admin_id},
        )

    def claim_free_product(self, user_id: str, product: Product) -> AccessRecord:
        """
        Grant access to a free product that is active and currently available.

        Idempotent for a user who already holds valid access.
        """
        if not product.is_free:
            raise AccessGrantError(ErrorCode.INVALID_STATE, "Product is not free")
        if not product.is_active:
            raise AccessGrantError(ErrorCode.INVALID_STATE, "Product is not active")

        now = self._clock()
        window = evaluate_window(now, product.available_from, product.available_until)
        if not window.available:
            raise AccessGrantError(
                ErrorCode.INVALID_STATE, "Product is not currently available"
            )

        existing = self.get_record(user_id, product.id)
        if existing is not None and existing.is_valid_at(now):
            return existing
        return self.grant_or_refresh(user_id, product)

    def _get_owned_record(self, user_id: str, access_id: str) -> AccessRecord:
        record = (
            self.db.query(AccessRecord)
            .filter(AccessRecord.id == access_id, AccessRecord.user_id == user_id)
            .first()
        )
        if record is None:
            raise AccessGrantError(ErrorCode.NOT_FOUND, "Access entry not found")
        return record

    def _audit(self, admin_id: Optional[str], action: str, target_id: str, details: dict) -> None:
        self.db.add(AdminAction(
            admin_id=admin_id,
            action=action,
            target_type="user",
            target_id=target_id,
            details=details,
        ))
