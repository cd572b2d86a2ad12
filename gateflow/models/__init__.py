"""
Database models for the access core.

Importing this package registers every table on the shared Base metadata.
"""

from gateflow.models.base import TimestampMixin, generate_uuid, ensure_utc, utcnow
from gateflow.models.user import User, normalize_email
from gateflow.models.product import Product, validate_window
from gateflow.models.access_record import AccessRecord
from gateflow.models.guest_purchase import GuestPurchase
from gateflow.models.payment_transaction import (
    PaymentTransaction,
    TransactionStatus,
    RefundReason,
)
from gateflow.models.refund_request import RefundRequest, RefundRequestStatus
from gateflow.models.admin_action import AdminAction, AdminActionType

__all__ = [
    "TimestampMixin",
    "generate_uuid",
    "ensure_utc",
    "utcnow",
    "User",
    "normalize_email",
    "Product",
    "validate_window",
    "AccessRecord",
    "GuestPurchase",
    "PaymentTransaction",
    "TransactionStatus",
    "RefundReason",
    "RefundRequest",
    "RefundRequestStatus",
    "AdminAction",
    "AdminActionType",
]
