"""
Typed value objects for entitlement resolution.

Identity is who is asking; AccessDecision is the single answer the resolver
gives for one (identity, product) pair. The UI maps each DecisionStatus to
exactly one message and never re-derives access on its own.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class DecisionStatus(str, Enum):
    """Outcome of an entitlement check."""
    GRANTED = "granted"
    DENIED_NO_ACCESS = "denied:no_access"
    DENIED_INACTIVE = "denied:inactive"
    DENIED_TEMPORAL_NOT_YET = "denied:temporal_not_yet"
    DENIED_TEMPORAL_EXPIRED = "denied:temporal_expired"
    UNDETERMINED = "undetermined"


@dataclass(frozen=True)
class Identity:
    """An authenticated user or an anonymous visitor."""
    user_id: Optional[str] = None
    email: Optional[str] = None

    @classmethod
    def user(cls, user_id: str, email: Optional[str] = None) -> "Identity":
        if not user_id:
            raise ValueError("user_id is required for an authenticated identity")
        return cls(user_id=user_id, email=email)

    @classmethod
    def anonymous(cls) -> "Identity":
        return cls()

    @property
    def is_anonymous(self) -> bool:
        return self.user_id is None


@dataclass(frozen=True)
class AccessDecision:
    """
    Resolved access for one product.

    access_granted_at / access_expires_at / is_expiring_soon are only set on
    GRANTED decisions. availability_ending_soon is informational for denied
    but purchasable products.
    """
    status: DecisionStatus
    product_id: Optional[str] = None
    access_granted_at: Optional[datetime] = None
    access_expires_at: Optional[datetime] = None
    is_expiring_soon: bool = False
    availability_ending_soon: bool = False
    detail: Optional[str] = None

    @property
    def is_granted(self) -> bool:
        return self.status == DecisionStatus.GRANTED

    @property
    def is_undetermined(self) -> bool:
        return self.status == DecisionStatus.UNDETERMINED

    @property
    def reason(self) -> Optional[str]:
        """Denial reason code without the "denied:" prefix."""
        if self.status.value.startswith("denied:"):
            return self.status.value.split(":", 1)[1]
        return None

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "has_access": self.is_granted,
            "reason": self.reason,
            "product_id": self.product_id,
            "access_granted_at": self.access_granted_at.isoformat() if self.access_granted_at else None,
            "access_expires_at": self.access_expires_at.isoformat() if self.access_expires_at else None,
            "is_expiring_soon": self.is_expiring_soon,
            "availability_ending_soon": self.availability_ending_soon,
            "detail": self.detail,
        }
