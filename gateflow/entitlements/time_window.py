"""
Temporal availability evaluation for products.

A product is available while now is inside [available_from, available_until).
Either bound may be null (open-ended). The until bound is exclusive: at the
exact instant of available_until the product is already expired.

Pure functions only - no I/O, no clock reads. Callers pass "now".
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from gateflow.models.base import ensure_utc


@dataclass(frozen=True)
class WindowState:
    """Result of evaluating a product's availability window."""
    available: bool
    not_yet_available: bool
    expired: bool


def evaluate_window(
    now: datetime,
    available_from: Optional[datetime],
    available_until: Optional[datetime],
) -> WindowState:
    """
    Evaluate whether now falls inside [available_from, available_until).

    Behavior is unspecified for inverted windows (available_from >=
    available_until); those are rejected when the product is stored.

    Args:
        now: Current instant
        available_from: Start of availability, or None for "always started"
        available_until: End of availability (exclusive), or None for "never ends"

    Returns:
        WindowState
    """
    now = ensure_utc(now)
    available_from = ensure_utc(available_from)
    available_until = ensure_utc(available_until)

    not_yet_available = available_from is not None and available_from > now
    expired = available_until is not None and available_until <= now

    return WindowState(
        available=not not_yet_available and not expired,
        not_yet_available=not_yet_available,
        expired=expired,
    )


def ends_within(
    now: datetime,
    until: Optional[datetime],
    days: int,
) -> bool:
    """True if until is still in the future but no more than `days` away."""
    if until is None:
        return False
    now = ensure_utc(now)
    until = ensure_utc(until)
    return now < until <= now + timedelta(days=days)
