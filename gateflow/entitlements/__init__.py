"""
Product entitlement resolution.

This module provides:
- EntitlementResolver: the single decision function for product access
- AccessDecision / DecisionStatus: typed resolution result
- Identity: authenticated user or anonymous visitor
- evaluate_window: pure [available_from, available_until) evaluation

Resolution order: valid access -> inactive -> temporal -> no purchase
"""

from gateflow.entitlements.models import AccessDecision, DecisionStatus, Identity
from gateflow.entitlements.time_window import WindowState, evaluate_window, ends_within
from gateflow.entitlements.resolver import EntitlementResolver

__all__ = [
    "AccessDecision",
    "DecisionStatus",
    "Identity",
    "WindowState",
    "evaluate_window",
    "ends_within",
    "EntitlementResolver",
]
