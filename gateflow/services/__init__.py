"""
Write-side services for the access core.

- AccessGrantService: the only writer of AccessRecords
- ClaimReconciler: turns guest purchases into access on sign-in
- CheckoutFulfillmentService: records completed checkouts
- RefundService: refund + mandatory access revocation
- RefundRequestService: customer refund requests reviewed by admins
"""

from gateflow.services.access_grants import (
    AccessGrantError,
    AccessGrantService,
    USE_PRODUCT_DEFAULT,
)
from gateflow.services.claim_reconciler import ClaimReconciler, ClaimResult
from gateflow.services.checkout_fulfillment import (
    CheckoutFulfillmentService,
    CompletedCheckout,
    FulfillmentError,
    FulfillmentResult,
    FulfillmentScenario,
)
from gateflow.services.refund_service import RefundError, RefundResult, RefundService
from gateflow.services.refund_requests import (
    RefundEligibility,
    RefundRequestError,
    RefundRequestService,
)

__all__ = [
    "AccessGrantError",
    "AccessGrantService",
    "USE_PRODUCT_DEFAULT",
    "ClaimReconciler",
    "ClaimResult",
    "CheckoutFulfillmentService",
    "CompletedCheckout",
    "FulfillmentError",
    "FulfillmentResult",
    "FulfillmentScenario",
    "RefundError",
    "RefundResult",
    "RefundService",
    "RefundEligibility",
    "RefundRequestError",
    "RefundRequestService",
]
