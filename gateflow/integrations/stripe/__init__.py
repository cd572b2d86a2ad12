"""Stripe integration for refunds."""

from gateflow.integrations.stripe.refund_client import (
    PaymentProvider,
    PaymentProviderError,
    ProviderRefund,
    StripeRefundClient,
    build_refund_client,
)

__all__ = [
    "PaymentProvider",
    "PaymentProviderError",
    "ProviderRefund",
    "StripeRefundClient",
    "build_refund_client",
]
