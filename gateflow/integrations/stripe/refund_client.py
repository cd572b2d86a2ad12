"""
Stripe Refunds API client.

Uses the Stripe REST API directly over httpx. The client is constructed
explicitly from settings and passed into the services that need it; there is
no module-level client.

No automatic retries: a refund is not safe to replay blindly. Callers pass an
idempotency key so that a replay after a lost response returns the refund
that was already created.

Documentation: https://docs.stripe.com/api/refunds
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol

import httpx

from gateflow.config.settings import AccessSettings

logger = logging.getLogger(__name__)

# Refund statuses that mean money did not (and will not) move
FAILED_REFUND_STATUSES = frozenset({"failed", "canceled"})


@dataclass
class ProviderRefund:
    """Represents a Stripe Refund object."""
    id: str
    amount: int
    currency: str
    status: str
    reason: Optional[str] = None
    payment_reference: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status not in FAILED_REFUND_STATUSES

    @classmethod
    def from_api(cls, data: dict) -> "ProviderRefund":
        return cls(
            id=data["id"],
            amount=int(data.get("amount") or 0),
            currency=data.get("currency") or "",
            status=data.get("status") or "",
            reason=data.get("reason"),
            payment_reference=data.get("payment_intent"),
        )


class PaymentProviderError(Exception):
    """Error returned by, or while talking to, the payment provider."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        response: Optional[dict] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.response = response


class PaymentProvider(Protocol):
    """Interface the refund protocol depends on."""

    async def create_refund(
        self,
        payment_reference: str,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> ProviderRefund:
        ...

    async def list_refunds(self, payment_reference: str) -> List[ProviderRefund]:
        ...


class StripeRefundClient:
    """
    Client for Stripe refund operations.

    SECURITY: The secret key is sent only in the Authorization header and is
    never logged.
    """

    def __init__(
        self,
        secret_key: str,
        api_base: str = "https://api.stripe.com",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize refund client.

        Args:
            secret_key: Stripe secret API key
            api_base: API root, overridable for stripe-mock
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests)
        """
        if not secret_key:
            raise ValueError("secret_key is required")

        self.api_base = api_base.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.api_base,
            timeout=httpx.Timeout(timeout, connect=10.0),
            auth=(secret_key, ""),
            transport=transport,
        )

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _request(
        self,
        method: str,
        path: str,
        data: Optional[dict] = None,
        params: Optional[dict] = None,
        idempotency_key: Optional[str] = None,
    ) -> dict:
        headers = {}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        try:
            response = await self._client.request(
                method, path, data=data, params=params, headers=headers
            )
        except httpx.TimeoutException as e:
            logger.error("Stripe API timeout", extra={"path": path, "error": str(e)})
            raise PaymentProviderError(f"Request timeout: {e}")
        except httpx.RequestError as e:
            logger.error("Stripe API request error", extra={"path": path, "error": str(e)})
            raise PaymentProviderError(f"Request error: {e}")

        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = {}

        if response.status_code >= 400:
            error = body.get("error", {}) if isinstance(body, dict) else {}
            message = error.get("message") or f"Stripe API error: {response.status_code}"
            logger.error("Stripe API error", extra={
                "path": path,
                "status_code": response.status_code,
                "code": error.get("code"),
                "type": error.get("type"),
            })
            raise PaymentProviderError(
                message,
                status_code=response.status_code,
                code=error.get("code"),
                response=body,
            )

        return body

    async def create_refund(
        self,
        payment_reference: str,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> ProviderRefund:
        """
        Create a refund for a payment intent.

        Args:
            payment_reference: Stripe PaymentIntent id
            amount: Minor units; omitted means the full remaining amount
            reason: duplicate | fraudulent | requested_by_customer
            idempotency_key: Replays with the same key return the same refund
            metadata: Free-form key/value pairs stored on the refund

        Returns:
            ProviderRefund

        Raises:
            PaymentProviderError: On rejection or transport failure
        """
        data = {"payment_intent": payment_reference}
        if amount is not None:
            data["amount"] = str(amount)
        if reason:
            data["reason"] = reason
        for key, value in (metadata or {}).items():
            data[f"metadata[{key}]"] = str(value)

        body = await self._request(
            "POST", "/v1/refunds", data=data, idempotency_key=idempotency_key
        )
        refund = ProviderRefund.from_api(body)

        logger.info("Stripe refund created", extra={
            "refund_id": refund.id,
            "payment_reference": payment_reference,
            "amount": refund.amount,
            "status": refund.status,
        })
        return refund

    async def list_refunds(self, payment_reference: str) -> List[ProviderRefund]:
        """List refunds recorded by Stripe for a payment intent."""
        body = await self._request(
            "GET",
            "/v1/refunds",
            params={"payment_intent": payment_reference, "limit": "100"},
        )
        return [ProviderRefund.from_api(item) for item in body.get("data", [])]


def build_refund_client(settings: AccessSettings) -> StripeRefundClient:
    """Construct the refund client from settings. Call once per process or job run."""
    if not settings.stripe_secret_key:
        raise ValueError("STRIPE_SECRET_KEY is not configured")
    return StripeRefundClient(
        secret_key=settings.stripe_secret_key,
        api_base=settings.stripe_api_base,
        timeout=settings.stripe_timeout_seconds,
    )
