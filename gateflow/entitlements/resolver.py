"""
Entitlement resolver - the single authority for product access decisions.

Resolution order (first matching rule wins):
1. Anonymous identity            -> denied:no_access
2. Currently valid AccessRecord  -> granted (regardless of product state)
3. Product inactive              -> denied:inactive
4. Window not started / ended    -> denied:temporal_not_yet / denied:temporal_expired
5. Otherwise                     -> denied:no_access

An expired AccessRecord does not short-circuit; it falls through so the
product's state still drives the message. A valid grant always wins:
deactivating a product gates new purchases but never revokes existing access.

Store failures resolve to UNDETERMINED, never to granted or denied.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from gateflow.config.settings import AccessSettings, get_settings
from gateflow.entitlements.models import AccessDecision, DecisionStatus, Identity
from gateflow.entitlements.time_window import evaluate_window, ends_within
from gateflow.errors import ProductNotFoundError
from gateflow.models.access_record import AccessRecord
from gateflow.models.base import utcnow
from gateflow.models.product import Product

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class EntitlementResolver:
    """
    Resolves access decisions for products.

    One instance per request. Read-only: never writes to the store.
    """

    def __init__(
        self,
        db_session: Session,
        settings: Optional[AccessSettings] = None,
        clock: Optional[Clock] = None,
    ):
        self.db = db_session
        self.settings = settings or get_settings()
        self._clock = clock or utcnow

    # ------------------------------------------------------------------
    # Primary API
    # ------------------------------------------------------------------

    def resolve(self, identity: Identity, product: Product) -> AccessDecision:
        """
        Resolve access for an identity to a product.

        Args:
            identity: Authenticated user or anonymous visitor
            product: Full product record

        Returns:
            AccessDecision
        """
        now = self._clock()

        if identity.is_anonymous:
            return self.decide(identity, product, None, now)

        try:
            record = (
                self.db.query(AccessRecord)
                .filter(
                    AccessRecord.user_id == identity.user_id,
                    AccessRecord.product_id == product.id,
                )
                .first()
            )
        except SQLAlchemyError as e:
            return self._undetermined(identity, product.id, e)

        return self.decide(identity, product, record, now)

    def resolve_by_slug(self, identity: Identity, slug: str) -> AccessDecision:
        """
        Resolve access for a product addressed by slug.

        Raises:
            ProductNotFoundError: If no product has this slug
        """
        try:
            product = self.db.query(Product).filter(Product.slug == slug).first()
        except SQLAlchemyError as e:
            return self._undetermined(identity, None, e)

        if product is None:
            raise ProductNotFoundError(slug)

        return self.resolve(identity, product)

    def resolve_many(
        self,
        identity: Identity,
        slugs: Iterable[str],
    ) -> Dict[str, AccessDecision]:
        """
        Resolve access for several products in two queries.

        Unknown slugs resolve to denied:no_access so a batch check never
        reveals which slugs exist.
        """
        slugs = list(dict.fromkeys(slugs))
        now = self._clock()

        try:
            products = {
                p.slug: p
                for p in self.db.query(Product).filter(Product.slug.in_(slugs)).all()
            }
            records: Dict[str, AccessRecord] = {}
            if not identity.is_anonymous and products:
                product_ids = [p.id for p in products.values()]
                for record in (
                    self.db.query(AccessRecord)
                    .filter(
                        AccessRecord.user_id == identity.user_id,
                        AccessRecord.product_id.in_(product_ids),
                    )
                    .all()
                ):
                    records[record.product_id] = record
        except SQLAlchemyError as e:
            undetermined = self._undetermined(identity, None, e)
            return {slug: undetermined for slug in slugs}

        results: Dict[str, AccessDecision] = {}
        for slug in slugs:
            product = products.get(slug)
            if product is None:
                results[slug] = AccessDecision(
                    status=DecisionStatus.DENIED_NO_ACCESS,
                    detail="Product not found",
                )
                continue
            results[slug] = self.decide(identity, product, records.get(product.id), now)
        return results

    # ------------------------------------------------------------------
    # Decision logic
    # ------------------------------------------------------------------

    def decide(
        self,
        identity: Identity,
        product: Product,
        record: Optional[AccessRecord],
        now: datetime,
    ) -> AccessDecision:
        """Apply the ordered resolution rules to already-loaded data."""
        window = evaluate_window(now, product.available_from, product.available_until)
        ending_soon = window.available and ends_within(
            now, product.available_until, self.settings.availability_ending_soon_days
        )

        if identity.is_anonymous:
            return AccessDecision(
                status=DecisionStatus.DENIED_NO_ACCESS,
                product_id=product.id,
                availability_ending_soon=ending_soon,
                detail="Sign in or purchase to access this product",
            )

        if record is not None and record.is_valid_at(now):
            expires_at = record.expires_at_utc
            return AccessDecision(
                status=DecisionStatus.GRANTED,
                product_id=product.id,
                access_granted_at=record.granted_at_utc,
                access_expires_at=expires_at,
                is_expiring_soon=(
                    expires_at is not None
                    and expires_at - now <= timedelta(days=self.settings.expiring_soon_days)
                ),
            )

        if not product.is_active:
            return AccessDecision(
                status=DecisionStatus.DENIED_INACTIVE,
                product_id=product.id,
            )

        if window.not_yet_available:
            return AccessDecision(
                status=DecisionStatus.DENIED_TEMPORAL_NOT_YET,
                product_id=product.id,
            )

        if window.expired:
            return AccessDecision(
                status=DecisionStatus.DENIED_TEMPORAL_EXPIRED,
                product_id=product.id,
            )

        return AccessDecision(
            status=DecisionStatus.DENIED_NO_ACCESS,
            product_id=product.id,
            availability_ending_soon=ending_soon,
            detail="Access expired" if record is not None else None,
        )

    def _undetermined(
        self,
        identity: Identity,
        product_id: Optional[str],
        error: Exception,
    ) -> AccessDecision:
        logger.error(
            "Entitlement store unavailable",
            extra={
                "user_id": identity.user_id,
                "product_id": product_id,
                "error": str(error),
            },
            exc_info=True,
        )
        try:
            self.db.rollback()
        except SQLAlchemyError:
            logger.warning("Rollback after store failure also failed", exc_info=True)
        return AccessDecision(
            status=DecisionStatus.UNDETERMINED,
            product_id=product_id,
            detail="Access could not be determined, retry later",
        )
