"""
Tests for the entitlement resolver.

Test classes:
- TestAnonymous: anonymous visitors are always denied:no_access
- TestGrantedAccess: valid records win, expiring-soon flag
- TestGrandfatherClause: valid access survives product deactivation
- TestExpiredAccess: expired records fall through to product state
- TestTemporalDenials: not-yet / expired availability windows
- TestResolveBySlug / TestResolveMany: lookup variants
- TestUndetermined: store failures never become granted or denied
"""

import uuid
from datetime import timedelta
from unittest.mock import patch

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from sqlalchemy.exc import OperationalError

from gateflow.config.settings import AccessSettings
from gateflow.entitlements import (
    AccessDecision,
    DecisionStatus,
    EntitlementResolver,
    Identity,
)
from gateflow.errors import ProductNotFoundError
from gateflow.models.access_record import AccessRecord
from gateflow.models.product import Product
from gateflow.tests.conftest import FROZEN_NOW


@pytest.fixture
def resolver(db_session, access_settings, clock):
    return EntitlementResolver(db_session, settings=access_settings, clock=clock)


def _store_down():
    return OperationalError("SELECT", {}, Exception("connection refused"))


# =============================================================================
# TestAnonymous
# =============================================================================


class TestAnonymous:

    def test_anonymous_is_denied_no_access(self, resolver, make_product):
        product = make_product()

        decision = resolver.resolve(Identity.anonymous(), product)

        assert decision.status == DecisionStatus.DENIED_NO_ACCESS
        assert decision.is_granted is False

    def test_anonymous_denied_even_for_inactive_product(self, resolver, make_product):
        """Rule 1 wins over every product-state rule."""
        product = make_product(is_active=False)

        decision = resolver.resolve(Identity.anonymous(), product)

        assert decision.status == DecisionStatus.DENIED_NO_ACCESS

    def test_identity_user_requires_id(self):
        with pytest.raises(ValueError):
            Identity.user("")


# =============================================================================
# TestGrantedAccess
# =============================================================================


class TestGrantedAccess:

    def test_perpetual_access_is_granted(self, resolver, make_user, make_product, make_access):
        user = make_user()
        product = make_product()
        make_access(user, product, expires_at=None)

        decision = resolver.resolve(Identity.user(user.id), product)

        assert decision.status == DecisionStatus.GRANTED
        assert decision.access_expires_at is None
        assert decision.is_expiring_soon is False
        assert decision.access_granted_at is not None

    def test_future_expiry_is_granted(self, resolver, make_user, make_product, make_access):
        user = make_user()
        product = make_product()
        make_access(user, product, expires_at=FROZEN_NOW + timedelta(days=30))

        decision = resolver.resolve(Identity.user(user.id), product)

        assert decision.is_granted is True
        assert decision.access_expires_at == FROZEN_NOW + timedelta(days=30)
        assert decision.is_expiring_soon is False

    def test_expiry_within_warning_window_is_expiring_soon(
        self, resolver, make_user, make_product, make_access
    ):
        user = make_user()
        product = make_product()
        make_access(user, product, expires_at=FROZEN_NOW + timedelta(days=2))

        decision = resolver.resolve(Identity.user(user.id), product)

        assert decision.is_granted is True
        assert decision.is_expiring_soon is True

    def test_warning_window_is_configurable(
        self, db_session, clock, make_user, make_product, make_access
    ):
        user = make_user()
        product = make_product()
        make_access(user, product, expires_at=FROZEN_NOW + timedelta(days=10))
        resolver = EntitlementResolver(
            db_session, settings=AccessSettings(expiring_soon_days=14), clock=clock
        )

        decision = resolver.resolve(Identity.user(user.id), product)

        assert decision.is_expiring_soon is True

    def test_other_users_record_does_not_grant(
        self, resolver, make_user, make_product, make_access
    ):
        owner = make_user()
        other = make_user()
        product = make_product()
        make_access(owner, product)

        decision = resolver.resolve(Identity.user(other.id), product)

        assert decision.status == DecisionStatus.DENIED_NO_ACCESS

    def test_to_dict_shape(self, resolver, make_user, make_product, make_access):
        user = make_user()
        product = make_product()
        make_access(user, product, expires_at=FROZEN_NOW + timedelta(days=1))

        data = resolver.resolve(Identity.user(user.id), product).to_dict()

        assert data["status"] == "granted"
        assert data["has_access"] is True
        assert data["reason"] is None
        assert data["product_id"] == product.id
        assert data["is_expiring_soon"] is True


# =============================================================================
# TestGrandfatherClause
# =============================================================================


class TestGrandfatherClause:
    """A currently valid record wins regardless of product state."""

    def test_inactive_product_with_valid_access_is_granted(
        self, resolver, make_user, make_product, make_access
    ):
        user = make_user()
        product = make_product(is_active=False)
        make_access(user, product)

        decision = resolver.resolve(Identity.user(user.id), product)

        assert decision.status == DecisionStatus.GRANTED

    def test_ended_window_with_valid_access_is_granted(
        self, resolver, make_user, make_product, make_access
    ):
        user = make_user()
        product = make_product(available_until=FROZEN_NOW - timedelta(days=1))
        make_access(user, product)

        decision = resolver.resolve(Identity.user(user.id), product)

        assert decision.status == DecisionStatus.GRANTED

    @given(
        is_active=st.booleans(),
        from_offset=st.one_of(st.none(), st.integers(min_value=-1000, max_value=-1)),
        until_offset=st.one_of(st.none(), st.integers(min_value=-1000, max_value=1000)),
        expires_in=st.one_of(st.none(), st.integers(min_value=1, max_value=100_000)),
    )
    @settings(max_examples=300, deadline=None)
    def test_valid_record_always_granted(self, is_active, from_offset, until_offset, expires_in):
        """For every product state, a valid record resolves to granted."""
        available_from = None if from_offset is None else FROZEN_NOW + timedelta(hours=from_offset)
        available_until = None if until_offset is None else FROZEN_NOW + timedelta(hours=until_offset)
        if available_from is not None and available_until is not None and available_until <= available_from:
            available_until = None

        product = Product(
            id=str(uuid.uuid4()),
            slug="any",
            is_active=is_active,
            available_from=available_from,
            available_until=available_until,
        )
        record = AccessRecord(
            user_id="user-1",
            product_id=product.id,
            access_granted_at=FROZEN_NOW - timedelta(days=1),
            access_expires_at=(
                None if expires_in is None else FROZEN_NOW + timedelta(minutes=expires_in)
            ),
        )
        resolver = EntitlementResolver(db_session=None, settings=AccessSettings())

        decision = resolver.decide(Identity.user("user-1"), product, record, FROZEN_NOW)

        assert decision.status == DecisionStatus.GRANTED


# =============================================================================
# TestExpiredAccess
# =============================================================================


class TestExpiredAccess:
    """Expired records do not short-circuit."""

    def test_expired_record_on_live_product_is_no_access(
        self, resolver, make_user, make_product, make_access
    ):
        user = make_user()
        product = make_product()
        make_access(user, product, expires_at=FROZEN_NOW - timedelta(days=1))

        decision = resolver.resolve(Identity.user(user.id), product)

        assert decision.status == DecisionStatus.DENIED_NO_ACCESS
        assert decision.detail == "Access expired"

    def test_record_expiring_exactly_now_is_not_valid(
        self, resolver, make_user, make_product, make_access
    ):
        user = make_user()
        product = make_product()
        make_access(user, product, expires_at=FROZEN_NOW)

        decision = resolver.resolve(Identity.user(user.id), product)

        assert decision.is_granted is False

    def test_expired_record_on_inactive_product_is_inactive(
        self, resolver, make_user, make_product, make_access
    ):
        user = make_user()
        product = make_product(is_active=False)
        make_access(user, product, expires_at=FROZEN_NOW - timedelta(days=1))

        decision = resolver.resolve(Identity.user(user.id), product)

        assert decision.status == DecisionStatus.DENIED_INACTIVE

    @given(expired_minutes_ago=st.integers(min_value=0, max_value=1_000_000))
    @settings(max_examples=200, deadline=None)
    def test_expired_record_never_granted(self, expired_minutes_ago):
        product = Product(id="p-1", slug="live", is_active=True)
        record = AccessRecord(
            user_id="user-1",
            product_id="p-1",
            access_granted_at=FROZEN_NOW - timedelta(days=1000),
            access_expires_at=FROZEN_NOW - timedelta(minutes=expired_minutes_ago),
        )
        resolver = EntitlementResolver(db_session=None, settings=AccessSettings())

        decision = resolver.decide(Identity.user("user-1"), product, record, FROZEN_NOW)

        assert decision.status == DecisionStatus.DENIED_NO_ACCESS


# =============================================================================
# TestTemporalDenials
# =============================================================================


class TestTemporalDenials:

    def test_available_tomorrow_is_not_yet(self, resolver, make_user, make_product):
        user = make_user()
        product = make_product(available_from=FROZEN_NOW + timedelta(days=1))

        decision = resolver.resolve(Identity.user(user.id), product)

        assert decision.status == DecisionStatus.DENIED_TEMPORAL_NOT_YET
        assert decision.reason == "temporal_not_yet"

    def test_available_until_yesterday_is_expired(self, resolver, make_user, make_product):
        user = make_user()
        product = make_product(
            is_active=True,
            available_until=FROZEN_NOW - timedelta(days=1),
        )

        decision = resolver.resolve(Identity.user(user.id), product)

        assert decision.status == DecisionStatus.DENIED_TEMPORAL_EXPIRED

    def test_inactive_takes_precedence_over_temporal(self, resolver, make_user, make_product):
        user = make_user()
        product = make_product(
            is_active=False,
            available_from=FROZEN_NOW + timedelta(days=1),
        )

        decision = resolver.resolve(Identity.user(user.id), product)

        assert decision.status == DecisionStatus.DENIED_INACTIVE

    def test_live_product_without_purchase_is_no_access(self, resolver, make_user, make_product):
        user = make_user()
        product = make_product()

        decision = resolver.resolve(Identity.user(user.id), product)

        assert decision.status == DecisionStatus.DENIED_NO_ACCESS
        assert decision.detail is None

    def test_availability_ending_soon_flag(self, resolver, make_user, make_product):
        user = make_user()
        product = make_product(available_until=FROZEN_NOW + timedelta(days=3))

        decision = resolver.resolve(Identity.user(user.id), product)

        assert decision.status == DecisionStatus.DENIED_NO_ACCESS
        assert decision.availability_ending_soon is True


# =============================================================================
# TestResolveBySlug / TestResolveMany
# =============================================================================


class TestResolveBySlug:

    def test_resolves_by_slug(self, resolver, make_user, make_product, make_access):
        user = make_user()
        product = make_product(slug="course-a")
        make_access(user, product)

        decision = resolver.resolve_by_slug(Identity.user(user.id), "course-a")

        assert decision.is_granted is True
        assert decision.product_id == product.id

    def test_unknown_slug_raises_not_found(self, resolver, make_user):
        user = make_user()

        with pytest.raises(ProductNotFoundError) as exc_info:
            resolver.resolve_by_slug(Identity.user(user.id), "missing")

        assert exc_info.value.code == "NOT_FOUND"


class TestResolveMany:

    def test_batch_mixes_outcomes(self, resolver, make_user, make_product, make_access):
        user = make_user()
        owned = make_product(slug="owned")
        make_product(slug="not-owned")
        make_product(slug="retired", is_active=False)
        make_access(user, owned)

        results = resolver.resolve_many(
            Identity.user(user.id), ["owned", "not-owned", "retired", "ghost"]
        )

        assert results["owned"].status == DecisionStatus.GRANTED
        assert results["not-owned"].status == DecisionStatus.DENIED_NO_ACCESS
        assert results["retired"].status == DecisionStatus.DENIED_INACTIVE
        assert results["ghost"].status == DecisionStatus.DENIED_NO_ACCESS
        assert results["ghost"].product_id is None

    def test_duplicate_slugs_collapse(self, resolver, make_user, make_product):
        user = make_user()
        make_product(slug="dup")

        results = resolver.resolve_many(Identity.user(user.id), ["dup", "dup"])

        assert list(results) == ["dup"]


# =============================================================================
# TestUndetermined
# =============================================================================


class TestUndetermined:
    """Store failures resolve to undetermined."""

    def test_store_failure_on_resolve(self, resolver, db_session, make_user, make_product, make_access):
        user = make_user()
        product = make_product()
        make_access(user, product)

        with patch.object(db_session, "query", side_effect=_store_down()):
            decision = resolver.resolve(Identity.user(user.id), product)

        assert decision.status == DecisionStatus.UNDETERMINED
        assert decision.is_granted is False
        assert decision.reason is None

    def test_store_failure_on_slug_lookup(self, resolver, db_session, make_user):
        user = make_user()

        with patch.object(db_session, "query", side_effect=_store_down()):
            decision = resolver.resolve_by_slug(Identity.user(user.id), "anything")

        assert decision.is_undetermined is True

    def test_store_failure_on_batch(self, resolver, db_session, make_user):
        user = make_user()

        with patch.object(db_session, "query", side_effect=_store_down()):
            results = resolver.resolve_many(Identity.user(user.id), ["a", "b"])

        assert set(results) == {"a", "b"}
        assert all(d.is_undetermined for d in results.values())

    def test_undetermined_is_neither_granted_nor_denied(self):
        decision = AccessDecision(status=DecisionStatus.UNDETERMINED)

        assert decision.is_granted is False
        assert decision.to_dict()["has_access"] is False
        assert decision.to_dict()["reason"] is None
