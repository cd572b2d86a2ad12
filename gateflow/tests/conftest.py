"""
Root test configuration and fixtures.

Provides:
- db_engine / db_session: fresh SQLite in-memory database per test
- frozen_now / clock: a fixed "now" passed to services instead of the wall clock
- access_settings: AccessSettings with fast retry timings
- make_* factory fixtures for users, products, transactions, access and guest rows
- FakePaymentProvider / fake_provider: records refund calls, no network
"""

import asyncio
import os
import tempfile
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator, List, Optional

import pytest
import yaml
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from gateflow.config.settings import AccessSettings, reset_settings
from gateflow.db_base import Base
from gateflow.integrations.stripe.refund_client import ProviderRefund
from gateflow.models import (
    AccessRecord,
    GuestPurchase,
    PaymentTransaction,
    Product,
    TransactionStatus,
    User,
)

# Set test environment
os.environ.setdefault("ENV", "test")

FROZEN_NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


# =============================================================================
# Database
# =============================================================================


@pytest.fixture(scope="function")
def db_engine():
    """
    SQLite in-memory engine with all tables created.

    Function scoped: services under test commit, so each test needs its own
    database rather than a rolled-back outer transaction.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine) -> sessionmaker:
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=db_engine,
    )


@pytest.fixture(scope="function")
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def _reset_settings_singleton():
    """Each test starts without a cached settings instance."""
    reset_settings()
    yield
    reset_settings()


# =============================================================================
# Clock and settings
# =============================================================================


@pytest.fixture
def frozen_now() -> datetime:
    return FROZEN_NOW


@pytest.fixture
def clock(frozen_now):
    return lambda: frozen_now


@pytest.fixture
def access_settings() -> AccessSettings:
    return AccessSettings(
        expiring_soon_days=3,
        availability_ending_soon_days=7,
        refund_lock_ttl_seconds=300,
        refund_finalize_retries=3,
        refund_finalize_backoff_seconds=0,
        stripe_secret_key="sk_test_123",
        jwt_secret="test-jwt-secret",
    )


@pytest.fixture
def temp_config_dir():
    """Create a temporary directory for YAML config files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_yaml_config(temp_config_dir):
    """
    Factory fixture that writes a YAML config file and returns its path.

    Usage:
        config_path = make_yaml_config("access_policy.yml", {"expiring_soon_days": 5})
    """
    def _make(filename: str, config: dict) -> Path:
        config_path = temp_config_dir / filename
        with open(config_path, "w") as f:
            yaml.dump(config, f)
        return config_path
    return _make


# =============================================================================
# Factories
# =============================================================================


@pytest.fixture
def make_user(db_session):
    def _make(email: Optional[str] = None) -> User:
        user = User(
            id=str(uuid.uuid4()),
            email=email or f"user_{uuid.uuid4().hex[:8]}@example.com",
        )
        db_session.add(user)
        db_session.commit()
        return user
    return _make


@pytest.fixture
def make_product(db_session):
    def _make(**overrides) -> Product:
        values = {
            "id": str(uuid.uuid4()),
            "slug": f"product-{uuid.uuid4().hex[:8]}",
            "name": "Test Product",
            "price": 4900,
            "currency": "usd",
            "is_active": True,
        }
        values.update(overrides)
        product = Product(**values)
        db_session.add(product)
        db_session.commit()
        return product
    return _make


@pytest.fixture
def make_transaction(db_session):
    def _make(product: Product, user: Optional[User] = None, **overrides) -> PaymentTransaction:
        values = {
            "id": str(uuid.uuid4()),
            "session_id": f"cs_test_{uuid.uuid4().hex[:12]}",
            "product_id": product.id,
            "user_id": user.id if user else None,
            "customer_email": user.email if user else "guest@example.com",
            "amount": 10000,
            "currency": "usd",
            "payment_reference": f"pi_{uuid.uuid4().hex[:12]}",
            "status": TransactionStatus.COMPLETED.value,
        }
        values.update(overrides)
        transaction = PaymentTransaction(**values)
        db_session.add(transaction)
        db_session.commit()
        return transaction
    return _make


@pytest.fixture
def make_access(db_session, frozen_now):
    def _make(
        user: User,
        product: Product,
        expires_at: Optional[datetime] = None,
        granted_at: Optional[datetime] = None,
    ) -> AccessRecord:
        record = AccessRecord(
            id=str(uuid.uuid4()),
            user_id=user.id,
            product_id=product.id,
            access_granted_at=granted_at or frozen_now - timedelta(days=10),
            access_expires_at=expires_at,
        )
        db_session.add(record)
        db_session.commit()
        return record
    return _make


@pytest.fixture
def make_guest_purchase(db_session):
    def _make(
        transaction: PaymentTransaction,
        email: str = "guest@example.com",
        claimed_by: Optional[User] = None,
    ) -> GuestPurchase:
        guest = GuestPurchase(
            id=str(uuid.uuid4()),
            session_id=transaction.session_id,
            customer_email=email,
            product_id=transaction.product_id,
            transaction_amount=transaction.amount,
            claimed_by_user_id=claimed_by.id if claimed_by else None,
        )
        db_session.add(guest)
        db_session.commit()
        return guest
    return _make


# =============================================================================
# Payment provider
# =============================================================================


class FakePaymentProvider:
    """
    In-memory PaymentProvider.

    create_refund yields to the event loop once before answering, so two
    concurrent refund calls interleave the way they would against a real
    network call. Replays with the same idempotency key return the same refund.
    """

    def __init__(self, status: str = "succeeded", error: Optional[Exception] = None):
        self.status = status
        self.error = error
        self.list_error: Optional[Exception] = None
        self.calls: List[dict] = []
        self.list_calls: List[str] = []
        self.provider_refunds: List[ProviderRefund] = []
        self._by_key = {}

    async def create_refund(
        self,
        payment_reference: str,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> ProviderRefund:
        self.calls.append({
            "payment_reference": payment_reference,
            "amount": amount,
            "reason": reason,
            "idempotency_key": idempotency_key,
            "metadata": metadata,
        })
        await asyncio.sleep(0)

        if self.error is not None:
            raise self.error
        if idempotency_key in self._by_key:
            return self._by_key[idempotency_key]

        refund = ProviderRefund(
            id=f"re_{uuid.uuid4().hex[:12]}",
            amount=amount,
            currency="usd",
            status=self.status,
            reason=reason,
            payment_reference=payment_reference,
        )
        self._by_key[idempotency_key] = refund
        self.provider_refunds.insert(0, refund)
        return refund

    async def list_refunds(self, payment_reference: str) -> List[ProviderRefund]:
        self.list_calls.append(payment_reference)
        if self.list_error is not None:
            raise self.list_error
        return [r for r in self.provider_refunds if r.payment_reference == payment_reference]


@pytest.fixture
def fake_provider() -> FakePaymentProvider:
    return FakePaymentProvider()
