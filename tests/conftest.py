"""Shared fixtures: in-memory database, test settings and mocked provider HTTP."""
import itertools
import os
from datetime import datetime, timedelta, timezone

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "sandbox")

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from paygate import models
from paygate.auth import ALGORITHM, SECRET_KEY
from paygate.config import (
    CashfreeCredentials,
    PhonePeCredentials,
    RupeePaymentsCredentials,
    Settings,
    get_settings,
)
from paygate.database import Base, get_db
from paygate.main import app
from paygate.services.registry import ADAPTER_CLASSES, ProviderRegistry, get_provider_registry
from paygate.utils.rate_limiter import rate_limiter

from tests.webhook_payloads import CASHFREE_SECRET, PHONEPE_SALT_INDEX, PHONEPE_SALT_KEY


@pytest.fixture
def settings():
    """Sandbox settings with every provider configured."""
    return Settings(
        environment="sandbox",
        client_url="http://localhost:5173",
        api_url="http://localhost:8000",
        amount_minor_units=20000,
        currency="INR",
        order_ttl_minutes=30,
        provider_timeout_seconds=5.0,
        cashfree=CashfreeCredentials(
            app_id="cf_test_app",
            secret_key=CASHFREE_SECRET,
            webhook_secret=CASHFREE_SECRET,
        ),
        phonepe=PhonePeCredentials(
            merchant_id="PGTESTPAYUAT",
            salt_key=PHONEPE_SALT_KEY,
            salt_index=PHONEPE_SALT_INDEX,
        ),
        rupeepayments=RupeePaymentsCredentials(key="rp_test_key"),
    )


@pytest.fixture
def http_session():
    """Stand-in for requests.Session shared by all adapters."""
    return MagicMock()


@pytest.fixture
def registry(settings, http_session):
    adapters = {
        provider: adapter_cls(settings, session=http_session)
        for provider, adapter_cls in ADAPTER_CLASSES.items()
    }
    return ProviderRegistry(settings, adapters)


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_user(db_session):
    """Factory for persisted users; returns the refreshed ORM object."""
    counter = itertools.count(1)

    def _make_user(user_id=None, status="free", end_date=None, is_admin=False, is_active=True):
        n = next(counter)
        email = f"user{user_id or 'n' + str(n)}@example.com"
        user = models.User(
            id=user_id,
            email=email,
            username=email.split("@")[0],
            is_active=is_active,
            is_admin=is_admin,
            subscription_status=status,
            subscription_end_date=end_date,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make_user


@pytest.fixture
def auth_headers():
    def _auth_headers(user):
        expires = datetime.now(timezone.utc) + timedelta(minutes=30)
        token = jwt.encode({"sub": user.email, "exp": expires}, SECRET_KEY, algorithm=ALGORITHM)
        return {"Authorization": f"Bearer {token}"}

    return _auth_headers


@pytest.fixture
def client(session_factory, settings, registry):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_provider_registry] = lambda: registry
    rate_limiter.reset()

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    rate_limiter.reset()
