"""Tests for the paid-route dependency mounted on a standalone app."""
from datetime import timedelta

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from paygate import models
from paygate.auth import require_active_subscription
from paygate.database import get_db
from paygate.subscriptions import utcnow


@pytest.fixture
def gated_client(session_factory):
    app = FastAPI()

    @app.get("/premium")
    def premium(current_user: models.User = Depends(require_active_subscription)):
        return {"user_id": current_user.id}

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as client:
        yield client


def test_active_subscription_passes(gated_client, make_user, auth_headers):
    user = make_user(user_id=7, status="active", end_date=utcnow() + timedelta(days=30))
    response = gated_client.get("/premium", headers=auth_headers(user))
    assert response.status_code == 200
    assert response.json() == {"user_id": 7}


def test_expired_subscription_is_blocked_and_corrected(gated_client, db_session, make_user, auth_headers):
    user = make_user(user_id=7, status="active", end_date=utcnow() - timedelta(minutes=5))
    response = gated_client.get("/premium", headers=auth_headers(user))

    assert response.status_code == 403
    assert response.json()["detail"]["code"] == "SUBSCRIPTION_EXPIRED"
    db_session.expire_all()
    assert db_session.get(models.User, 7).subscription_status == "expired"


def test_free_account_needs_subscription(gated_client, make_user, auth_headers):
    user = make_user(user_id=7)
    response = gated_client.get("/premium", headers=auth_headers(user))
    assert response.status_code == 403
    assert response.json()["detail"]["code"] == "SUBSCRIPTION_REQUIRED"


def test_cancelled_account_is_blocked(gated_client, make_user, auth_headers):
    user = make_user(user_id=7, status="cancelled", end_date=utcnow() + timedelta(days=30))
    response = gated_client.get("/premium", headers=auth_headers(user))
    assert response.status_code == 403
    assert response.json()["detail"]["code"] == "SUBSCRIPTION_REQUIRED"


def test_admin_bypasses_gate(gated_client, make_user, auth_headers):
    admin = make_user(user_id=1, is_admin=True)
    assert gated_client.get("/premium", headers=auth_headers(admin)).status_code == 200


def test_inactive_user_is_rejected(gated_client, make_user, auth_headers):
    user = make_user(user_id=7, status="active", end_date=utcnow() + timedelta(days=30), is_active=False)
    response = gated_client.get("/premium", headers=auth_headers(user))
    assert response.status_code == 400
    assert response.json()["detail"] == "Inactive user"
