"""
Integration tests for the /api/subscriptions endpoints and subscription grants.
"""
import pytest
from dateutil.relativedelta import relativedelta

from app.core.errors import NotFoundError, ValidationError
from app.db.base import utcnow
from app.db.models.subscription import Subscription
from app.db.models.user import User
from app.services.subscription_service import get_current_subscription, grant_subscription


def test_list_plans(client):
    response = client.get("/api/subscriptions/plans")

    assert response.status_code == 200
    plans = {plan["id"]: plan for plan in response.json()["data"]}
    assert set(plans) == {"free", "basic", "premium", "institution"}
    assert plans["premium"]["price"] == 1200
    assert plans["premium"]["popular"] is True
    assert plans["basic"]["currency"] == "KSH"


def test_current_subscription_defaults_to_free(client, auth_headers):
    response = client.get("/api/subscriptions/current", headers=auth_headers)

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["plan"] == "free"
    assert data["id"] is None
    assert data["subscription_status"] == "inactive"


def test_current_subscription_after_grant(client, auth_headers, db, test_user):
    grant_subscription(db, test_user.id, "basic")

    data = client.get("/api/subscriptions/current", headers=auth_headers).json()["data"]
    assert data["plan"] == "basic"
    assert data["status"] == "active"
    assert data["payment_id"] is None
    assert data["subscription_status"] == "active"


def test_expired_subscription_reported_without_write(db, test_user):
    start = utcnow() - relativedelta(months=2)
    db.add(Subscription(
        user_id=test_user.id,
        plan="premium",
        status="active",
        start_date=start,
        end_date=start + relativedelta(months=1),
    ))
    db.commit()

    assert get_current_subscription(db, test_user)["status"] == "expired"
    assert db.query(Subscription).one().status == "active"


def test_cancel_without_subscription_is_404(client, auth_headers, db, test_user):
    response = client.post("/api/subscriptions/cancel", headers=auth_headers)

    assert response.status_code == 404
    assert response.json()["message"] == "No active subscription found"
    db.expire_all()
    assert db.get(User, test_user.id).subscription_status == "inactive"


def test_cancel_subscription(client, auth_headers, db, test_user):
    grant_subscription(db, test_user.id, "premium")

    response = client.post("/api/subscriptions/cancel", headers=auth_headers)

    assert response.status_code == 200
    assert response.json()["success"] is True
    db.expire_all()
    assert db.query(Subscription).one().status == "cancelled"
    assert db.get(User, test_user.id).subscription_status == "inactive"


def test_cancel_targets_latest_active_subscription(db, test_user, client, auth_headers):
    older = grant_subscription(db, test_user.id, "basic")
    older.created_at = utcnow() - relativedelta(days=5)
    db.commit()
    newer = grant_subscription(db, test_user.id, "premium")

    assert client.post("/api/subscriptions/cancel", headers=auth_headers).status_code == 200

    db.expire_all()
    assert db.get(Subscription, newer.id).status == "cancelled"
    assert db.get(Subscription, older.id).status == "active"


def test_grant_subscription_length_in_months(db, test_user):
    subscription = grant_subscription(db, test_user.id, "institution", months=3)

    assert subscription.status == "active"
    assert subscription.end_date == subscription.start_date + relativedelta(months=3)
    db.expire_all()
    assert db.get(User, test_user.id).subscription_status == "active"


def test_grant_subscription_validation(db, test_user):
    with pytest.raises(ValidationError):
        grant_subscription(db, test_user.id, "free")
    with pytest.raises(ValidationError):
        grant_subscription(db, test_user.id, "basic", months=0)
    with pytest.raises(NotFoundError):
        grant_subscription(db, "missing-user", "basic")
    assert db.query(Subscription).count() == 0


def test_grant_subscription_normalizes_plan_case(db, test_user):
    assert grant_subscription(db, test_user.id, "BASIC").plan == "basic"
