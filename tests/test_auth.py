"""
Integration tests for signup, login and the health check.
"""
from app.db.models.user import User


def test_signup_creates_user(client, db):
    response = client.post("/api/auth/signup", json={
        "full_name": "Jane Wanjiku",
        "email": "Jane@School.ac.ke",
        "password": "strongpass123",
        "role": "staff",
        "school_name": "Nairobi Primary",
    })

    assert response.status_code == 201
    user = db.query(User).filter(User.email == "jane@school.ac.ke").one()
    assert user.subscription_status == "inactive"
    assert response.json()["user_id"] == user.id


def test_signup_duplicate_email(client, test_user):
    response = client.post("/api/auth/signup", json={
        "full_name": "Someone Else",
        "email": test_user.email,
        "password": "strongpass123",
    })
    assert response.status_code == 409


def test_signup_rejects_long_password(client):
    response = client.post("/api/auth/signup", json={
        "full_name": "Long Password",
        "email": "long@example.com",
        "password": "x" * 80,
    })
    assert response.status_code == 422


def test_login_returns_usable_token(client, test_user):
    response = client.post("/api/auth/login", data={"username": test_user.email, "password": "testpass123"})

    assert response.status_code == 200
    token = response.json()["access_token"]

    current = client.get("/api/subscriptions/current", headers={"Authorization": f"Bearer {token}"})
    assert current.status_code == 200
    assert current.json()["data"]["user_id"] == test_user.id


def test_login_wrong_password(client, test_user):
    response = client.post("/api/auth/login", data={"username": test_user.email, "password": "nope"})
    assert response.status_code == 401


def test_invalid_token_rejected(client):
    response = client.get("/api/subscriptions/current", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401


def test_health_check(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["database"] == "connected"
