"""Unit tests for user API endpoints."""

from fastapi.testclient import TestClient

from tests.helpers import auth, register_and_login


def test_health(client: TestClient):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_register_user(client: TestClient):
    """Test user registration."""
    response = client.post(
        "/api/users/register",
        json={
            "email": "u1@ex.com",
            "password": "pwd1",
            "full_name": "Test User",
            "role": "student",
        },
    )
    assert response.status_code == 201
    data = response.json()
    assert data["user"]["email"] == "u1@ex.com"
    assert data["user"]["role"] == "student"
    assert data["access_token"]


def test_register_duplicate_email(client: TestClient):
    """Test registering with duplicate email."""
    payload = {
        "email": "u2@ex.com",
        "password": "pwd1",
        "full_name": "Test User",
        "role": "student",
    }
    client.post("/api/users/register", json=payload)

    response = client.post("/api/users/register", json={**payload, "password": "pwd2"})
    assert response.status_code == 409
    assert "already registered" in response.json()["detail"].lower()


def test_register_invalid_email(client: TestClient):
    response = client.post(
        "/api/users/register",
        json={"email": "not-an-email", "password": "pwd1", "full_name": "X"},
    )
    assert response.status_code == 422


def test_login_user(client: TestClient):
    """Test user login."""
    client.post(
        "/api/users/register",
        json={
            "email": "u3@ex.com",
            "password": "pwd1",
            "full_name": "Test User",
            "role": "student",
        },
    )

    response = client.post(
        "/api/users/login",
        json={"email": "u3@ex.com", "password": "pwd1"},
    )
    assert response.status_code == 200
    assert "access_token" in response.json()


def test_login_invalid_credentials(client: TestClient):
    """Test login with invalid credentials."""
    response = client.post(
        "/api/users/login",
        json={"email": "nobody@ex.com", "password": "wrong"},
    )
    assert response.status_code == 401


def test_me(client: TestClient):
    token = register_and_login(client, "admin")
    response = client.get("/api/users/me", headers=auth(token))
    assert response.status_code == 200
    assert response.json()["role"] == "admin"


def test_me_requires_token(client: TestClient):
    assert client.get("/api/users/me").status_code == 401
    response = client.get("/api/users/me", headers=auth("garbage"))
    assert response.status_code == 401
