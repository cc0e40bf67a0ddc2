"""Request helpers shared by the API tests."""

import uuid

from fastapi.testclient import TestClient


def register_and_login(client: TestClient, role: str = "student") -> str:
    uid = str(uuid.uuid4())[:8]
    email = f"{role}_{uid}@ex.com"
    resp = client.post(
        "/api/users/register",
        json={
            "email": email,
            "password": "testpwd1",
            "full_name": f"Test {role.title()}",
            "role": role,
        },
    )
    assert resp.status_code == 201, resp.text
    resp = client.post("/api/users/login", json={"email": email, "password": "testpwd1"})
    assert resp.status_code == 200, resp.text
    return resp.json()["access_token"]


def auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def create_exam(
    client: TestClient,
    admin_token: str,
    *,
    questions: int = 4,
    duration_minutes: int = 60,
    passing_score: int = 50,
    status: str = "active",
) -> dict:
    """Create an exam whose every question is keyed to option ``a``."""
    resp = client.post(
        "/api/exams",
        json={
            "title": "Physics mock",
            "code": f"PHY-{uuid.uuid4().hex[:6]}",
            "duration_minutes": duration_minutes,
            "passing_score": passing_score,
            "status": status,
        },
        headers=auth(admin_token),
    )
    assert resp.status_code == 201, resp.text
    exam = resp.json()
    for i in range(questions):
        resp = client.post(
            f"/api/exams/{exam['id']}/questions",
            json={
                "text": f"Question {i + 1}",
                "options": ["right", "wrong 1", "wrong 2", "wrong 3"],
                "correct_option": "a",
            },
            headers=auth(admin_token),
        )
        assert resp.status_code == 201, resp.text
    return client.get(f"/api/exams/{exam['id']}", headers=auth(admin_token)).json()
