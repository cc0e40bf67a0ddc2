"""Integration tests for exam authoring and admin reporting.

Covers:
  POST/GET/PATCH/DELETE /api/exams
  POST/PUT/DELETE       /api/exams/{id}/questions
  GET                   /api/exams/{id}/results | analytics | monitor
"""

import uuid

from fastapi.testclient import TestClient

from tests.helpers import auth, create_exam, register_and_login


class TestExamAuthoring:
    def test_admin_creates_exam_with_questions(self, client: TestClient):
        admin = register_and_login(client, "admin")
        exam = create_exam(client, admin, questions=3)

        assert exam["question_count"] == 3
        assert [q["position"] for q in exam["questions"]] == [0, 1, 2]
        options = exam["questions"][0]["options"]
        assert [o["label"] for o in options] == ["a", "b", "c", "d"]
        assert [o["is_correct"] for o in options] == [True, False, False, False]

    def test_students_cannot_author(self, client: TestClient):
        student = register_and_login(client)
        resp = client.post(
            "/api/exams",
            json={"title": "X", "code": "X1", "duration_minutes": 10, "passing_score": 50},
            headers=auth(student),
        )
        assert resp.status_code == 403

    def test_duplicate_code(self, client: TestClient):
        admin = register_and_login(client, "admin")
        body = {"title": "X", "code": "DUP", "duration_minutes": 10, "passing_score": 50}
        assert client.post("/api/exams", json=body, headers=auth(admin)).status_code == 201
        assert client.post("/api/exams", json=body, headers=auth(admin)).status_code == 409

    def test_invalid_exam_fields(self, client: TestClient):
        admin = register_and_login(client, "admin")
        resp = client.post(
            "/api/exams",
            json={"title": "X", "code": "BAD", "duration_minutes": 0, "passing_score": 120},
            headers=auth(admin),
        )
        assert resp.status_code == 422

    def test_question_needs_four_options(self, client: TestClient):
        admin = register_and_login(client, "admin")
        exam = create_exam(client, admin, questions=0)
        resp = client.post(
            f"/api/exams/{exam['id']}/questions",
            json={"text": "Q", "options": ["a", "b"], "correct_option": "a"},
            headers=auth(admin),
        )
        assert resp.status_code == 422

    def test_replace_question_moves_key(self, client: TestClient):
        admin = register_and_login(client, "admin")
        exam = create_exam(client, admin, questions=1)
        question = exam["questions"][0]

        resp = client.put(
            f"/api/exams/{exam['id']}/questions/{question['id']}",
            json={"text": "Edited", "options": ["w", "x", "y", "z"], "correct_option": "C"},
            headers=auth(admin),
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["text"] == "Edited"
        assert [o["id"] for o in data["options"]] == [o["id"] for o in question["options"]]
        assert [o["is_correct"] for o in data["options"]] == [False, False, True, False]

    def test_delete_question(self, client: TestClient):
        admin = register_and_login(client, "admin")
        exam = create_exam(client, admin, questions=2)
        qid = exam["questions"][0]["id"]

        resp = client.delete(f"/api/exams/{exam['id']}/questions/{qid}", headers=auth(admin))
        assert resp.status_code == 204
        detail = client.get(f"/api/exams/{exam['id']}", headers=auth(admin)).json()
        assert detail["question_count"] == 1

    def test_update_status(self, client: TestClient):
        admin = register_and_login(client, "admin")
        exam = create_exam(client, admin, status="draft")
        resp = client.patch(
            f"/api/exams/{exam['id']}", json={"status": "active"}, headers=auth(admin)
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "active"

    def test_delete_exam(self, client: TestClient):
        admin = register_and_login(client, "admin")
        exam = create_exam(client, admin)
        assert client.delete(f"/api/exams/{exam['id']}", headers=auth(admin)).status_code == 204
        assert client.get(f"/api/exams/{exam['id']}", headers=auth(admin)).status_code == 404

    def test_exam_with_attempts_cannot_be_deleted(self, client: TestClient):
        admin = register_and_login(client, "admin")
        student = register_and_login(client)
        exam = create_exam(client, admin)
        client.post(f"/api/exams/{exam['id']}/attempts", headers=auth(student))

        assert client.delete(f"/api/exams/{exam['id']}", headers=auth(admin)).status_code == 409


class TestExamFrozenWhileSat:
    def _start(self, client):
        admin = register_and_login(client, "admin")
        student = register_and_login(client)
        exam = create_exam(client, admin, questions=4, duration_minutes=60)
        resp = client.post(f"/api/exams/{exam['id']}/attempts", headers=auth(student))
        assert resp.status_code == 201
        return admin, student, exam, resp.json()

    def test_exam_fields_locked(self, client: TestClient):
        admin, student, exam, attempt = self._start(client)

        resp = client.patch(
            f"/api/exams/{exam['id']}",
            json={"duration_minutes": 1, "passing_score": 100},
            headers=auth(admin),
        )
        assert resp.status_code == 409

        state = client.get(f"/api/attempts/{attempt['id']}", headers=auth(student)).json()
        assert state["remaining_seconds"] > 3500
        detail = client.get(f"/api/exams/{exam['id']}", headers=auth(admin)).json()
        assert detail["duration_minutes"] == 60
        assert detail["passing_score"] == 50

    def test_questions_locked(self, client: TestClient):
        admin, student, exam, attempt = self._start(client)
        question = exam["questions"][0]
        body = {"text": "Edited", "options": ["w", "x", "y", "z"], "correct_option": "d"}

        added = client.post(f"/api/exams/{exam['id']}/questions", json=body, headers=auth(admin))
        replaced = client.put(
            f"/api/exams/{exam['id']}/questions/{question['id']}",
            json=body,
            headers=auth(admin),
        )
        deleted = client.delete(
            f"/api/exams/{exam['id']}/questions/{question['id']}", headers=auth(admin)
        )

        assert (added.status_code, replaced.status_code, deleted.status_code) == (409, 409, 409)
        state = client.get(f"/api/attempts/{attempt['id']}", headers=auth(student)).json()
        assert state["question_count"] == 4
        detail = client.get(f"/api/exams/{exam['id']}", headers=auth(admin)).json()
        assert detail["questions"][0]["options"][0]["is_correct"] is True

    def test_status_can_still_change(self, client: TestClient):
        admin, student, exam, attempt = self._start(client)

        resp = client.patch(
            f"/api/exams/{exam['id']}", json={"status": "completed"}, headers=auth(admin)
        )
        assert resp.status_code == 200

        resp = client.get(f"/api/attempts/{attempt['id']}", headers=auth(student))
        assert resp.status_code == 404
        assert resp.json()["error_code"] == "not_found"

    def test_editable_again_after_submit(self, client: TestClient):
        admin, student, exam, attempt = self._start(client)
        client.post(f"/api/attempts/{attempt['id']}/submit", headers=auth(student))

        resp = client.patch(
            f"/api/exams/{exam['id']}", json={"duration_minutes": 90}, headers=auth(admin)
        )
        assert resp.status_code == 200
        assert resp.json()["duration_minutes"] == 90


class TestExamVisibility:
    def test_students_only_see_active_exams(self, client: TestClient):
        admin = register_and_login(client, "admin")
        student = register_and_login(client)
        active = create_exam(client, admin, status="active")
        draft = create_exam(client, admin, status="draft")

        student_ids = {e["id"] for e in client.get("/api/exams", headers=auth(student)).json()}
        admin_ids = {e["id"] for e in client.get("/api/exams", headers=auth(admin)).json()}

        assert student_ids == {active["id"]}
        assert admin_ids == {active["id"], draft["id"]}
        resp = client.get(f"/api/exams/{draft['id']}", headers=auth(student))
        assert resp.status_code == 404

    def test_students_never_see_the_key(self, client: TestClient):
        admin = register_and_login(client, "admin")
        student = register_and_login(client)
        exam = create_exam(client, admin)

        detail = client.get(f"/api/exams/{exam['id']}", headers=auth(student)).json()
        assert all(
            "is_correct" not in option
            for question in detail["questions"]
            for option in question["options"]
        )

    def test_unknown_exam(self, client: TestClient):
        admin = register_and_login(client, "admin")
        resp = client.get(f"/api/exams/{uuid.uuid4()}", headers=auth(admin))
        assert resp.status_code == 404


class TestReporting:
    def _sit(self, client, exam, token, labels):
        attempt = client.post(f"/api/exams/{exam['id']}/attempts", headers=auth(token)).json()
        for question, label in zip(exam["questions"], labels):
            client.put(
                f"/api/attempts/{attempt['id']}/answers",
                json={"question_id": question["id"], "option_label": label},
                headers=auth(token),
            )
        return client.post(f"/api/attempts/{attempt['id']}/submit", headers=auth(token)).json()

    def test_results_and_analytics(self, client: TestClient):
        admin = register_and_login(client, "admin")
        exam = create_exam(client, admin, questions=5, passing_score=70)
        self._sit(client, exam, register_and_login(client), "aaaab")  # 80
        self._sit(client, exam, register_and_login(client), "aaaaa")  # 100

        rows = client.get(f"/api/exams/{exam['id']}/results", headers=auth(admin)).json()
        assert [r["score"] for r in rows] == [100, 80]
        assert all(r["status"] == "completed" for r in rows)

        analytics = client.get(f"/api/exams/{exam['id']}/analytics", headers=auth(admin)).json()
        assert analytics["total_attempts"] == 2
        assert analytics["avg_score"] == 90.0
        assert analytics["pass_count"] == 2
        assert analytics["pass_rate"] == 100.0

    def test_analytics_before_any_result(self, client: TestClient):
        admin = register_and_login(client, "admin")
        exam = create_exam(client, admin)
        analytics = client.get(f"/api/exams/{exam['id']}/analytics", headers=auth(admin)).json()
        assert analytics["total_attempts"] == 0

    def test_reports_are_admin_only(self, client: TestClient):
        admin = register_and_login(client, "admin")
        student = register_and_login(client)
        exam = create_exam(client, admin)
        for path in ("results", "analytics", "monitor"):
            resp = client.get(f"/api/exams/{exam['id']}/{path}", headers=auth(student))
            assert resp.status_code == 403

    def test_monitor_lists_live_attempts(self, client: TestClient):
        admin = register_and_login(client, "admin")
        student = register_and_login(client)
        exam = create_exam(client, admin, questions=3, duration_minutes=30)
        attempt = client.post(f"/api/exams/{exam['id']}/attempts", headers=auth(student)).json()
        client.put(
            f"/api/attempts/{attempt['id']}/answers",
            json={"question_id": exam["questions"][0]["id"], "option_label": "b"},
            headers=auth(student),
        )

        live = client.get(f"/api/exams/{exam['id']}/monitor", headers=auth(admin)).json()

        assert len(live) == 1
        assert live[0]["attempt_id"] == attempt["id"]
        assert live[0]["answered_count"] == 1
        assert live[0]["question_count"] == 3
        assert 0 < live[0]["remaining_seconds"] <= 1800
