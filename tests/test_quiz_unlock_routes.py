import pytest
from flask import Flask, g, request

from ledger import AuthorityLevel, ConcurrentModification, UnlockQuotas
from integrity import ScoringPolicy
from quiz_unlock import create_quiz_unlock_blueprint

PREFIX = "/learn/api/quiz-unlock"

SCOPES = {
    100: {"course_ids": None, "student_ids": [7]},  # teacher of student 7
    101: {"course_ids": None, "student_ids": []},  # teacher with no sections
    200: {"course_ids": [3], "student_ids": []},  # hod
    300: {"course_ids": [3], "student_ids": None},  # dean
}


@pytest.fixture
def client(mem_store):
    app = Flask(__name__)
    app.testing = True

    bp = create_quiz_unlock_blueprint("/learn", {
        "store": mem_store,
        "scoring_policy": lambda quiz_id: ScoringPolicy(),
        "unlock_quotas": lambda quiz_id: UnlockQuotas(),
        "scope_for": lambda uid, role: SCOPES.get(uid, {"course_ids": [], "student_ids": []}),
        "course_for_quiz": lambda quiz_id: 3,
    })
    app.register_blueprint(bp)

    @app.before_request
    def _set_user():
        uid = request.headers.get("X-User-Id")
        if uid:
            g.user_id = int(uid)
            g.user_role = request.headers.get("X-User-Role", "student")

    return app.test_client()


def _as(uid, role="student"):
    return {"X-User-Id": str(uid), "X-User-Role": role}


def _submit(client, uid=7, quiz_id=11, **body):
    payload = {"raw_score": 4, "max_score": 10}
    payload.update(body)
    return client.post(f"{PREFIX}/quiz/{quiz_id}/submit", json=payload, headers=_as(uid))


def test_requires_identity(client):
    assert client.get(f"{PREFIX}/quiz/11/availability").status_code == 401
    assert client.get(f"{PREFIX}/locked-students").status_code == 401


def test_failed_submission_locks_and_blocks(client):
    resp = _submit(client)
    body = resp.get_json()
    assert resp.status_code == 200
    assert body["locked"] is True
    assert body["result"]["final_percentage"] == 40
    assert body["lock"]["authorization_level"] == "TEACHER"
    assert body["lock"]["remaining_teacher_unlocks"] == 3

    avail = client.get(f"{PREFIX}/quiz/11/availability", headers=_as(7)).get_json()
    assert avail["can_attempt"] is False
    assert avail["is_locked"] is True

    again = _submit(client)
    assert again.status_code == 403
    assert again.get_json()["ok"] is False


def test_submission_with_penalty_reported(client):
    resp = _submit(client, raw_score=8, security={
        "tabSwitchCount": 1,
        "securityViolations": [{"type": "copy"}, {"type": "paste"}],
    })
    body = resp.get_json()
    assert body["result"]["penalty_percent"] == 10
    assert body["result"]["final_percentage"] == 70
    assert body["locked"] is False
    assert body["lock"] is None


def test_invalid_submission_is_400(client, mem_store):
    resp = _submit(client, raw_score=11)
    assert resp.status_code == 400
    assert mem_store.attempts == []
    assert _submit(client, raw_score=None).status_code == 400


def test_teacher_dashboard_and_unlock(client):
    _submit(client)
    rows = client.get(f"{PREFIX}/locked-students", headers=_as(100, "teacher")).get_json()
    assert rows["count"] == 1
    assert rows["data"][0]["actionable"] is True
    lock_id = rows["data"][0]["lock_id"]

    resp = client.post(f"{PREFIX}/unlock/{lock_id}", json={"reason": "Medical note"},
                       headers=_as(100, "teacher"))
    body = resp.get_json()
    assert resp.status_code == 200
    assert body["data"]["is_locked"] is False
    assert body["data"]["attempt_limit"] == 2
    assert body["data"]["unlock_history"][0]["reason"] == "Medical note"


def test_unlock_needs_reason(client):
    _submit(client)
    resp = client.post(f"{PREFIX}/unlock/1", json={"reason": "  "}, headers=_as(100, "teacher"))
    assert resp.status_code == 400


def test_students_cannot_unlock(client):
    _submit(client)
    resp = client.post(f"{PREFIX}/unlock/1", json={"reason": "me"}, headers=_as(7))
    assert resp.status_code == 403
    assert client.get(f"{PREFIX}/locked-students", headers=_as(7)).status_code == 403


def test_unscoped_teacher_is_refused(client):
    _submit(client)
    resp = client.post(f"{PREFIX}/unlock/1", json={"reason": "x"}, headers=_as(101, "teacher"))
    assert resp.status_code == 403
    rows = client.get(f"{PREFIX}/locked-students", headers=_as(101, "teacher")).get_json()
    assert rows["count"] == 0


def test_escalated_lock_rejects_teacher(client, mem_store):
    _submit(client)
    mem_store.rows[1].teacher_unlock_count = 3
    resp = client.post(f"{PREFIX}/unlock/1", json={"reason": "x"}, headers=_as(100, "teacher"))
    assert resp.status_code == 403
    assert mem_store.rows[1].is_locked is True

    ok = client.post(f"{PREFIX}/unlock/1", json={"reason": "x"}, headers=_as(200, "hod"))
    assert ok.status_code == 200
    assert ok.get_json()["data"]["hod_unlock_count"] == 1


def test_unlock_of_unlocked_ledger_is_409(client):
    _submit(client)
    client.post(f"{PREFIX}/unlock/1", json={"reason": "x"}, headers=_as(300, "dean"))
    resp = client.post(f"{PREFIX}/unlock/1", json={"reason": "x"}, headers=_as(300, "dean"))
    assert resp.status_code == 409


def test_conflict_returns_retry_hint(client, mem_store, monkeypatch):
    _submit(client)

    def lost_race(ledger):
        raise ConcurrentModification("quiz lock 1 was modified concurrently")

    monkeypatch.setattr(mem_store, "save", lost_race)
    resp = client.post(f"{PREFIX}/unlock/1", json={"reason": "x"}, headers=_as(100, "teacher"))
    assert resp.status_code == 409
    assert resp.get_json()["retry"] is True


def test_unknown_lock_is_404(client):
    resp = client.post(f"{PREFIX}/unlock/42", json={"reason": "x"}, headers=_as(1, "admin"))
    assert resp.status_code == 404


def test_lock_status_visibility(client):
    _submit(client)
    own = client.get(f"{PREFIX}/lock-status/7/11", headers=_as(7)).get_json()
    assert own["is_locked"] is True
    assert "unlock_history" not in own["data"]
    assert client.get(f"{PREFIX}/lock-status/8/11", headers=_as(7)).status_code == 403

    staff = client.get(f"{PREFIX}/lock-status/7/11", headers=_as(300, "dean")).get_json()
    assert staff["data"]["unlock_history"] == []
    assert staff["data"]["actionable"] is True

    none = client.get(f"{PREFIX}/lock-status/9/11", headers=_as(9)).get_json()
    assert none == {"ok": True, "is_locked": False, "data": None}


def test_unlock_history_endpoint(client):
    _submit(client)
    client.post(f"{PREFIX}/unlock/1", json={"reason": "first", "notes": "n"}, headers=_as(100, "teacher"))
    body = client.get(f"{PREFIX}/unlock-history/1", headers=_as(200, "hod")).get_json()
    assert body["count"] == 1
    entry = body["data"][0]
    assert entry["role"] == "TEACHER"
    assert entry["unlocked_by"] == 100
    assert entry["notes"] == "n"


def test_admin_manual_lock_and_heal(client, mem_store):
    assert client.post(f"{PREFIX}/lock", json={"student_id": 7, "quiz_id": 11},
                       headers=_as(300, "dean")).status_code == 403
    resp = client.post(f"{PREFIX}/lock", json={"student_id": 7, "quiz_id": 11, "detail": "Proctor"},
                       headers=_as(1, "admin"))
    assert resp.status_code == 200
    assert resp.get_json()["data"]["failure_reason"] == "MANUAL_LOCK"

    mem_store.rows[1].teacher_unlock_count = 3
    mem_store.rows[1].hod_unlock_count = 3
    stats = client.post(f"{PREFIX}/maintenance/heal", headers=_as(1, "admin")).get_json()
    assert stats["tier_corrected"] == 1
    assert mem_store.rows[1].authorization_level == AuthorityLevel.DEAN


def test_admin_lock_for_time_exceeded(client):
    resp = client.post(f"{PREFIX}/lock", json={"student_id": 7, "quiz_id": 11, "lock_reason": "time_exceeded"},
                       headers=_as(1, "admin"))
    assert resp.get_json()["data"]["failure_reason"] == "TIME_EXCEEDED"
    bad = client.post(f"{PREFIX}/lock", json={"student_id": 7, "quiz_id": 11, "lock_reason": "whim"},
                      headers=_as(1, "admin"))
    assert bad.status_code == 400


def test_submission_course_comes_from_quiz(client, mem_store):
    resp = _submit(client, raw_score=1, course_id=999)
    assert resp.status_code == 400
    assert mem_store.attempts == []
    assert mem_store.rows == {}

    ok = _submit(client, raw_score=1, course_id="3")
    assert ok.status_code == 200
    assert mem_store.rows[1].course_id == 3
    rows = client.get(f"{PREFIX}/locked-students", headers=_as(200, "hod")).get_json()
    assert rows["count"] == 1


def test_submission_without_course_uses_quiz_course(client, mem_store):
    _submit(client)
    assert mem_store.attempts[0]["course_id"] == 3


@pytest.mark.parametrize("body", [
    {"raw_score": float("nan")},
    {"raw_score": float("inf")},
    {"max_score": float("nan")},
    {"course_id": "abc"},
    {"course_id": 3.5},
    {"security": {"tabSwitchCount": 3.9}},
    {"security": {"tabSwitchCount": True}},
])
def test_malformed_numbers_are_400(client, mem_store, body):
    resp = _submit(client, **body)
    assert resp.status_code == 400
    assert resp.get_json()["ok"] is False
    assert mem_store.attempts == []


def test_manual_lock_rejects_bad_course(client):
    resp = client.post(f"{PREFIX}/lock", json={"student_id": 7, "quiz_id": 11, "course_id": "abc"},
                       headers=_as(1, "admin"))
    assert resp.status_code == 400
    resp = client.post(f"{PREFIX}/lock", json={"student_id": 7, "quiz_id": 11, "course_id": 4},
                       headers=_as(1, "admin"))
    assert resp.status_code == 400


def test_staff_reads_are_scoped(client):
    _submit(client)
    assert client.get(f"{PREFIX}/lock-status/7/11", headers=_as(101, "teacher")).status_code == 403
    assert client.get(f"{PREFIX}/quiz/11/availability?student_id=7",
                      headers=_as(101, "teacher")).status_code == 403
    # no ledger yet for student 8; the teacher of student 7 still may not look
    assert client.get(f"{PREFIX}/lock-status/8/11", headers=_as(100, "teacher")).status_code == 403

    own = client.get(f"{PREFIX}/lock-status/7/11", headers=_as(100, "teacher"))
    assert own.status_code == 200
    avail = client.get(f"{PREFIX}/quiz/11/availability?student_id=7", headers=_as(100, "teacher"))
    assert avail.get_json()["is_locked"] is True
    assert client.get(f"{PREFIX}/lock-status/8/11", headers=_as(300, "dean")).status_code == 200


def test_my_unlocks_feed(client):
    _submit(client, uid=7)
    _submit(client, uid=8)
    client.post(f"{PREFIX}/unlock/1", json={"reason": "first"}, headers=_as(300, "dean"))
    client.post(f"{PREFIX}/unlock/2", json={"reason": "second"}, headers=_as(300, "dean"))

    body = client.get(f"{PREFIX}/my-unlocks", headers=_as(300, "dean")).get_json()
    assert body["count"] == 2
    assert {r["student_id"] for r in body["data"]} == {7, 8}
    assert all(r["role"] == "DEAN" for r in body["data"])

    assert client.get(f"{PREFIX}/my-unlocks?role=hod", headers=_as(300, "dean")).get_json()["count"] == 0
    assert client.get(f"{PREFIX}/my-unlocks?quiz_id=12", headers=_as(300, "dean")).get_json()["count"] == 0
    assert client.get(f"{PREFIX}/my-unlocks", headers=_as(100, "teacher")).get_json()["count"] == 0
    assert client.get(f"{PREFIX}/my-unlocks?role=janitor", headers=_as(300, "dean")).status_code == 400
    assert client.get(f"{PREFIX}/my-unlocks", headers=_as(7)).status_code == 403
