from redis.exceptions import RedisError
from sqlalchemy import func, select

from branchlms.core.errors import ContentIntegrityError
from branchlms.db.session import SessionLocal
from branchlms.models import Certificate, FinalAssessmentAttempt, QuizAttempt, UserProgress
from branchlms.services.certificates import CertificateIssuer

from conftest import BRANCH_SITE, lesson_ids, question


def test_pre_test_allows_a_single_attempt(client, branch_admin, make_course, learner):
    _, admin_headers = branch_admin
    tree = make_course(admin_headers, pre_test={"questions": [question("p1", 1), question("p2", 0)], "passing_rate": 50})
    _, headers = learner(admin_headers, BRANCH_SITE, tree["id"])
    cid = tree["id"]

    r = client.get(f"/courses/{cid}/pre-test", headers=headers)
    assert r.status_code == 200
    assert r.json()["already_taken"] is False
    assert r.json()["questions"][0]["options"] == ["p1 #0", "p1 #1", "p1 #2"]

    r = client.post(f"/courses/{cid}/pre-test/submit", json={"answers": {"0": 1, "1": 2}}, headers=headers)
    assert r.status_code == 200, r.text
    assert r.json()["score"] == 1
    assert r.json()["passed"] is True

    r = client.post(f"/courses/{cid}/pre-test/submit", json={"answers": {"0": 1, "1": 0}}, headers=headers)
    assert r.status_code == 403
    assert r.json()["error_code"] == "pre_test_taken"

    r = client.get(f"/courses/{cid}/pre-test", headers=headers)
    assert r.json()["already_taken"] is True
    assert r.json()["score"] == 1


def test_missing_pre_test_is_not_found(client, branch_admin, make_course, learner):
    _, admin_headers = branch_admin
    tree = make_course(admin_headers)
    _, headers = learner(admin_headers, BRANCH_SITE, tree["id"])

    r = client.post(f"/courses/{tree['id']}/pre-test/submit", json={"answers": {}}, headers=headers)
    assert r.status_code == 404


def test_lesson_quiz_needs_every_answer_right(client, branch_admin, make_course, learner):
    _, admin_headers = branch_admin
    tree = make_course(
        admin_headers,
        modules=[
            {
                "title": "M1",
                "lessons": [{"type": "quiz", "title": "Check", "questions": [question("q1", 0), question("q2", 2)]}],
            }
        ],
    )
    uid, headers = learner(admin_headers, BRANCH_SITE, tree["id"])
    (lid,) = lesson_ids(tree)
    url = f"/courses/{tree['id']}/lessons/{lid}/quiz/submit"

    r = client.post(url, json={"answers": {"0": 0, "1": 1}}, headers=headers)
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["passed"] is False
    assert body["correct_indices"] == [0]
    assert body["certificate_id"] is None

    with SessionLocal() as db:
        assert db.scalar(select(func.count(UserProgress.id)).where(UserProgress.user_id == uid)) == 0

    r = client.post(url, json={"answers": {"0": 0, "1": 2}}, headers=headers)
    body = r.json()
    assert body["passed"] is True
    assert body["course_complete"] is True
    assert body["certificate_id"] is not None

    with SessionLocal() as db:
        assert db.scalar(select(func.count(QuizAttempt.id)).where(QuizAttempt.user_id == uid)) == 2


def test_quiz_submit_rejects_non_quiz_lesson(client, branch_admin, make_course, learner):
    _, admin_headers = branch_admin
    tree = make_course(admin_headers)
    _, headers = learner(admin_headers, BRANCH_SITE, tree["id"])
    (lid,) = lesson_ids(tree)

    r = client.post(f"/courses/{tree['id']}/lessons/{lid}/quiz/submit", json={"answers": {"0": 0}}, headers=headers)
    assert r.status_code == 400
    assert r.json()["error_code"] == "validation_error"


def _final_course(make_course, admin_headers, *, max_attempts=2):
    return make_course(
        admin_headers,
        final_assessment={
            "questions": [question("f1", 0), question("f2", 1), question("f3", 2), question("f4", 0), question("f5", 1)],
            "passing_rate": 80,
            "max_attempts": max_attempts,
        },
    )


def test_final_assessment_pass_issues_certificate(client, branch_admin, make_course, learner):
    _, admin_headers = branch_admin
    tree = _final_course(make_course, admin_headers)
    uid, headers = learner(admin_headers, BRANCH_SITE, tree["id"])

    r = client.get(f"/courses/{tree['id']}/assessment", headers=headers)
    assert r.status_code == 200
    assert r.json()["attempts_remaining"] == 2

    # 4 of 5 is exactly the 80% threshold.
    r = client.post(
        f"/courses/{tree['id']}/assessment/submit",
        json={"answers": {"0": 0, "1": 1, "2": 2, "3": 0, "4": 0}},
        headers=headers,
    )
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["passed"] is True
    assert body["certificate_id"] is not None
    assert body["attempts_used"] == 1

    with SessionLocal() as db:
        assert db.scalar(select(func.count(Certificate.id)).where(Certificate.user_id == uid)) == 1


def test_final_assessment_exhausted_attempts_reset_progress(client, branch_admin, make_course, learner):
    _, admin_headers = branch_admin
    tree = _final_course(make_course, admin_headers, max_attempts=2)
    uid, headers = learner(admin_headers, BRANCH_SITE, tree["id"])
    cid = tree["id"]
    (lid,) = lesson_ids(tree)

    assert client.post(f"/courses/{cid}/lessons/{lid}/complete", headers=headers).status_code == 200

    wrong = {"answers": {"0": 1, "1": 0, "2": 0, "3": 1, "4": 0}}
    r = client.post(f"/courses/{cid}/assessment/submit", json=wrong, headers=headers)
    assert r.json()["passed"] is False
    assert r.json()["retake_required"] is False

    r = client.post(f"/courses/{cid}/assessment/submit", json=wrong, headers=headers)
    body = r.json()
    assert body["passed"] is False
    assert body["retake_required"] is True
    assert body["attempts_used"] == 2

    with SessionLocal() as db:
        assert db.scalar(select(func.count(UserProgress.id)).where(UserProgress.user_id == uid)) == 0

    r = client.post(f"/courses/{cid}/assessment/submit", json=wrong, headers=headers)
    assert r.status_code == 403
    assert r.json()["error_code"] == "attempts_exhausted"

    r = client.post(f"/courses/{cid}/retake", headers=headers)
    assert r.status_code == 200
    assert r.json()["attempts_cleared"] == 2

    with SessionLocal() as db:
        assert (
            db.scalar(select(func.count(FinalAssessmentAttempt.id)).where(FinalAssessmentAttempt.user_id == uid)) == 0
        )

    r = client.get(f"/courses/{cid}/assessment", headers=headers)
    assert r.json()["attempts_remaining"] == 2


def test_proctoring_failure_locks_submission_until_restart(client, branch_admin, make_course, learner):
    _, admin_headers = branch_admin
    tree = _final_course(make_course, admin_headers)
    _, headers = learner(admin_headers, BRANCH_SITE, tree["id"])
    cid = tree["id"]

    r = client.post(f"/courses/{cid}/assessment/start", headers=headers)
    assert r.status_code == 200
    assert r.json()["proctoring"]["countdown_seconds"] == 10

    r = client.post(
        f"/courses/{cid}/assessment/proctoring",
        json={"event": "failed", "reasons": ["face not detected"]},
        headers=headers,
    )
    assert r.status_code == 200
    assert r.json()["locked"] is True

    answers = {"answers": {"0": 0, "1": 1, "2": 2, "3": 0, "4": 1}}
    r = client.post(f"/courses/{cid}/assessment/submit", json=answers, headers=headers)
    assert r.status_code == 409
    assert r.json()["error_code"] == "proctoring_locked"

    assert client.post(f"/courses/{cid}/assessment/start", headers=headers).status_code == 200
    r = client.post(f"/courses/{cid}/assessment/submit", json=answers, headers=headers)
    assert r.status_code == 200
    assert r.json()["passed"] is True


def test_final_pass_rolls_back_when_certificate_fails(client, branch_admin, make_course, learner, monkeypatch):
    _, admin_headers = branch_admin
    tree = _final_course(make_course, admin_headers)
    uid, headers = learner(admin_headers, BRANCH_SITE, tree["id"])
    cid = tree["id"]

    def _fail(self, user_id, course_id, signatory_ids=None):
        raise ContentIntegrityError("signature store unavailable")

    monkeypatch.setattr(CertificateIssuer, "issue_completion_certificate", _fail)

    answers = {"answers": {"0": 0, "1": 1, "2": 2, "3": 0, "4": 1}}
    r = client.post(f"/courses/{cid}/assessment/submit", json=answers, headers=headers)
    assert r.status_code == 500
    assert r.json()["error_code"] == "integrity_error"

    with SessionLocal() as db:
        assert (
            db.scalar(select(func.count(FinalAssessmentAttempt.id)).where(FinalAssessmentAttempt.user_id == uid)) == 0
        )
        assert db.scalar(select(func.count(Certificate.id)).where(Certificate.user_id == uid)) == 0

    monkeypatch.undo()
    r = client.get(f"/courses/{cid}/assessment", headers=headers)
    assert r.json()["attempts_used"] == 0


def test_proctoring_report_without_redis_is_unavailable(client, branch_admin, make_course, learner, monkeypatch):
    import branchlms.routers.courses as courses_router

    _, admin_headers = branch_admin
    tree = _final_course(make_course, admin_headers)
    _, headers = learner(admin_headers, BRANCH_SITE, tree["id"])

    def _down(*args, **kwargs):
        raise RedisError("connection refused")

    monkeypatch.setattr(courses_router, "set_proctoring_lock", _down)

    r = client.post(
        f"/courses/{tree['id']}/assessment/proctoring",
        json={"event": "failed", "reasons": ["tab hidden"]},
        headers=headers,
    )
    assert r.status_code == 503
    assert r.json()["ok"] is False
    assert r.json()["error_code"] == "proctoring_unavailable"
