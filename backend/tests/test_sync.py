import uuid

from sqlalchemy import func, select

from branchlms.db.session import SessionLocal
from branchlms.models import SecurityAuditEvent, UserProgress
from branchlms.services.sync_jobs import sync_course_job

from conftest import BRANCH_SITE, OTHER_BRANCH_SITE, create_signatory, lesson_ids, question


def _master_body(title: str, signatory_ids: list[str]) -> dict:
    return {
        "title": title,
        "description": "master copy",
        "venue": "Main Hall",
        "price": 1000,
        "final_assessment": {"questions": [question("f")], "passing_rate": 90, "max_attempts": 2},
        "signatory_ids": signatory_ids,
        "modules": [
            {
                "title": "Hazards",
                "lessons": [
                    {"type": "video", "title": "Intro", "url": "https://cdn.example.com/intro.mp4"},
                    {"type": "document", "title": "Manual", "content": "read this"},
                    {"type": "quiz", "title": "Check", "questions": [question("q1"), question("q2", 1)]},
                ],
            },
            {
                "title": "Response",
                "lessons": [
                    {"type": "document", "title": "Evacuation", "content": "exits"},
                    {"type": "video", "title": "Drill", "url": "https://cdn.example.com/drill.mp4"},
                ],
            },
        ],
    }


def _setup(client, super_admin, branch_admin, make_course):
    _, sa_headers = super_admin
    _, ba_headers = branch_admin
    title = f"Fire Safety {uuid.uuid4().hex[:6]}"
    sig = create_signatory(site_id=None, name="Chief Safety Officer")
    master = make_course(sa_headers, **_master_body(title, [str(sig)]))
    branch = make_course(ba_headers, title=title, price=500, description="stale branch copy")
    return master, branch, sa_headers, ba_headers


def test_sync_replaces_branch_content(client, super_admin, branch_admin, make_course, learner):
    master, branch, sa_headers, ba_headers = _setup(client, super_admin, branch_admin, make_course)

    uid, headers = learner(ba_headers, BRANCH_SITE, branch["id"])
    (old_lesson,) = lesson_ids(branch)
    client.post(f"/courses/{branch['id']}/lessons/{old_lesson}/complete", headers=headers)

    r = client.post(f"/admin/courses/{master['id']}/sync", json={"target_site_ids": [BRANCH_SITE]}, headers=sa_headers)
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "success"
    assert r.json()["succeeded"] == [BRANCH_SITE]

    synced = client.get(f"/admin/courses/{branch['id']}", headers=ba_headers).json()
    assert synced["title"] == branch["title"]
    assert synced["price"] == 500
    assert synced["description"] == "master copy"
    assert synced["final_assessment"]["max_attempts"] == 2
    assert [m["title"] for m in synced["modules"]] == ["Hazards", "Response"]
    assert [l["title"] for m in synced["modules"] for l in m["lessons"]] == [
        l["title"] for m in master["modules"] for l in m["lessons"]
    ]
    assert len(lesson_ids(synced)) == 5
    assert not set(lesson_ids(synced)) & set(lesson_ids(master))
    assert synced["signatory_ids"] == master["signatory_ids"]

    with SessionLocal() as db:
        assert db.scalar(select(func.count(UserProgress.id)).where(UserProgress.user_id == uid)) == 0


def test_sync_reports_partial_failure(client, super_admin, branch_admin, make_course):
    master, branch, sa_headers, ba_headers = _setup(client, super_admin, branch_admin, make_course)

    r = client.post(
        f"/admin/courses/{master['id']}/sync",
        json={"target_site_ids": [BRANCH_SITE, OTHER_BRANCH_SITE, "nowhere"]},
        headers=sa_headers,
    )
    assert r.status_code == 207, r.text
    body = r.json()
    assert body["status"] == "partial"
    assert body["succeeded"] == [BRANCH_SITE]
    assert {f["site_id"] for f in body["failed"]} == {OTHER_BRANCH_SITE, "nowhere"}

    synced = client.get(f"/admin/courses/{branch['id']}", headers=ba_headers).json()
    assert len(lesson_ids(synced)) == 5


def test_sync_fails_when_every_target_fails(client, super_admin, make_course):
    _, sa_headers = super_admin
    master = make_course(sa_headers)

    r = client.post(
        f"/admin/courses/{master['id']}/sync",
        json={"target_site_ids": [OTHER_BRANCH_SITE, "main"]},
        headers=sa_headers,
    )
    assert r.status_code == 422
    assert r.json()["error_code"] == "sync_failed"
    assert r.json()["details"]["status"] == "failed"


def test_sync_is_super_admin_only(client, branch_admin, make_course):
    _, ba_headers = branch_admin
    course = make_course(ba_headers)
    r = client.post(f"/admin/courses/{course['id']}/sync", json={"target_site_ids": [BRANCH_SITE]}, headers=ba_headers)
    assert r.status_code == 403


def test_sync_job_runs_outside_a_worker(client, super_admin, branch_admin, make_course):
    master, branch, _, ba_headers = _setup(client, super_admin, branch_admin, make_course)
    actor_id, _ = super_admin

    out = sync_course_job(master_course_id=master["id"], target_site_ids=[BRANCH_SITE], actor_user_id=str(actor_id))
    assert out["status"] == "success"
    synced = client.get(f"/admin/courses/{branch['id']}", headers=ba_headers).json()
    assert len(synced["modules"]) == 2

    with SessionLocal() as db:
        events = db.scalars(
            select(SecurityAuditEvent).where(
                SecurityAuditEvent.event_type == "admin_course_synced",
                SecurityAuditEvent.actor_user_id == actor_id,
            )
        ).all()
        assert len(events) == 1
        assert BRANCH_SITE in events[0].meta
        assert events[0].ip is None


def test_enqueue_sync_uses_sync_queue(client, super_admin, make_course, monkeypatch):
    import branchlms.routers.admin as admin_router

    _, sa_headers = super_admin
    master = make_course(sa_headers)
    calls = []

    class _Job:
        id = "job-1"

    class _Queue:
        def enqueue(self, fn, **kwargs):
            calls.append((fn, kwargs))
            return _Job()

    monkeypatch.setattr(admin_router, "get_queue", lambda name=None: _Queue())

    r = client.post(
        f"/admin/courses/{master['id']}/sync/enqueue", json={"target_site_ids": [BRANCH_SITE]}, headers=sa_headers
    )
    assert r.status_code == 200, r.text
    assert r.json()["job_id"] == "job-1"
    fn, kwargs = calls[0]
    assert fn is sync_course_job
    assert kwargs["master_course_id"] == master["id"]
    assert kwargs["target_site_ids"] == [BRANCH_SITE]
    assert kwargs["actor_user_id"] == str(super_admin[0])
