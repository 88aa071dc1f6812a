import uuid

import pytest
from sqlalchemy import select

from branchlms.core.config import settings
from branchlms.db.session import SessionLocal
from branchlms.models import Enrollment, Transaction, TransactionStatus, UserKind, UserRole

from conftest import create_user, headers_for


class _FakeResponse:
    def __init__(self, status_code: int, payload: dict):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        return self._payload


class _FakeClient:
    """Stands in for httpx.Client; records calls and replays canned sessions."""

    calls: list[tuple] = []
    sessions: dict[str, dict] = {}

    def __init__(self, *args, **kwargs):
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def post(self, url, json=None, headers=None):
        _FakeClient.calls.append(("POST", url, json, headers))
        sid = f"cs_{uuid.uuid4().hex}"
        attrs = {"checkout_url": f"https://checkout.example.com/{sid}", "metadata": json["data"]["attributes"]["metadata"]}
        _FakeClient.sessions[sid] = {"id": sid, "attributes": attrs}
        return _FakeResponse(200, {"data": _FakeClient.sessions[sid]})

    def get(self, url, headers=None):
        _FakeClient.calls.append(("GET", url, None, headers))
        sid = url.rsplit("/", 1)[-1]
        data = _FakeClient.sessions.get(sid)
        if data is None:
            return _FakeResponse(404, {"errors": [{"code": "resource_not_found", "detail": "no such session"}]})
        return _FakeResponse(200, {"data": data})


def _mark_paid(sid: str) -> None:
    _FakeClient.sessions[sid]["attributes"]["payments"] = [{"data": {"attributes": {"status": "paid"}}}]


@pytest.fixture()
def gateway(monkeypatch):
    import branchlms.services.payments as payments_module

    _FakeClient.calls = []
    _FakeClient.sessions = {}
    monkeypatch.setattr(payments_module.httpx, "Client", _FakeClient)
    monkeypatch.setattr(settings, "paymongo_secret_key", "sk_test_123")
    monkeypatch.setattr(settings, "app_public_url", "https://lms.example.com")
    return _FakeClient


@pytest.fixture()
def paid_course(client, make_course):
    ext_admin = create_user(site_id=settings.external_site_id, role=UserRole.admin)
    headers = headers_for(ext_admin, settings.external_site_id, UserRole.admin)
    return make_course(headers, is_public=True, price=1499.5)


@pytest.fixture()
def buyer():
    uid = create_user(site_id=settings.external_site_id, kind=UserKind.external)
    return uid, headers_for(uid, settings.external_site_id)


def test_purchase_and_verify_enrolls_buyer(client, gateway, paid_course, buyer):
    uid, headers = buyer
    cid = paid_course["id"]

    r = client.post(f"/courses/{cid}/purchase", headers=headers)
    assert r.status_code == 200, r.text
    sid = r.json()["checkout_session_id"]
    assert r.json()["checkout_url"].endswith(sid)

    method, url, payload, sent_headers = gateway.calls[0]
    assert url == "https://api.paymongo.com/v1/checkout_sessions"
    assert sent_headers["authorization"].startswith("Basic ")
    attrs = payload["data"]["attributes"]
    assert attrs["line_items"][0]["amount"] == 149950
    assert attrs["metadata"] == {"userId": str(uid), "courseId": cid, "siteId": settings.external_site_id}

    # A pending purchase already opens the course.
    r = client.get(f"/courses/{cid}", headers=headers)
    assert r.status_code == 200

    _mark_paid(sid)
    r = client.post("/payments/verify", json={"checkout_session_id": sid})
    assert r.status_code == 200, r.text
    assert r.json()["paid"] is True
    assert r.json()["message"] == "user enrolled successfully"

    r = client.post("/payments/verify", json={"checkout_session_id": sid})
    assert r.status_code == 200
    assert r.json()["message"] == "already enrolled"

    with SessionLocal() as db:
        tx = db.scalar(select(Transaction).where(Transaction.gateway_transaction_id == sid))
        assert tx.status == TransactionStatus.completed
        assert db.scalar(select(Enrollment).where(Enrollment.user_id == uid)) is not None

    r = client.get("/me/payments", headers=headers)
    assert [p["status"] for p in r.json()["items"]] == ["completed"]


def test_unpaid_session_marks_transaction_failed(client, gateway, paid_course, buyer):
    uid, headers = buyer
    r = client.post(f"/courses/{paid_course['id']}/purchase", headers=headers)
    sid = r.json()["checkout_session_id"]

    r = client.post("/payments/verify", json={"checkout_session_id": sid})
    assert r.status_code == 402
    assert r.json()["error_code"] == "payment_required"

    with SessionLocal() as db:
        tx = db.scalar(select(Transaction).where(Transaction.gateway_transaction_id == sid))
        assert tx.status == TransactionStatus.failed
        assert db.scalar(select(Enrollment).where(Enrollment.user_id == uid)) is None


def test_gateway_errors_surface_as_bad_gateway(client, gateway):
    r = client.post("/payments/verify", json={"checkout_session_id": "cs_missing"})
    assert r.status_code == 502
    assert r.json()["error_code"] == "gateway_error"
    assert r.json()["details"] == "no such session"


def test_metadata_from_another_site_is_rejected(client, gateway, paid_course, buyer):
    uid, _ = buyer
    gateway.sessions["cs_forged"] = {
        "id": "cs_forged",
        "attributes": {
            "metadata": {"userId": str(uid), "courseId": paid_course["id"], "siteId": "north"},
            "payments": [{"data": {"attributes": {"status": "paid"}}}],
        },
    }
    r = client.post("/payments/verify", json={"checkout_session_id": "cs_forged"})
    assert r.status_code == 502

    with SessionLocal() as db:
        assert db.scalar(select(Enrollment).where(Enrollment.user_id == uid)) is None


def test_employees_cannot_purchase(client, gateway, paid_course):
    uid = create_user(site_id=settings.external_site_id)
    r = client.post(f"/courses/{paid_course['id']}/purchase", headers=headers_for(uid, settings.external_site_id))
    assert r.status_code == 403


def test_unconfigured_gateway(client, paid_course, buyer, monkeypatch):
    monkeypatch.setattr(settings, "paymongo_secret_key", None)
    monkeypatch.setattr(settings, "app_public_url", "https://lms.example.com")
    _, headers = buyer
    r = client.post(f"/courses/{paid_course['id']}/purchase", headers=headers)
    assert r.status_code == 503
    assert r.json()["error_code"] == "gateway_not_configured"


def _transaction_id(sid: str):
    with SessionLocal() as db:
        return db.scalar(select(Transaction.id).where(Transaction.gateway_transaction_id == sid))


def test_session_for_another_buyer_does_not_settle_transaction(client, gateway, paid_course, buyer):
    uid, headers = buyer
    other = create_user(site_id=settings.external_site_id, kind=UserKind.external)
    sid = client.post(f"/courses/{paid_course['id']}/purchase", headers=headers).json()["checkout_session_id"]

    gateway.sessions[sid]["attributes"]["metadata"]["userId"] = str(other)
    _mark_paid(sid)
    r = client.post("/payments/verify", json={"checkout_session_id": sid})
    assert r.status_code == 502
    assert r.json()["error"] == "payment session does not match its transaction"

    with SessionLocal() as db:
        tx = db.scalar(select(Transaction).where(Transaction.gateway_transaction_id == sid))
        assert tx.status == TransactionStatus.pending
        assert db.scalar(select(Enrollment).where(Enrollment.user_id.in_([uid, other]))) is None


def test_super_admin_approves_pending_transaction(client, gateway, paid_course, buyer, super_admin):
    uid, headers = buyer
    _, sa_headers = super_admin
    sid = client.post(f"/courses/{paid_course['id']}/purchase", headers=headers).json()["checkout_session_id"]
    tx_id = _transaction_id(sid)

    body = {"transaction_id": str(tx_id), "status": "completed"}
    r = client.post("/admin/payments/update-status", json=body, headers=sa_headers)
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "completed"

    with SessionLocal() as db:
        assert db.scalar(select(Enrollment).where(Enrollment.user_id == uid)) is not None

    r = client.post("/admin/payments/update-status", json=body, headers=sa_headers)
    assert r.status_code == 409
    assert r.json()["error_code"] == "transaction_processed"


def test_rejected_transaction_revokes_access(client, gateway, paid_course, buyer, super_admin):
    uid, headers = buyer
    _, sa_headers = super_admin
    cid = paid_course["id"]
    sid = client.post(f"/courses/{cid}/purchase", headers=headers).json()["checkout_session_id"]
    tx_id = _transaction_id(sid)

    with SessionLocal() as db:
        db.add(Enrollment(user_id=uid, course_id=uuid.UUID(cid)))
        db.commit()
    assert client.get(f"/courses/{cid}", headers=headers).status_code == 200

    r = client.post(
        "/admin/payments/update-status",
        json={"transaction_id": str(tx_id), "status": "rejected", "rejection_reason": "  "},
        headers=sa_headers,
    )
    assert r.status_code == 400

    r = client.post(
        "/admin/payments/update-status",
        json={"transaction_id": str(tx_id), "status": "rejected", "rejection_reason": "Receipt does not match"},
        headers=sa_headers,
    )
    assert r.status_code == 200, r.text

    with SessionLocal() as db:
        tx = db.get(Transaction, tx_id)
        assert tx.status == TransactionStatus.rejected
        assert tx.rejection_reason == "Receipt does not match"
        assert db.scalar(select(Enrollment).where(Enrollment.user_id == uid)) is None

    r = client.get(f"/courses/{cid}", headers=headers)
    assert r.status_code == 403
    assert r.json()["error_code"] == "not_enrolled"

    # A late gateway confirmation cannot undo the rejection.
    _mark_paid(sid)
    r = client.post("/payments/verify", json={"checkout_session_id": sid})
    assert r.status_code == 409
    assert r.json()["error_code"] == "transaction_rejected"


def test_payment_review_is_super_admin_only(client, gateway, paid_course, buyer, branch_admin):
    _, headers = buyer
    _, ba_headers = branch_admin
    sid = client.post(f"/courses/{paid_course['id']}/purchase", headers=headers).json()["checkout_session_id"]

    r = client.post(
        "/admin/payments/update-status",
        json={"transaction_id": str(_transaction_id(sid)), "status": "completed"},
        headers=ba_headers,
    )
    assert r.status_code == 403
