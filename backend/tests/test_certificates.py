from datetime import date

from sqlalchemy import func, select

from branchlms.core.config import settings
from branchlms.db.base import utcnow
from branchlms.db.session import SessionLocal
from branchlms.db.site_scope import SiteScope
from branchlms.models import Certificate, CertificateSignatory, CertificateType, CourseSignatory, Signatory, UserProgress
from branchlms.services.certificates import CERTIFICATE_NUMBER_RE, CertificateIssuer, format_certificate_number

from conftest import BRANCH_SITE, OTHER_BRANCH_SITE, create_signatory, create_user, lesson_ids


def test_certificate_number_format():
    assert format_certificate_number("QAEHS", date(2024, 3, 9), 7, 4) == "QAEHS-20240309-0007"
    assert format_certificate_number("QAEHS", date(2024, 3, 9), 12345, 4) == "QAEHS-20240309-12345"
    assert CERTIFICATE_NUMBER_RE.match("QAEHS-20240309-0007")
    assert not CERTIFICATE_NUMBER_RE.match("qaehs-2024-7")


def test_serial_counts_existing_numbers_for_the_day():
    uid = create_user(site_id=BRANCH_SITE)
    with SessionLocal() as db:
        issuer = CertificateIssuer(SiteScope(site_id=BRANCH_SITE, db=db), prefix="ZZTEST")
        day = date(2001, 1, 1)
        assert issuer.next_certificate_number(day) == "ZZTEST-20010101-0001"
        db.add(
            Certificate(
                site_id=BRANCH_SITE,
                user_id=uid,
                type=CertificateType.recognition,
                certificate_number="ZZTEST-20010101-0001",
                completion_date=utcnow(),
                reason="seed row",
            )
        )
        db.flush()
        assert issuer.next_certificate_number(day) == "ZZTEST-20010101-0002"
        assert issuer.next_certificate_number(date(2001, 1, 2)) == "ZZTEST-20010102-0001"
        db.rollback()


def test_completion_certificate_snapshots_signatories(client, branch_admin, make_course, learner):
    _, admin_headers = branch_admin
    sig = create_signatory(site_id=BRANCH_SITE, name="Ana Cruz", position="Training Head")
    tree = make_course(admin_headers, signatory_ids=[str(sig)])
    uid, headers = learner(admin_headers, BRANCH_SITE, tree["id"])
    (lid,) = lesson_ids(tree)

    r = client.post(f"/courses/{tree['id']}/lessons/{lid}/complete", headers=headers)
    cert_id = r.json()["certificate_id"]

    # Later edits to the signatory do not rewrite issued certificates.
    with SessionLocal() as db:
        db.get(Signatory, sig).position = "Retired"
        db.commit()

    r = client.get(f"/me/certificates/{cert_id}", headers=headers)
    assert r.status_code == 200, r.text
    view = r.json()
    assert view["signatories"] == [{"name": "Ana Cruz", "position": "Training Head", "signature_image_path": "sig.png"}]
    assert view["course"]["title"] == tree["title"]
    assert view["site_id"] == BRANCH_SITE

    r = client.get("/me/certificates", headers=headers)
    assert [c["id"] for c in r.json()["items"]] == [cert_id]


def test_course_cannot_use_another_sites_signatory(client, branch_admin, make_course):
    _, admin_headers = branch_admin
    foreign = create_signatory(site_id=OTHER_BRANCH_SITE)
    r = client.post(
        "/admin/courses",
        json={"title": "Foreign signer", "signatory_ids": [str(foreign)]},
        headers=admin_headers,
    )
    assert r.status_code == 404

    shared = create_signatory(site_id=None, name="Global Signer")
    tree = make_course(admin_headers, signatory_ids=[str(shared)])
    assert tree["signatory_ids"] == [str(shared)]


def test_recognition_certificate(client, branch_admin):
    admin_id, admin_headers = branch_admin
    uid = create_user(site_id=BRANCH_SITE)
    sig = create_signatory(site_id=BRANCH_SITE)

    r = client.post(
        "/admin/certificates/recognition",
        json={
            "user_id": str(uid),
            "reason": "Outstanding safety leadership",
            "signatory_ids": [str(sig)],
            "awarded_on": "2024-05-01",
        },
        headers=admin_headers,
    )
    assert r.status_code == 200, r.text
    number = r.json()["certificate_number"]
    assert number.startswith(f"{settings.certificate_prefix}-20240501-")

    with SessionLocal() as db:
        cert = db.scalar(select(Certificate).where(Certificate.certificate_number == number))
        assert cert.course_id is None
        assert cert.site_id == BRANCH_SITE
        signers = db.scalars(select(CertificateSignatory).where(CertificateSignatory.certificate_id == cert.id)).all()
        assert len(signers) == 1


def test_recognition_requires_user_in_site(client, branch_admin):
    _, admin_headers = branch_admin
    outsider = create_user(site_id=OTHER_BRANCH_SITE)
    sig = create_signatory(site_id=BRANCH_SITE)

    r = client.post(
        "/admin/certificates/recognition",
        json={"user_id": str(outsider), "reason": "Outstanding safety leadership", "signatory_ids": [str(sig)]},
        headers=admin_headers,
    )
    assert r.status_code == 404

    r = client.post(
        "/admin/certificates/recognition",
        json={"user_id": str(outsider), "reason": "short", "signatory_ids": [str(sig)]},
        headers=admin_headers,
    )
    assert r.status_code == 400


def test_validation_is_scoped_to_the_issuing_site(client, branch_admin, make_course, learner):
    _, admin_headers = branch_admin
    tree = make_course(admin_headers)
    uid, headers = learner(admin_headers, BRANCH_SITE, tree["id"])
    (lid,) = lesson_ids(tree)
    client.post(f"/courses/{tree['id']}/lessons/{lid}/complete", headers=headers)

    with SessionLocal() as db:
        number = db.scalar(select(Certificate.certificate_number).where(Certificate.user_id == uid))

    r = client.get("/certificates/validate", params={"number": number, "site_id": BRANCH_SITE})
    assert r.status_code == 200
    assert r.json()["certificate_number"] == number
    assert r.json()["user"]["full_name"] == "Test User"

    mismatch = client.get("/certificates/validate", params={"number": number, "site_id": OTHER_BRANCH_SITE})
    missing = client.get("/certificates/validate", params={"number": "QAEHS-19990101-0001", "site_id": OTHER_BRANCH_SITE})
    assert mismatch.status_code == missing.status_code == 404
    assert mismatch.json()["error"] == missing.json()["error"]

    r = client.get("/certificates/validate", params={"number": number, "site_id": "nowhere"})
    assert r.status_code == 400


def test_super_admin_awards_recognition_in_branch(client, super_admin, branch_admin):
    _, sa_headers = super_admin
    _, ba_headers = branch_admin
    uid = create_user(site_id=OTHER_BRANCH_SITE)
    sig = create_signatory(site_id=OTHER_BRANCH_SITE)
    body = {
        "user_id": str(uid),
        "reason": "Ten years without a lost-time incident",
        "signatory_ids": [str(sig)],
        "site_id": OTHER_BRANCH_SITE,
    }

    assert client.post("/admin/certificates/recognition", json=body, headers=ba_headers).status_code == 403

    r = client.post("/admin/certificates/recognition", json=body, headers=sa_headers)
    assert r.status_code == 200, r.text
    r = client.get(
        "/certificates/validate", params={"number": r.json()["certificate_number"], "site_id": OTHER_BRANCH_SITE}
    )
    assert r.status_code == 200
    assert r.json()["type"] == "recognition"
    assert r.json()["course"] is None


def test_deleted_signatory_stays_on_issued_certificates(client, branch_admin, make_course, learner):
    _, admin_headers = branch_admin
    sig = create_signatory(site_id=BRANCH_SITE, name="Leo Santos", position="Plant Manager")
    tree = make_course(admin_headers, signatory_ids=[str(sig)])
    _, headers = learner(admin_headers, BRANCH_SITE, tree["id"])
    (lid,) = lesson_ids(tree)
    cert_id = client.post(f"/courses/{tree['id']}/lessons/{lid}/complete", headers=headers).json()["certificate_id"]

    r = client.delete(f"/admin/signatories/{sig}", headers=admin_headers)
    assert r.status_code == 200, r.text
    assert r.json()["unlinked_courses"] == 1

    with SessionLocal() as db:
        assert db.get(Signatory, sig) is None
        assert db.scalar(select(CourseSignatory).where(CourseSignatory.signatory_id == sig)) is None

    view = client.get(f"/me/certificates/{cert_id}", headers=headers).json()
    assert view["signatories"] == [{"name": "Leo Santos", "position": "Plant Manager", "signature_image_path": "sig.png"}]
    assert client.get(f"/admin/courses/{tree['id']}", headers=admin_headers).json()["signatory_ids"] == []

    assert client.delete(f"/admin/signatories/{sig}", headers=admin_headers).status_code == 404


def test_signatory_delete_respects_site_pools(client, branch_admin):
    _, admin_headers = branch_admin
    foreign = create_signatory(site_id=OTHER_BRANCH_SITE)
    shared = create_signatory(site_id=None, name="Global Signer")

    assert client.delete(f"/admin/signatories/{foreign}", headers=admin_headers).status_code == 404
    assert client.delete(f"/admin/signatories/{shared}", headers=admin_headers).status_code == 403

    with SessionLocal() as db:
        assert db.get(Signatory, foreign) is not None
        assert db.get(Signatory, shared) is not None


def test_number_collision_replays_the_unit_of_work(client, branch_admin, make_course, learner, monkeypatch):
    _, admin_headers = branch_admin
    tree = make_course(admin_headers)
    (lid,) = lesson_ids(tree)
    url = f"/courses/{tree['id']}/lessons/{lid}/complete"

    first_uid, first_headers = learner(admin_headers, BRANCH_SITE, tree["id"])
    assert client.post(url, headers=first_headers).status_code == 200
    with SessionLocal() as db:
        taken = db.scalar(select(Certificate.certificate_number).where(Certificate.user_id == first_uid))

    # The first number handed out was already issued by a concurrent request.
    original = CertificateIssuer.next_certificate_number
    calls = []

    def _racing(self, issued_on):
        calls.append(issued_on)
        return taken if len(calls) == 1 else original(self, issued_on)

    monkeypatch.setattr(CertificateIssuer, "next_certificate_number", _racing)

    uid, headers = learner(admin_headers, BRANCH_SITE, tree["id"])
    r = client.post(url, headers=headers)
    assert r.status_code == 200, r.text
    assert r.json()["certificate_id"] is not None
    assert len(calls) == 2

    with SessionLocal() as db:
        numbers = db.scalars(select(Certificate.certificate_number).where(Certificate.user_id == uid)).all()
        assert len(numbers) == 1
        assert numbers[0] != taken
        assert db.scalar(select(func.count(UserProgress.id)).where(UserProgress.user_id == uid)) == 1
