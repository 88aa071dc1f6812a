from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from branchlms.core.config import settings
from branchlms.core.errors import ConflictError, InputValidationError, LmsError, NotFoundError
from branchlms.core.queue import fetch_job, get_queue, job_status
from branchlms.core.rate_limit import rate_limit
from branchlms.core.security import CurrentSession, require_admin, require_super_admin
from branchlms.core.security_audit_log import audit_log
from branchlms.db.session import get_db
from branchlms.db.site_scope import SiteScope, open_site_scope
from branchlms.db.transaction import run_atomic
from branchlms.models.certificate import Signatory
from branchlms.models.course import Course, CourseSignatory
from branchlms.models.enrollment import Enrollment, Transaction, TransactionStatus
from branchlms.models.site import Site
from branchlms.models.user import User, UserKind
from branchlms.routers.auth import hash_password
from branchlms.schemas.admin import (
    BulkEnrollmentRequest,
    CertificateIssuedResponse,
    EnrollmentRequest,
    PaymentReviewRequest,
    RecognitionCertificateRequest,
    RetrainingRequest,
    SignatoriesResponse,
    SignatoryCreateRequest,
    SiteCreateRequest,
    SyncEnqueueResponse,
    SyncRequest,
    UserCreateRequest,
    UsersResponse,
)
from branchlms.schemas.course import CourseListResponse, CourseWriteRequest, CourseWriteResponse
from branchlms.services.certificates import CertificateIssuer
from branchlms.services.course_admin import CourseAdmin
from branchlms.services.course_sync import CourseSyncEngine
from branchlms.services.enrollment import enroll, unenroll
from branchlms.services.payments import PurchaseService
from branchlms.services.progress import ProgressTracker
from branchlms.services.retraining import RetrainingEngine
from branchlms.services.sync_jobs import sync_course_job

router = APIRouter(prefix="/admin", tags=["admin"])

log = logging.getLogger(__name__)


# courses


@router.get("/courses", response_model=CourseListResponse)
def list_courses(db: Session = Depends(get_db), session: CurrentSession = Depends(require_admin)):
    scope = session.scope(db)
    rows = db.scalars(scope.courses().order_by(Course.title.asc())).all()
    return {
        "items": [
            {
                "id": str(c.id),
                "title": c.title,
                "category": c.category,
                "is_internal": c.is_internal,
                "is_public": c.is_public,
                "price": c.price,
                "has_pre_test": c.has_pre_test,
                "has_final_assessment": c.has_final_assessment,
            }
            for c in rows
        ]
    }


@router.post("/courses", response_model=CourseWriteResponse)
def create_course(
    request: Request,
    body: CourseWriteRequest,
    db: Session = Depends(get_db),
    session: CurrentSession = Depends(require_admin),
):
    scope = session.scope(db)

    def _work() -> Course:
        course = CourseAdmin(scope).create(body)
        audit_log(db=db, request=request, event_type="admin_course_created", site_id=scope.site_id, actor_user_id=session.user.id, meta={"course_id": str(course.id)})
        return course

    course = run_atomic(db, _work)
    return {"id": str(course.id), "title": course.title, "site_id": course.site_id}


@router.get("/courses/{course_id}")
def get_course(course_id: uuid.UUID, db: Session = Depends(get_db), session: CurrentSession = Depends(require_admin)):
    return CourseAdmin(session.scope(db)).tree(course_id)


@router.put("/courses/{course_id}", response_model=CourseWriteResponse)
def replace_course(
    course_id: uuid.UUID,
    request: Request,
    body: CourseWriteRequest,
    db: Session = Depends(get_db),
    session: CurrentSession = Depends(require_admin),
):
    scope = session.scope(db)

    def _work() -> Course:
        course = CourseAdmin(scope).replace(course_id, body)
        audit_log(db=db, request=request, event_type="admin_course_replaced", site_id=scope.site_id, actor_user_id=session.user.id, meta={"course_id": str(course.id)})
        return course

    course = run_atomic(db, _work)
    return {"id": str(course.id), "title": course.title, "site_id": course.site_id}


@router.delete("/courses/{course_id}")
def delete_course(
    course_id: uuid.UUID,
    request: Request,
    db: Session = Depends(get_db),
    session: CurrentSession = Depends(require_admin),
):
    scope = session.scope(db)

    def _work() -> dict:
        course = CourseAdmin(scope).delete(course_id)
        out = {"id": str(course.id), "title": course.title}
        audit_log(db=db, request=request, event_type="admin_course_deleted", site_id=scope.site_id, actor_user_id=session.user.id, meta=out)
        return out

    return {"ok": True, **run_atomic(db, _work)}


@router.get("/courses/{course_id}/progress")
def course_progress(course_id: uuid.UUID, db: Session = Depends(get_db), session: CurrentSession = Depends(require_admin)):
    scope = session.scope(db)
    course = scope.require_course(course_id)
    tracker = ProgressTracker(scope)
    total = len(scope.lesson_ids(course.id))

    users = db.scalars(
        select(User)
        .join(Enrollment, Enrollment.user_id == User.id)
        .where(Enrollment.course_id == course.id)
        .order_by(User.name.asc())
    ).all()
    items = []
    for u in users:
        cert = tracker.issuer.find_completion_certificate(u.id, course.id)
        items.append(
            {
                "user_id": str(u.id),
                "name": u.name,
                "full_name": u.full_name,
                "completed_lessons": len(tracker.completed_lesson_ids(u.id, course.id)),
                "certificate_id": str(cert.id) if cert else None,
            }
        )
    return {"course_id": str(course.id), "total_lessons": total, "items": items}


# sync


@router.post("/courses/{course_id}/sync")
def sync_course(
    course_id: uuid.UUID,
    request: Request,
    body: SyncRequest,
    db: Session = Depends(get_db),
    session: CurrentSession = Depends(require_super_admin),
):
    if session.site_id != settings.primary_site_id:
        raise InputValidationError("sync runs from the primary site")

    report = CourseSyncEngine(db).sync_course(course_id, body.target_site_ids)
    audit_log(
        db=db,
        request=request,
        event_type="admin_course_synced",
        site_id=session.site_id,
        actor_user_id=session.user.id,
        meta=report.as_dict(),
    )
    db.commit()

    if report.status == "failed":
        raise LmsError(
            "sync failed for every target site",
            status_code=report.http_status,
            error_code="sync_failed",
            details=report.as_dict(),
        )
    return JSONResponse(status_code=report.http_status, content={"ok": report.status == "success", **report.as_dict()})


@router.post("/courses/{course_id}/sync/enqueue", response_model=SyncEnqueueResponse)
def enqueue_sync_course(
    course_id: uuid.UUID,
    body: SyncRequest,
    db: Session = Depends(get_db),
    session: CurrentSession = Depends(require_super_admin),
    _: object = rate_limit(key_prefix="admin_sync_enqueue", limit=10, window_seconds=60),
):
    if session.site_id != settings.primary_site_id:
        raise InputValidationError("sync runs from the primary site")
    session.scope(db).require_course(course_id)

    q = get_queue(str(settings.rq_queue_sync))
    job = q.enqueue(
        sync_course_job,
        master_course_id=str(course_id),
        target_site_ids=list(body.target_site_ids),
        actor_user_id=str(session.user.id),
        job_timeout=60 * 15,
        result_ttl=60 * 60 * 24,
        failure_ttl=60 * 60 * 24,
    )
    log.info("sync enqueued job_id=%s course_id=%s targets=%s", job.id, course_id, len(body.target_site_ids))
    return {"ok": True, "job_id": str(job.id)}


@router.get("/jobs/{job_id}")
def get_job(job_id: str, _: CurrentSession = Depends(require_super_admin)):
    job = fetch_job(job_id)
    if job is None:
        raise NotFoundError("job not found", details={"job_id": job_id})
    return job_status(job)


# retraining


@router.post("/courses/{course_id}/retraining")
def retrain_course(
    course_id: uuid.UUID,
    request: Request,
    body: RetrainingRequest | None = None,
    db: Session = Depends(get_db),
    session: CurrentSession = Depends(require_admin),
):
    target = str((body.target_site_id if body else None) or "").strip()
    if target and target != session.site_id:
        if not session.is_super_admin:
            raise HTTPException(status_code=403, detail="forbidden")
        scope = open_site_scope(db, target)
        title = str((body.course_title if body else None) or "").strip()
        if not title:
            raise InputValidationError("course_title is required when retraining another site")
        course = scope.find_course_by_title(title)
        if course is None:
            raise NotFoundError(f'course "{title}" not found in site "{target}"')
        resolved_id = course.id
    else:
        scope = session.scope(db)
        resolved_id = course_id

    def _work() -> dict:
        report = RetrainingEngine(scope).retrain_completed_users(resolved_id)
        audit_log(
            db=db,
            request=request,
            event_type="admin_course_retraining",
            site_id=scope.site_id,
            actor_user_id=session.user.id,
            meta={"course_id": str(resolved_id), "reset_count": report.reset_count},
        )
        return report.as_dict()

    return {"ok": True, **run_atomic(db, _work)}


# enrollments


@router.post("/enrollments")
def create_enrollment(body: EnrollmentRequest, db: Session = Depends(get_db), session: CurrentSession = Depends(require_admin)):
    scope = session.scope(db)
    created = run_atomic(db, lambda: enroll(scope, body.user_id, body.course_id))
    return {"ok": True, "created": created}


@router.post("/enrollments/bulk")
def bulk_enroll(body: BulkEnrollmentRequest, db: Session = Depends(get_db), session: CurrentSession = Depends(require_admin)):
    scope = session.scope(db)

    def _work() -> int:
        return sum(1 for uid in dict.fromkeys(body.user_ids) if enroll(scope, uid, body.course_id))

    created = run_atomic(db, _work)
    return {"ok": True, "created": created, "requested": len(body.user_ids)}


@router.delete("/enrollments/{user_id}/{course_id}")
def delete_enrollment(
    user_id: uuid.UUID,
    course_id: uuid.UUID,
    db: Session = Depends(get_db),
    session: CurrentSession = Depends(require_admin),
):
    scope = session.scope(db)
    removed = run_atomic(db, lambda: unenroll(scope, user_id, course_id))
    if not removed:
        raise NotFoundError("enrollment not found")
    return {"ok": True}


# signatories


@router.get("/signatories", response_model=SignatoriesResponse)
def list_signatories(db: Session = Depends(get_db), session: CurrentSession = Depends(require_admin)):
    rows = db.scalars(session.scope(db).signatories().order_by(Signatory.name.asc())).all()
    return {
        "items": [
            {
                "id": str(s.id),
                "name": s.name,
                "position": s.position,
                "signature_image_path": s.signature_image_path,
                "site_id": s.site_id,
            }
            for s in rows
        ]
    }


@router.post("/signatories")
def create_signatory(
    request: Request,
    body: SignatoryCreateRequest,
    db: Session = Depends(get_db),
    session: CurrentSession = Depends(require_admin),
):
    if body.is_global and not session.is_super_admin:
        raise HTTPException(status_code=403, detail="forbidden")

    s = Signatory(
        site_id=None if body.is_global else session.site_id,
        name=body.name.strip(),
        position=body.position.strip(),
        signature_image_path=body.signature_image_path,
    )
    db.add(s)
    db.flush()
    audit_log(db=db, request=request, event_type="admin_signatory_created", site_id=session.site_id, actor_user_id=session.user.id, meta={"signatory_id": str(s.id)})
    db.commit()
    return {"ok": True, "id": str(s.id)}


@router.delete("/signatories/{signatory_id}")
def delete_signatory(
    signatory_id: uuid.UUID,
    request: Request,
    db: Session = Depends(get_db),
    session: CurrentSession = Depends(require_admin),
):
    """Remove a signatory and unlink it from courses; issued certificates keep their signer snapshot."""
    s = db.get(Signatory, signatory_id)
    if s is None or (s.site_id is not None and s.site_id != session.site_id):
        raise NotFoundError("signatory not found", details={"signatory_id": str(signatory_id)})
    if s.site_id is None and not session.is_super_admin:
        raise HTTPException(status_code=403, detail="forbidden")

    def _work() -> int:
        res = db.execute(
            delete(CourseSignatory)
            .where(CourseSignatory.signatory_id == s.id)
            .execution_options(synchronize_session=False)
        )
        db.delete(s)
        audit_log(db=db, request=request, event_type="admin_signatory_deleted", site_id=session.site_id, actor_user_id=session.user.id, meta={"signatory_id": str(signatory_id), "name": s.name})
        return int(res.rowcount or 0)

    unlinked = run_atomic(db, _work)
    return {"ok": True, "unlinked_courses": unlinked}


# sites


@router.post("/sites")
def create_site(
    request: Request,
    body: SiteCreateRequest,
    db: Session = Depends(get_db),
    session: CurrentSession = Depends(require_super_admin),
):
    if db.get(Site, body.id) is not None:
        raise ConflictError("site already exists", details={"site_id": body.id})
    db.add(Site(id=body.id, name=body.name.strip(), is_core=False))
    audit_log(db=db, request=request, event_type="admin_site_created", site_id=body.id, actor_user_id=session.user.id)
    db.commit()
    return {"ok": True, "id": body.id}


# users


@router.get("/users", response_model=UsersResponse)
def list_users(db: Session = Depends(get_db), session: CurrentSession = Depends(require_admin)):
    rows = db.scalars(session.scope(db).users().order_by(User.name.asc())).all()
    return {
        "items": [
            {
                "id": str(u.id),
                "name": u.name,
                "full_name": u.full_name,
                "position": u.position,
                "role": u.role.value,
                "kind": u.kind.value,
                "site_id": u.site_id,
            }
            for u in rows
        ]
    }


@router.post("/users")
def create_user(
    request: Request,
    body: UserCreateRequest,
    db: Session = Depends(get_db),
    session: CurrentSession = Depends(require_admin),
):
    if len(body.password) < int(settings.password_min_length or 0):
        raise InputValidationError("password too short")
    if body.kind == UserKind.external and session.site_id != settings.external_site_id:
        raise InputValidationError("external users belong to the external site")

    scope: SiteScope = session.scope(db)
    name = body.name.strip()
    if scope.find_user_by_name(name) is not None:
        raise ConflictError("username already exists", details={"name": name})

    user = User(
        site_id=scope.site_id,
        name=name,
        full_name=body.full_name,
        position=body.position,
        role=body.role,
        kind=body.kind,
        password_hash=hash_password(body.password),
    )
    db.add(user)
    db.flush()
    audit_log(db=db, request=request, event_type="admin_user_created", site_id=scope.site_id, actor_user_id=session.user.id, target_user_id=user.id, meta={"role": body.role.value})
    db.commit()
    return {"ok": True, "id": str(user.id)}


# certificates


@router.post("/certificates/recognition", response_model=CertificateIssuedResponse)
def issue_recognition_certificate(
    request: Request,
    body: RecognitionCertificateRequest,
    db: Session = Depends(get_db),
    session: CurrentSession = Depends(require_admin),
):
    target = str(body.site_id or "").strip()
    if target and target != session.site_id:
        if not session.is_super_admin:
            raise HTTPException(status_code=403, detail="forbidden")
        scope = open_site_scope(db, target)
    else:
        scope = session.scope(db)

    def _work():
        cert = CertificateIssuer(scope).issue_recognition_certificate(
            body.user_id, body.reason, body.signatory_ids, awarded_on=body.awarded_on
        )
        audit_log(
            db=db,
            request=request,
            event_type="admin_recognition_certificate",
            site_id=scope.site_id,
            actor_user_id=session.user.id,
            target_user_id=body.user_id,
            meta={"certificate_number": cert.certificate_number},
        )
        return {"id": str(cert.id), "certificate_number": cert.certificate_number}

    return run_atomic(db, _work, retries=settings.certificate_issue_retries)


# payments


@router.get("/payments")
def list_payments(db: Session = Depends(get_db), session: CurrentSession = Depends(require_admin)):
    rows = db.execute(
        select(Transaction, User.name, Course.title)
        .join(User, User.id == Transaction.user_id)
        .join(Course, Course.id == Transaction.course_id)
        .where(Transaction.site_id == session.site_id)
        .order_by(Transaction.created_at.desc())
    ).all()
    total = db.scalar(select(func.count(Transaction.id)).where(Transaction.site_id == session.site_id))
    return {
        "total": int(total or 0),
        "items": [
            {
                "id": str(t.id),
                "user_name": user_name,
                "course_title": course_title,
                "amount": float(t.amount),
                "currency": t.currency,
                "status": t.status.value,
                "rejection_reason": t.rejection_reason,
                "gateway_transaction_id": t.gateway_transaction_id,
                "created_at": t.created_at.isoformat() if t.created_at else None,
            }
            for t, user_name, course_title in rows
        ],
    }


@router.post("/payments/update-status")
def update_payment_status(
    request: Request,
    body: PaymentReviewRequest,
    db: Session = Depends(get_db),
    session: CurrentSession = Depends(require_super_admin),
):
    def _work() -> dict:
        tx = PurchaseService(db).review(body.transaction_id, TransactionStatus(body.status), body.rejection_reason)
        audit_log(
            db=db,
            request=request,
            event_type="admin_payment_reviewed",
            site_id=tx.site_id,
            actor_user_id=session.user.id,
            target_user_id=tx.user_id,
            meta={"transaction_id": str(tx.id), "status": tx.status.value, "rejection_reason": tx.rejection_reason},
        )
        return {"id": str(tx.id), "status": tx.status.value}

    return {"ok": True, **run_atomic(db, _work)}
