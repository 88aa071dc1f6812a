from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.orm import Session

from branchlms.core.errors import NotFoundError
from branchlms.core.security import CurrentSession, get_current_session
from branchlms.db.session import get_db
from branchlms.models.certificate import Certificate
from branchlms.models.course import Course
from branchlms.models.enrollment import Enrollment, Transaction
from branchlms.schemas.me import MyCertificatesResponse, MyEnrollmentsResponse, MyPaymentsResponse
from branchlms.services.certificates import certificate_view
from branchlms.services.progress import ProgressTracker

router = APIRouter(prefix="/me", tags=["me"])


@router.get("/certificates", response_model=MyCertificatesResponse)
def my_certificates(db: Session = Depends(get_db), session: CurrentSession = Depends(get_current_session)):
    rows = db.execute(
        select(Certificate, Course.title)
        .outerjoin(Course, Course.id == Certificate.course_id)
        .where(Certificate.user_id == session.user.id)
        .order_by(Certificate.completion_date.desc())
    ).all()
    return {
        "items": [
            {
                "id": str(c.id),
                "certificate_number": c.certificate_number,
                "type": c.type.value,
                "completion_date": c.completion_date.isoformat() if c.completion_date else None,
                "course_id": str(c.course_id) if c.course_id else None,
                "course_title": title,
                "reason": c.reason,
            }
            for c, title in rows
        ]
    }


@router.get("/certificates/{certificate_id}")
def my_certificate(
    certificate_id: uuid.UUID,
    db: Session = Depends(get_db),
    session: CurrentSession = Depends(get_current_session),
):
    cert = db.scalar(
        select(Certificate).where(Certificate.id == certificate_id, Certificate.user_id == session.user.id)
    )
    if cert is None:
        raise NotFoundError("certificate not found")
    return certificate_view(db, cert)


@router.get("/enrollments", response_model=MyEnrollmentsResponse)
def my_enrollments(db: Session = Depends(get_db), session: CurrentSession = Depends(get_current_session)):
    scope = session.scope(db)
    tracker = ProgressTracker(scope)
    rows = db.execute(
        select(Enrollment, Course)
        .join(Course, Course.id == Enrollment.course_id)
        .where(Enrollment.user_id == session.user.id, Course.site_id == scope.site_id)
        .order_by(Course.title.asc())
    ).all()

    items = []
    for e, c in rows:
        items.append(
            {
                "course_id": str(c.id),
                "course_title": c.title,
                "enrolled_at": e.created_at.isoformat() if e.created_at else None,
                "completed_lessons": len(tracker.completed_lesson_ids(session.user.id, c.id)),
                "total_lessons": len(scope.lesson_ids(c.id)),
            }
        )
    return {"items": items}


@router.get("/payments", response_model=MyPaymentsResponse)
def my_payments(db: Session = Depends(get_db), session: CurrentSession = Depends(get_current_session)):
    rows = db.scalars(
        select(Transaction).where(Transaction.user_id == session.user.id).order_by(Transaction.created_at.desc())
    ).all()
    return {
        "items": [
            {
                "id": str(t.id),
                "course_id": str(t.course_id),
                "amount": float(t.amount),
                "currency": t.currency,
                "status": t.status.value,
                "created_at": t.created_at.isoformat() if t.created_at else None,
            }
            for t in rows
        ]
    }
