import logging
import uuid

from fastapi import APIRouter, Depends, Request
from redis.exceptions import RedisError
from sqlalchemy.orm import Session

from branchlms.core.config import settings
from branchlms.core.errors import ConflictError, LmsError
from branchlms.core.rate_limit import rate_limit
from branchlms.core.redis_client import clear_proctoring_lock, get_proctoring_lock, set_proctoring_lock
from branchlms.core.security import CurrentSession, get_current_session
from branchlms.core.security_audit_log import audit_log
from branchlms.db.session import get_db
from branchlms.db.transaction import run_atomic
from branchlms.models.course import Course, LessonType
from branchlms.schemas.assessment import (
    AnswersRequest,
    LessonCompleteResponse,
    ProctoringEventRequest,
    RetakeResponse,
    SubmissionResponse,
)
from branchlms.schemas.content import decode_questions, public_questions
from branchlms.services.assessment import AssessmentEngine, AssessmentKind, AssessmentRef
from branchlms.services.enrollment import ensure_course_access, has_course_access
from branchlms.services.payments import PurchaseService
from branchlms.services.progress import ProgressTracker
from branchlms.services.retraining import RetrainingEngine

router = APIRouter(prefix="/courses", tags=["courses"])

log = logging.getLogger(__name__)


def _ensure_not_locked(session: CurrentSession, course_id: uuid.UUID) -> None:
    try:
        reason = get_proctoring_lock(session.site_id, session.user.id, course_id)
    except RedisError:
        log.warning("proctoring lock unavailable course_id=%s", course_id)
        return
    if reason:
        raise ConflictError(
            "this assessment session was ended by proctoring; restart the assessment",
            status_code=409,
            error_code="proctoring_locked",
            details={"reason": reason},
        )


def _submission(result) -> SubmissionResponse:
    return SubmissionResponse(**result.as_dict())


@router.get("")
def list_courses(db: Session = Depends(get_db), session: CurrentSession = Depends(get_current_session)):
    scope = session.scope(db)
    courses = db.scalars(scope.courses().order_by(Course.title.asc())).all()
    return {
        "items": [
            {
                "id": str(c.id),
                "title": c.title,
                "description": c.description,
                "category": c.category,
                "image_path": c.image_path,
                "venue": c.venue,
                "start_date": c.start_date.isoformat() if c.start_date else None,
                "end_date": c.end_date.isoformat() if c.end_date else None,
                "is_public": c.is_public,
                "price": c.price,
                "has_access": has_course_access(scope, session.user, c.id),
            }
            for c in courses
        ]
    }


@router.get("/{course_id}")
def get_course(course_id: uuid.UUID, db: Session = Depends(get_db), session: CurrentSession = Depends(get_current_session)):
    scope = session.scope(db)
    course = scope.require_course(course_id)
    ensure_course_access(scope, session.user, course.id)

    lessons = scope.ordered_lessons(course.id)
    return {
        "id": str(course.id),
        "title": course.title,
        "description": course.description,
        "venue": course.venue,
        "has_pre_test": course.has_pre_test,
        "has_final_assessment": course.has_final_assessment,
        "modules": [
            {
                "id": str(m.id),
                "title": m.title,
                "order": m.order,
                "lessons": [
                    {"id": str(l.id), "title": l.title, "type": l.type.value, "order": l.order}
                    for l in lessons
                    if l.module_id == m.id
                ],
            }
            for m in scope.modules(course.id)
        ],
    }


@router.get("/{course_id}/lessons/{lesson_id}")
def get_lesson(
    course_id: uuid.UUID,
    lesson_id: uuid.UUID,
    db: Session = Depends(get_db),
    session: CurrentSession = Depends(get_current_session),
):
    scope = session.scope(db)
    course = scope.require_course(course_id)
    ensure_course_access(scope, session.user, course.id)
    lesson = scope.require_lesson(course.id, lesson_id)

    out = {"id": str(lesson.id), "title": lesson.title, "type": lesson.type.value, "image_path": lesson.image_path}
    if lesson.type == LessonType.quiz:
        out["questions"] = [q.model_dump() for q in public_questions(decode_questions(lesson.content))]
    elif lesson.type == LessonType.video:
        out["url"] = lesson.content
    else:
        out["content"] = lesson.content or ""
        out["document_path"] = lesson.document_path
    nxt = ProgressTracker(scope).find_next_lesson(course.id, lesson.id)
    out["next_lesson_id"] = str(nxt) if nxt else None
    return out


@router.get("/{course_id}/progress")
def course_progress(course_id: uuid.UUID, db: Session = Depends(get_db), session: CurrentSession = Depends(get_current_session)):
    return ProgressTracker(session.scope(db)).summary(session.user, course_id)


@router.post("/{course_id}/lessons/{lesson_id}/complete", response_model=LessonCompleteResponse)
def complete_lesson(
    course_id: uuid.UUID,
    lesson_id: uuid.UUID,
    db: Session = Depends(get_db),
    session: CurrentSession = Depends(get_current_session),
):
    tracker = ProgressTracker(session.scope(db))
    outcome = run_atomic(
        db,
        lambda: tracker.complete_lesson(session.user, course_id, lesson_id),
        retries=settings.certificate_issue_retries,
    )
    return LessonCompleteResponse(
        course_complete=outcome.course_complete,
        next_lesson_id=str(outcome.next_lesson_id) if outcome.next_lesson_id else None,
        certificate_id=str(outcome.certificate_id) if outcome.certificate_id else None,
    )


@router.post("/{course_id}/lessons/{lesson_id}/quiz/submit", response_model=SubmissionResponse)
def submit_lesson_quiz(
    course_id: uuid.UUID,
    lesson_id: uuid.UUID,
    body: AnswersRequest,
    db: Session = Depends(get_db),
    session: CurrentSession = Depends(get_current_session),
    _: object = rate_limit(key_prefix="quiz_submit", limit=30, window_seconds=60),
):
    engine = AssessmentEngine(session.scope(db))
    ref = AssessmentRef(course_id=course_id, kind=AssessmentKind.lesson_quiz, lesson_id=lesson_id)
    result = run_atomic(db, lambda: engine.submit(ref, session.user, body.answers), retries=settings.certificate_issue_retries)
    return _submission(result)


@router.get("/{course_id}/pre-test")
def get_pre_test(course_id: uuid.UUID, db: Session = Depends(get_db), session: CurrentSession = Depends(get_current_session)):
    return AssessmentEngine(session.scope(db)).pre_test_status(session.user, course_id)


@router.post("/{course_id}/pre-test/submit", response_model=SubmissionResponse)
def submit_pre_test(
    course_id: uuid.UUID,
    body: AnswersRequest,
    db: Session = Depends(get_db),
    session: CurrentSession = Depends(get_current_session),
    _: object = rate_limit(key_prefix="pre_test_submit", limit=10, window_seconds=60),
):
    engine = AssessmentEngine(session.scope(db))
    ref = AssessmentRef(course_id=course_id, kind=AssessmentKind.pre_test)
    result = run_atomic(db, lambda: engine.submit(ref, session.user, body.answers))
    return _submission(result)


@router.get("/{course_id}/assessment")
def get_final_assessment(course_id: uuid.UUID, db: Session = Depends(get_db), session: CurrentSession = Depends(get_current_session)):
    return AssessmentEngine(session.scope(db)).final_status(session.user, course_id)


@router.post("/{course_id}/assessment/start")
def start_final_assessment(course_id: uuid.UUID, db: Session = Depends(get_db), session: CurrentSession = Depends(get_current_session)):
    """Begin (or restart) a proctored final-assessment session."""
    engine = AssessmentEngine(session.scope(db))
    engine.ensure_final_available(session.user, course_id)
    try:
        clear_proctoring_lock(session.site_id, session.user.id, course_id)
    except RedisError:
        log.warning("could not clear proctoring lock course_id=%s", course_id)
    out = engine.final_status(session.user, course_id)
    out["proctoring"] = {"countdown_seconds": int(settings.proctoring_countdown_seconds)}
    return out


@router.post("/{course_id}/assessment/proctoring")
def report_proctoring_event(
    course_id: uuid.UUID,
    body: ProctoringEventRequest,
    request: Request,
    db: Session = Depends(get_db),
    session: CurrentSession = Depends(get_current_session),
):
    scope = session.scope(db)
    course = scope.require_course(course_id)
    ensure_course_access(scope, session.user, course.id)

    reason = ", ".join(r.strip() for r in body.reasons if r.strip()) or "non-compliant"
    audit_log(
        db=db,
        request=request,
        event_type="proctoring_failed",
        site_id=scope.site_id,
        actor_user_id=session.user.id,
        meta={"course_id": str(course.id), "reasons": body.reasons},
    )
    db.commit()
    try:
        set_proctoring_lock(scope.site_id, session.user.id, course.id, reason)
    except RedisError as e:
        log.warning("could not set proctoring lock course_id=%s", course.id)
        raise LmsError(
            "proctoring service is unavailable", status_code=503, error_code="proctoring_unavailable"
        ) from e
    log.info("proctoring failure recorded user_id=%s course_id=%s", session.user.id, course.id)
    return {"ok": True, "locked": True}


@router.post("/{course_id}/assessment/submit", response_model=SubmissionResponse)
def submit_final_assessment(
    course_id: uuid.UUID,
    body: AnswersRequest,
    db: Session = Depends(get_db),
    session: CurrentSession = Depends(get_current_session),
    _: object = rate_limit(key_prefix="assessment_submit", limit=10, window_seconds=60),
):
    _ensure_not_locked(session, course_id)
    engine = AssessmentEngine(session.scope(db))
    ref = AssessmentRef(course_id=course_id, kind=AssessmentKind.final)
    result = run_atomic(db, lambda: engine.submit(ref, session.user, body.answers), retries=settings.certificate_issue_retries)
    return _submission(result)


@router.post("/{course_id}/retake", response_model=RetakeResponse)
def retake_course(course_id: uuid.UUID, db: Session = Depends(get_db), session: CurrentSession = Depends(get_current_session)):
    scope = session.scope(db)

    def _work() -> dict:
        ensure_course_access(scope, session.user, scope.require_course(course_id).id)
        return RetrainingEngine(scope).retake(session.user.id, course_id)

    return RetakeResponse(**run_atomic(db, _work))


@router.post("/{course_id}/purchase")
def purchase_course(
    course_id: uuid.UUID,
    db: Session = Depends(get_db),
    session: CurrentSession = Depends(get_current_session),
    _: object = rate_limit(key_prefix="purchase", limit=10, window_seconds=60),
):
    svc = PurchaseService(db)
    return run_atomic(db, lambda: svc.start_checkout(session.user, session.site_id, course_id))
