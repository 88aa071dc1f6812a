from __future__ import annotations

import logging
import uuid

from sqlalchemy import delete, select

from branchlms.core.errors import AuthorizationError
from branchlms.db.site_scope import SiteScope
from branchlms.models.enrollment import Enrollment, Transaction, TransactionStatus
from branchlms.models.user import User, UserKind, UserRole


log = logging.getLogger(__name__)


def has_course_access(scope: SiteScope, user: User, course_id: uuid.UUID) -> bool:
    if user.role == UserRole.admin:
        return True
    if scope.is_enrolled(user.id, course_id):
        return True
    if user.kind == UserKind.external:
        tx = scope.db.scalar(
            select(Transaction.id).where(
                Transaction.site_id == scope.site_id,
                Transaction.user_id == user.id,
                Transaction.course_id == course_id,
                Transaction.status.in_([TransactionStatus.pending, TransactionStatus.completed]),
            )
        )
        return tx is not None
    return False


def ensure_course_access(scope: SiteScope, user: User, course_id: uuid.UUID) -> None:
    if not has_course_access(scope, user, course_id):
        raise AuthorizationError(
            "you are not enrolled in this course",
            error_code="not_enrolled",
            details={"course_id": str(course_id)},
        )


def enroll(scope: SiteScope, user_id: uuid.UUID, course_id: uuid.UUID) -> bool:
    """Enroll a site user in a site course. Returns False when already enrolled."""
    scope.require_user(user_id)
    scope.require_course(course_id)

    existing = scope.db.scalar(
        select(Enrollment).where(Enrollment.user_id == user_id, Enrollment.course_id == course_id)
    )
    if existing is not None:
        return False

    scope.db.add(Enrollment(user_id=user_id, course_id=course_id))
    scope.db.flush()
    log.info("enrolled user_id=%s course_id=%s site_id=%s", user_id, course_id, scope.site_id)
    return True


def unenroll(scope: SiteScope, user_id: uuid.UUID, course_id: uuid.UUID) -> bool:
    scope.require_course(course_id)
    res = scope.db.execute(
        delete(Enrollment).where(Enrollment.user_id == user_id, Enrollment.course_id == course_id)
    )
    return bool(res.rowcount)
