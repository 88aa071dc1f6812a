from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy import delete, func, select

from branchlms.db.base import utcnow
from branchlms.db.site_scope import SiteScope
from branchlms.models.progress import UserProgress
from branchlms.models.user import User
from branchlms.services.certificates import CertificateIssuer
from branchlms.services.enrollment import ensure_course_access


log = logging.getLogger(__name__)


@dataclass
class CompletionOutcome:
    course_complete: bool
    next_lesson_id: uuid.UUID | None = None
    certificate_id: uuid.UUID | None = None


class ProgressTracker:
    def __init__(self, scope: SiteScope, *, issuer: CertificateIssuer | None = None) -> None:
        self.scope = scope
        self.db = scope.db
        self.issuer = issuer or CertificateIssuer(scope)

    def mark_complete(self, user_id: uuid.UUID, lesson_id: uuid.UUID) -> UserProgress:
        """Upsert a completed progress row. Repeating the call changes nothing."""
        row = self.db.scalar(
            select(UserProgress).where(UserProgress.user_id == user_id, UserProgress.lesson_id == lesson_id)
        )
        if row is None:
            row = UserProgress(user_id=user_id, lesson_id=lesson_id, completed=True, completed_at=utcnow())
            self.db.add(row)
        elif not row.completed:
            row.completed = True
            row.completed_at = utcnow()
        self.db.flush()
        return row

    def completed_lesson_ids(self, user_id: uuid.UUID, course_id: uuid.UUID) -> set[uuid.UUID]:
        ids = self.scope.lesson_ids(course_id)
        if not ids:
            return set()
        return set(
            self.db.scalars(
                select(UserProgress.lesson_id).where(
                    UserProgress.user_id == user_id,
                    UserProgress.lesson_id.in_(ids),
                    UserProgress.completed.is_(True),
                )
            ).all()
        )

    def is_course_complete(self, user_id: uuid.UUID, course_id: uuid.UUID) -> bool:
        ids = self.scope.lesson_ids(course_id)
        if not ids:
            return False
        done = self.db.scalar(
            select(func.count(UserProgress.id)).where(
                UserProgress.user_id == user_id,
                UserProgress.lesson_id.in_(ids),
                UserProgress.completed.is_(True),
            )
        )
        return int(done or 0) == len(ids)

    def find_next_lesson(self, course_id: uuid.UUID, current_lesson_id: uuid.UUID) -> uuid.UUID | None:
        ids = self.scope.lesson_ids(course_id)
        try:
            idx = ids.index(current_lesson_id)
        except ValueError:
            return None
        return ids[idx + 1] if idx + 1 < len(ids) else None

    def reset_progress(self, user_id: uuid.UUID, course_id: uuid.UUID) -> int:
        """Forget every lesson completion of the user in the course. Certificates stay."""
        ids = self.scope.lesson_ids(course_id)
        if not ids:
            return 0
        res = self.db.execute(
            delete(UserProgress)
            .where(UserProgress.user_id == user_id, UserProgress.lesson_id.in_(ids))
            .execution_options(synchronize_session=False)
        )
        n = int(res.rowcount or 0)
        log.info("progress reset user_id=%s course_id=%s rows=%s", user_id, course_id, n)
        return n

    def complete_lesson(self, user: User, course_id: uuid.UUID, lesson_id: uuid.UUID) -> CompletionOutcome:
        course = self.scope.require_course(course_id)
        ensure_course_access(self.scope, user, course.id)
        lesson = self.scope.require_lesson(course.id, lesson_id)

        self.mark_complete(user.id, lesson.id)
        return self.after_lesson(user, course.id, lesson.id)

    def after_lesson(self, user: User, course_id: uuid.UUID, lesson_id: uuid.UUID) -> CompletionOutcome:
        """Decide what follows a completed lesson.

        A finished course without a final assessment earns its certificate
        here; otherwise the final assessment issues it.
        """
        if not self.is_course_complete(user.id, course_id):
            return CompletionOutcome(course_complete=False, next_lesson_id=self.find_next_lesson(course_id, lesson_id))

        course = self.scope.require_course(course_id)
        if course.has_final_assessment:
            existing = self.issuer.find_completion_certificate(user.id, course.id)
            return CompletionOutcome(course_complete=True, certificate_id=existing.id if existing else None)

        cert = self.issuer.issue_completion_certificate(user.id, course.id)
        return CompletionOutcome(course_complete=True, certificate_id=cert.id)

    def summary(self, user: User, course_id: uuid.UUID) -> dict:
        course = self.scope.require_course(course_id)
        ensure_course_access(self.scope, user, course.id)

        lessons = self.scope.ordered_lessons(course.id)
        done = self.completed_lesson_ids(user.id, course.id)
        cert = self.issuer.find_completion_certificate(user.id, course.id)

        next_id = next((l.id for l in lessons if l.id not in done), None)
        total = len(lessons)
        return {
            "course_id": str(course.id),
            "total_lessons": total,
            "completed_lessons": len(done),
            "percent": int(round((len(done) / total) * 100)) if total else 0,
            "completed_lesson_ids": [str(l.id) for l in lessons if l.id in done],
            "next_lesson_id": str(next_id) if next_id else None,
            "course_complete": bool(total) and len(done) == total,
            "certificate_id": str(cert.id) if cert else None,
        }
