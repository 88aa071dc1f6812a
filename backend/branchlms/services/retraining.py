from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field

from sqlalchemy import delete, select

from branchlms.db.site_scope import SiteScope
from branchlms.models.attempt import FinalAssessmentAttempt
from branchlms.models.progress import UserProgress
from branchlms.models.user import User
from branchlms.services.progress import ProgressTracker


log = logging.getLogger(__name__)


@dataclass
class RetrainingReport:
    course_id: uuid.UUID
    site_id: str
    lesson_count: int = 0
    reset_user_ids: list[uuid.UUID] = field(default_factory=list)

    @property
    def reset_count(self) -> int:
        return len(self.reset_user_ids)

    def as_dict(self) -> dict:
        return {
            "course_id": str(self.course_id),
            "site_id": self.site_id,
            "lesson_count": self.lesson_count,
            "reset_count": self.reset_count,
            "reset_user_ids": [str(u) for u in self.reset_user_ids],
        }


class RetrainingEngine:
    """Sends learners back to the start of a course.

    Progress is erased; issued certificates are never touched.
    """

    def __init__(self, scope: SiteScope, *, progress: ProgressTracker | None = None) -> None:
        self.scope = scope
        self.db = scope.db
        self.progress = progress or ProgressTracker(scope)

    def reset_user(self, user_id: uuid.UUID, course_id: uuid.UUID) -> int:
        return self.progress.reset_progress(user_id, course_id)

    def retake(self, user_id: uuid.UUID, course_id: uuid.UUID) -> dict:
        """Learner-initiated retake: fresh progress and a fresh set of final attempts."""
        course = self.scope.require_course(course_id)
        progress_rows = self.progress.reset_progress(user_id, course.id)
        res = self.db.execute(
            delete(FinalAssessmentAttempt)
            .where(
                FinalAssessmentAttempt.site_id == self.scope.site_id,
                FinalAssessmentAttempt.user_id == user_id,
                FinalAssessmentAttempt.course_id == course.id,
            )
            .execution_options(synchronize_session=False)
        )
        attempts = int(res.rowcount or 0)
        log.info("retake user_id=%s course_id=%s progress_rows=%s attempts=%s", user_id, course.id, progress_rows, attempts)
        return {"progress_rows_cleared": progress_rows, "attempts_cleared": attempts}

    def retrain_completed_users(self, course_id: uuid.UUID) -> RetrainingReport:
        course = self.scope.require_course(course_id)
        report = RetrainingReport(course_id=course.id, site_id=self.scope.site_id)

        lesson_ids = self.scope.lesson_ids(course.id)
        report.lesson_count = len(lesson_ids)
        if not lesson_ids:
            log.info("retraining skipped: course has no lessons course_id=%s", course.id)
            return report

        candidates = self.db.scalars(
            select(UserProgress.user_id)
            .join(User, User.id == UserProgress.user_id)
            .where(User.site_id == self.scope.site_id, UserProgress.lesson_id.in_(lesson_ids))
            .distinct()
        ).all()

        for user_id in candidates:
            if self.progress.is_course_complete(user_id, course.id):
                self.progress.reset_progress(user_id, course.id)
                report.reset_user_ids.append(user_id)

        log.info(
            "retraining done course_id=%s site_id=%s reset_count=%s",
            course.id,
            self.scope.site_id,
            report.reset_count,
        )
        return report
