from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from branchlms.core.config import settings
from branchlms.core.errors import InputValidationError, LmsError, NotFoundError
from branchlms.db.site_scope import SiteScope, open_site_scope
from branchlms.db.transaction import atomic
from branchlms.models.course import Course
from branchlms.schemas.content import ModuleBody
from branchlms.services.course_admin import insert_modules, module_bodies, purge_lessons, replace_signatories


log = logging.getLogger(__name__)

# Copied onto every branch course. Title and price stay branch-owned.
SYNCED_FIELDS = (
    "description",
    "category",
    "image_path",
    "venue",
    "start_date",
    "end_date",
    "is_internal",
    "is_public",
    "pre_test_content",
    "pre_test_passing_rate",
    "final_assessment_content",
    "final_assessment_passing_rate",
    "final_assessment_max_attempts",
)


@dataclass(frozen=True)
class MasterCourse:
    id: uuid.UUID
    title: str
    fields: dict
    modules: list[ModuleBody]
    signatory_ids: list[uuid.UUID]


@dataclass
class SyncReport:
    master_course_id: uuid.UUID
    title: str
    succeeded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def status(self) -> str:
        if not self.failed:
            return "success"
        if self.succeeded:
            return "partial"
        return "failed"

    @property
    def http_status(self) -> int:
        return {"success": 200, "partial": 207, "failed": 422}[self.status]

    def as_dict(self) -> dict:
        return {
            "status": self.status,
            "master_course_id": str(self.master_course_id),
            "title": self.title,
            "succeeded": list(self.succeeded),
            "failed": [{"site_id": k, "error": v} for k, v in self.failed.items()],
        }


class CourseSyncEngine:
    """Pushes a primary-site course onto the same-titled course of other sites.

    Each target is written in its own transaction, so one failing branch
    never rolls back another.
    """

    def __init__(self, db: Session, *, primary_site_id: str | None = None) -> None:
        self.db = db
        self.primary = SiteScope(site_id=str(primary_site_id or settings.primary_site_id), db=db)

    def load_master(self, master_course_id: uuid.UUID) -> MasterCourse:
        course = self.primary.require_course(master_course_id)
        return MasterCourse(
            id=course.id,
            title=course.title,
            fields={k: getattr(course, k) for k in SYNCED_FIELDS},
            modules=module_bodies(self.primary, course.id),
            signatory_ids=self.primary.course_signatory_ids(course.id),
        )

    def sync_course(self, master_course_id: uuid.UUID, target_site_ids: list[str]) -> SyncReport:
        targets = [s for s in dict.fromkeys(str(t or "").strip() for t in target_site_ids) if s]
        if not targets:
            raise InputValidationError("at least one target site is required")

        master = self.load_master(master_course_id)
        report = SyncReport(master_course_id=master.id, title=master.title)

        for site_id in targets:
            try:
                with atomic(self.db):
                    self._apply(site_id, master)
            except LmsError as e:
                report.failed[site_id] = e.message
                log.warning("course sync failed site_id=%s course=%r: %s", site_id, master.title, e.message)
                continue
            except SQLAlchemyError:
                report.failed[site_id] = "database error while syncing"
                log.exception("course sync database error site_id=%s course=%r", site_id, master.title)
                continue
            report.succeeded.append(site_id)
            log.info("course synced site_id=%s course=%r modules=%s", site_id, master.title, len(master.modules))

        return report

    def _apply(self, site_id: str, master: MasterCourse) -> Course:
        if site_id == self.primary.site_id:
            raise InputValidationError("cannot sync a course onto the primary site")
        scope = open_site_scope(self.db, site_id)

        target = scope.find_course_by_title(master.title)
        if target is None:
            raise NotFoundError(f'course "{master.title}" not found in site "{site_id}"')

        for k, v in master.fields.items():
            setattr(target, k, v)

        purge_lessons(scope, scope.lesson_ids(target.id))
        for m in scope.modules(target.id):
            self.db.delete(m)
        self.db.flush()

        insert_modules(scope, target, master.modules)
        replace_signatories(scope, target, master.signatory_ids, check_pool=False)
        return target
