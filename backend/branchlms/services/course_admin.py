from __future__ import annotations

import logging
import uuid
from typing import Iterable

from sqlalchemy import delete, func, select

from branchlms.core.errors import ConflictError, InputValidationError, NotFoundError
from branchlms.db.site_scope import SiteScope
from branchlms.models.attempt import FinalAssessmentAttempt, PreTestAttempt, QuizAttempt
from branchlms.models.certificate import Certificate
from branchlms.models.course import Course, CourseSignatory, Lesson, LessonType, Module
from branchlms.models.enrollment import Enrollment, Transaction
from branchlms.models.progress import UserProgress
from branchlms.schemas.content import (
    DocumentLesson,
    LessonBody,
    ModuleBody,
    QuizLesson,
    VideoLesson,
    decode_questions,
    encode_questions,
)
from branchlms.schemas.course import CourseWriteRequest


log = logging.getLogger(__name__)


def lesson_fields(body: LessonBody) -> dict:
    if isinstance(body, VideoLesson):
        return {
            "type": LessonType.video,
            "title": body.title,
            "content": body.url,
            "image_path": body.image_path,
            "document_path": None,
        }
    if isinstance(body, DocumentLesson):
        return {
            "type": LessonType.document,
            "title": body.title,
            "content": body.content,
            "image_path": body.image_path,
            "document_path": body.document_path,
        }
    return {
        "type": LessonType.quiz,
        "title": body.title,
        "content": encode_questions(body.questions),
        "image_path": None,
        "document_path": None,
    }


def lesson_body(lesson: Lesson) -> LessonBody:
    if lesson.type == LessonType.video:
        return VideoLesson(id=lesson.id, title=lesson.title, url=lesson.content, image_path=lesson.image_path)
    if lesson.type == LessonType.document:
        return DocumentLesson(
            id=lesson.id,
            title=lesson.title,
            content=lesson.content or "",
            document_path=lesson.document_path,
            image_path=lesson.image_path,
        )
    return QuizLesson(id=lesson.id, title=lesson.title, questions=decode_questions(lesson.content))


def module_bodies(scope: SiteScope, course_id: uuid.UUID) -> list[ModuleBody]:
    lessons = scope.ordered_lessons(course_id)
    out: list[ModuleBody] = []
    for m in scope.modules(course_id):
        out.append(
            ModuleBody(
                id=m.id,
                title=m.title,
                lessons=[lesson_body(l) for l in lessons if l.module_id == m.id],
            )
        )
    return out


def purge_lessons(scope: SiteScope, lesson_ids: Iterable[uuid.UUID]) -> int:
    """Delete lessons together with the progress and quiz attempts that point at them."""
    ids = list(lesson_ids)
    if not ids:
        return 0
    db = scope.db
    db.execute(delete(UserProgress).where(UserProgress.lesson_id.in_(ids)).execution_options(synchronize_session=False))
    db.execute(delete(QuizAttempt).where(QuizAttempt.lesson_id.in_(ids)).execution_options(synchronize_session=False))
    res = db.execute(delete(Lesson).where(Lesson.id.in_(ids)).execution_options(synchronize_session=False))
    return int(res.rowcount or 0)


def insert_modules(scope: SiteScope, course: Course, modules: list[ModuleBody]) -> None:
    """Insert a module/lesson tree with fresh ids, numbering order from 1."""
    db = scope.db
    for m_idx, m in enumerate(modules, start=1):
        module = Module(course_id=course.id, title=m.title, order=m_idx)
        db.add(module)
        db.flush()
        for l_idx, body in enumerate(m.lessons, start=1):
            db.add(Lesson(module_id=module.id, order=l_idx, **lesson_fields(body)))
    db.flush()


def replace_signatories(scope: SiteScope, course: Course, signatory_ids: list[uuid.UUID], *, check_pool: bool = True) -> None:
    db = scope.db
    ids = list(dict.fromkeys(signatory_ids))
    if check_pool:
        scope.resolve_signatories(ids, course_id=course.id)
    db.execute(
        delete(CourseSignatory).where(CourseSignatory.course_id == course.id).execution_options(synchronize_session=False)
    )
    for sid in ids:
        db.add(CourseSignatory(course_id=course.id, signatory_id=sid))
    db.flush()


class CourseAdmin:
    def __init__(self, scope: SiteScope) -> None:
        self.scope = scope
        self.db = scope.db

    def create(self, body: CourseWriteRequest) -> Course:
        title = body.title.strip()
        if self.scope.find_course_by_title(title) is not None:
            raise ConflictError("a course with this title already exists", details={"title": title})
        if any(m.id is not None for m in body.modules) or any(l.id is not None for m in body.modules for l in m.lessons):
            raise InputValidationError("new courses cannot reference existing module or lesson ids")

        course = Course(site_id=self.scope.site_id, title=title)
        self._apply_fields(course, body)
        course.price = body.price
        self.db.add(course)
        self.db.flush()

        insert_modules(self.scope, course, body.modules)
        replace_signatories(self.scope, course, body.signatory_ids)

        log.info("course created course_id=%s site_id=%s modules=%s", course.id, course.site_id, len(body.modules))
        return course

    def replace(self, course_id: uuid.UUID, body: CourseWriteRequest) -> Course:
        """Replace a course's content; modules and lessons keep their ids when the body names them."""
        course = self.scope.require_course(course_id)
        title = body.title.strip()
        clash = self.scope.find_course_by_title(title)
        if clash is not None and clash.id != course.id:
            raise ConflictError("a course with this title already exists", details={"title": title})

        course.title = title
        course.price = body.price
        self._apply_fields(course, body)

        existing_modules = {m.id: m for m in self.scope.modules(course.id)}
        existing_lessons = {l.id: l for l in self.scope.ordered_lessons(course.id)}
        kept_modules: set[uuid.UUID] = set()
        kept_lessons: set[uuid.UUID] = set()

        for m_idx, m in enumerate(body.modules, start=1):
            if m.id is not None:
                module = existing_modules.get(m.id)
                if module is None:
                    raise NotFoundError("module not found in this course", details={"module_id": str(m.id)})
                module.title = m.title
                module.order = m_idx
            else:
                module = Module(course_id=course.id, title=m.title, order=m_idx)
                self.db.add(module)
                self.db.flush()
            kept_modules.add(module.id)

            for l_idx, lb in enumerate(m.lessons, start=1):
                fields = lesson_fields(lb)
                if lb.id is not None:
                    lesson = existing_lessons.get(lb.id)
                    if lesson is None:
                        raise NotFoundError("lesson not found in this course", details={"lesson_id": str(lb.id)})
                    for k, v in fields.items():
                        setattr(lesson, k, v)
                    lesson.module_id = module.id
                    lesson.order = l_idx
                else:
                    lesson = Lesson(module_id=module.id, order=l_idx, **fields)
                    self.db.add(lesson)
                    self.db.flush()
                kept_lessons.add(lesson.id)

        self.db.flush()
        purge_lessons(self.scope, [lid for lid in existing_lessons if lid not in kept_lessons])
        dropped = [mid for mid in existing_modules if mid not in kept_modules]
        if dropped:
            self.db.execute(delete(Module).where(Module.id.in_(dropped)).execution_options(synchronize_session=False))

        replace_signatories(self.scope, course, body.signatory_ids)
        self.db.flush()

        log.info("course replaced course_id=%s site_id=%s", course.id, course.site_id)
        return course

    def delete(self, course_id: uuid.UUID) -> Course:
        """Delete a course with its modules, lessons, progress, attempts and enrollments.

        Courses with issued certificates or payment records are kept.
        """
        course = self.scope.require_course(course_id)
        certificates = int(self.db.scalar(select(func.count(Certificate.id)).where(Certificate.course_id == course.id)) or 0)
        transactions = int(self.db.scalar(select(func.count(Transaction.id)).where(Transaction.course_id == course.id)) or 0)
        if certificates or transactions:
            raise ConflictError(
                "course has issued certificates or payments and cannot be deleted",
                error_code="course_in_use",
                details={"certificates": certificates, "transactions": transactions},
            )

        purge_lessons(self.scope, self.scope.lesson_ids(course.id))
        for model in (Module, CourseSignatory, Enrollment, PreTestAttempt, FinalAssessmentAttempt):
            self.db.execute(
                delete(model).where(model.course_id == course.id).execution_options(synchronize_session=False)
            )
        self.db.delete(course)
        self.db.flush()

        log.info("course deleted course_id=%s site_id=%s", course.id, course.site_id)
        return course

    def tree(self, course_id: uuid.UUID) -> dict:
        course = self.scope.require_course(course_id)
        return {
            "id": str(course.id),
            "site_id": course.site_id,
            "title": course.title,
            "description": course.description,
            "category": course.category,
            "image_path": course.image_path,
            "venue": course.venue,
            "start_date": course.start_date.isoformat() if course.start_date else None,
            "end_date": course.end_date.isoformat() if course.end_date else None,
            "is_internal": course.is_internal,
            "is_public": course.is_public,
            "price": course.price,
            "pre_test": (
                {
                    "questions": [q.model_dump(by_alias=True) for q in decode_questions(course.pre_test_content)],
                    "passing_rate": course.pre_test_passing_rate,
                }
                if course.has_pre_test
                else None
            ),
            "final_assessment": (
                {
                    "questions": [q.model_dump(by_alias=True) for q in decode_questions(course.final_assessment_content)],
                    "passing_rate": course.final_assessment_passing_rate,
                    "max_attempts": course.final_assessment_max_attempts,
                }
                if course.has_final_assessment
                else None
            ),
            "modules": [m.model_dump(mode="json", by_alias=True) for m in module_bodies(self.scope, course.id)],
            "signatory_ids": [str(s) for s in self.scope.course_signatory_ids(course.id)],
        }

    @staticmethod
    def _apply_fields(course: Course, body: CourseWriteRequest) -> None:
        course.description = body.description
        course.category = body.category
        course.image_path = body.image_path
        course.venue = body.venue
        course.start_date = body.start_date
        course.end_date = body.end_date
        course.is_internal = body.is_internal
        course.is_public = body.is_public

        if body.pre_test is not None:
            course.pre_test_content = encode_questions(body.pre_test.questions)
            course.pre_test_passing_rate = body.pre_test.passing_rate
        else:
            course.pre_test_content = None
            course.pre_test_passing_rate = None

        if body.final_assessment is not None:
            course.final_assessment_content = encode_questions(body.final_assessment.questions)
            course.final_assessment_passing_rate = body.final_assessment.passing_rate
            course.final_assessment_max_attempts = body.final_assessment.max_attempts
        else:
            course.final_assessment_content = None
            course.final_assessment_passing_rate = None
            course.final_assessment_max_attempts = None
