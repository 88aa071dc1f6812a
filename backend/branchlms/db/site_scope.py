from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import Select, or_, select
from sqlalchemy.orm import Session

from branchlms.core.errors import InputValidationError, NotFoundError
from branchlms.models.certificate import Certificate, Signatory
from branchlms.models.course import Course, CourseSignatory, Lesson, Module
from branchlms.models.enrollment import Enrollment
from branchlms.models.site import Site
from branchlms.models.user import User


@dataclass(frozen=True)
class SiteScope:
    """Query handle bound to one site.

    Every lookup of site-owned data goes through here so a request can never
    read or write rows that belong to another site.
    """

    site_id: str
    db: Session

    def __post_init__(self) -> None:
        if not str(self.site_id or "").strip():
            raise InputValidationError("site id is required")

    # sites

    def site(self) -> Site:
        site = self.db.get(Site, self.site_id)
        if site is None:
            raise NotFoundError("site not found", details={"site_id": self.site_id})
        return site

    # courses

    def courses(self) -> Select:
        return select(Course).where(Course.site_id == self.site_id)

    def get_course(self, course_id: uuid.UUID) -> Course | None:
        return self.db.scalar(self.courses().where(Course.id == course_id))

    def require_course(self, course_id: uuid.UUID) -> Course:
        course = self.get_course(course_id)
        if course is None:
            raise NotFoundError("course not found", details={"course_id": str(course_id)})
        return course

    def find_course_by_title(self, title: str) -> Course | None:
        return self.db.scalar(self.courses().where(Course.title == title).order_by(Course.created_at.asc()))

    def modules(self, course_id: uuid.UUID) -> list[Module]:
        return list(
            self.db.scalars(
                select(Module)
                .join(Course, Course.id == Module.course_id)
                .where(Course.site_id == self.site_id, Module.course_id == course_id)
                .order_by(Module.order.asc())
            ).all()
        )

    def lessons_query(self, course_id: uuid.UUID) -> Select:
        return (
            select(Lesson)
            .join(Module, Module.id == Lesson.module_id)
            .join(Course, Course.id == Module.course_id)
            .where(Course.site_id == self.site_id, Module.course_id == course_id)
            .order_by(Module.order.asc(), Lesson.order.asc())
        )

    def ordered_lessons(self, course_id: uuid.UUID) -> list[Lesson]:
        return list(self.db.scalars(self.lessons_query(course_id)).all())

    def lesson_ids(self, course_id: uuid.UUID) -> list[uuid.UUID]:
        return [l.id for l in self.ordered_lessons(course_id)]

    def require_lesson(self, course_id: uuid.UUID, lesson_id: uuid.UUID) -> Lesson:
        lesson = self.db.scalar(self.lessons_query(course_id).where(Lesson.id == lesson_id))
        if lesson is None:
            raise NotFoundError("lesson not found", details={"lesson_id": str(lesson_id), "course_id": str(course_id)})
        return lesson

    # users

    def users(self) -> Select:
        return select(User).where(User.site_id == self.site_id)

    def get_user(self, user_id: uuid.UUID) -> User | None:
        return self.db.scalar(self.users().where(User.id == user_id))

    def require_user(self, user_id: uuid.UUID) -> User:
        user = self.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found", details={"user_id": str(user_id)})
        return user

    def find_user_by_name(self, name: str) -> User | None:
        return self.db.scalar(self.users().where(User.name == name))

    def is_enrolled(self, user_id: uuid.UUID, course_id: uuid.UUID) -> bool:
        row = self.db.scalar(
            select(Enrollment)
            .join(Course, Course.id == Enrollment.course_id)
            .where(Course.site_id == self.site_id, Enrollment.user_id == user_id, Enrollment.course_id == course_id)
        )
        return row is not None

    # signatories

    def signatories(self) -> Select:
        return select(Signatory).where(or_(Signatory.site_id == self.site_id, Signatory.site_id.is_(None)))

    def course_signatory_ids(self, course_id: uuid.UUID) -> list[uuid.UUID]:
        return list(
            self.db.scalars(
                select(CourseSignatory.signatory_id)
                .join(Course, Course.id == CourseSignatory.course_id)
                .where(Course.site_id == self.site_id, CourseSignatory.course_id == course_id)
            ).all()
        )

    def resolve_signatories(self, ids: Iterable[uuid.UUID], *, course_id: uuid.UUID | None = None) -> list[Signatory]:
        """Load signatories in the order given.

        Visible: this site's pool, global signatories, and signatories already
        linked to ``course_id``. Unknown ids raise NotFoundError.
        """
        wanted = list(dict.fromkeys(ids))
        if not wanted:
            return []

        q = select(Signatory).where(Signatory.id.in_(wanted))
        visible = or_(Signatory.site_id == self.site_id, Signatory.site_id.is_(None))
        if course_id is not None:
            visible = or_(visible, Signatory.id.in_(self.course_signatory_ids(course_id)))
        found = {s.id: s for s in self.db.scalars(q.where(visible)).all()}

        missing = [str(i) for i in wanted if i not in found]
        if missing:
            raise NotFoundError("signatory not found", details={"signatory_ids": missing, "site_id": self.site_id})
        return [found[i] for i in wanted]

    # certificates

    def certificates(self) -> Select:
        return select(Certificate).where(Certificate.site_id == self.site_id)


def open_site_scope(db: Session, site_id: str | None) -> SiteScope:
    """Resolve a site id into a scope; unknown sites are rejected."""
    sid = str(site_id or "").strip()
    if not sid:
        raise InputValidationError("site id is required")
    if db.get(Site, sid) is None:
        raise InputValidationError("invalid site specified", details={"site_id": sid})
    return SiteScope(site_id=sid, db=db)
