import enum
import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Enum, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from branchlms.db.base import Base, utcnow


class LessonType(str, enum.Enum):
    video = "video"
    document = "document"
    quiz = "quiz"


class Course(Base):
    __tablename__ = "courses"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    site_id: Mapped[str] = mapped_column(String(64), ForeignKey("sites.id"), index=True)

    title: Mapped[str] = mapped_column(String(300), index=True)
    description: Mapped[str] = mapped_column(String(5000), default="")
    category: Mapped[str | None] = mapped_column(String(200), nullable=True)
    image_path: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    venue: Mapped[str | None] = mapped_column(String(300), nullable=True)
    start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    is_internal: Mapped[bool] = mapped_column(Boolean, default=True)
    is_public: Mapped[bool] = mapped_column(Boolean, default=False)
    price: Mapped[float | None] = mapped_column(Float, nullable=True)

    # Question lists are stored as JSON text; see branchlms.schemas.content.
    pre_test_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    pre_test_passing_rate: Mapped[int | None] = mapped_column(Integer, nullable=True)

    final_assessment_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    final_assessment_passing_rate: Mapped[int | None] = mapped_column(Integer, nullable=True)
    final_assessment_max_attempts: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (UniqueConstraint("site_id", "title", name="uq_courses_site_title"),)

    @property
    def has_pre_test(self) -> bool:
        return bool((self.pre_test_content or "").strip())

    @property
    def has_final_assessment(self) -> bool:
        return bool((self.final_assessment_content or "").strip())


class Module(Base):
    __tablename__ = "modules"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    course_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("courses.id"), index=True)
    title: Mapped[str] = mapped_column(String(300))
    order: Mapped[int] = mapped_column(Integer)


class Lesson(Base):
    __tablename__ = "lessons"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    module_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("modules.id"), index=True)
    title: Mapped[str] = mapped_column(String(300))
    type: Mapped[LessonType] = mapped_column(Enum(LessonType))

    # video: URL, document: body text, quiz: JSON question list
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    image_path: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    document_path: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    order: Mapped[int] = mapped_column(Integer)


class CourseSignatory(Base):
    __tablename__ = "course_signatories"

    course_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("courses.id"), primary_key=True)
    signatory_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("signatories.id"), primary_key=True)
