"""create courses, modules, lessons and signatories

Revision ID: 0002
Revises: 0001
Create Date: 2026-10-19

"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0002"
down_revision = "0001"
branch_labels = None
depends_on = None


lesson_type_enum = sa.Enum("video", "document", "quiz", name="lessontype")


def upgrade() -> None:
    op.create_table(
        "courses",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("site_id", sa.String(length=64), sa.ForeignKey("sites.id"), nullable=False),
        sa.Column("title", sa.String(length=300), nullable=False),
        sa.Column("description", sa.String(length=5000), nullable=False, server_default=""),
        sa.Column("category", sa.String(length=200), nullable=True),
        sa.Column("image_path", sa.String(length=1000), nullable=True),
        sa.Column("venue", sa.String(length=300), nullable=True),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_internal", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("is_public", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("price", sa.Float(), nullable=True),
        sa.Column("pre_test_content", sa.Text(), nullable=True),
        sa.Column("pre_test_passing_rate", sa.Integer(), nullable=True),
        sa.Column("final_assessment_content", sa.Text(), nullable=True),
        sa.Column("final_assessment_passing_rate", sa.Integer(), nullable=True),
        sa.Column("final_assessment_max_attempts", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("site_id", "title", name="uq_courses_site_title"),
    )
    op.create_index("ix_courses_site_id", "courses", ["site_id"], unique=False)
    op.create_index("ix_courses_title", "courses", ["title"], unique=False)

    op.create_table(
        "modules",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("course_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("courses.id"), nullable=False),
        sa.Column("title", sa.String(length=300), nullable=False),
        sa.Column("order", sa.Integer(), nullable=False),
    )
    op.create_index("ix_modules_course_id", "modules", ["course_id"], unique=False)

    op.create_table(
        "lessons",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("module_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("modules.id"), nullable=False),
        sa.Column("title", sa.String(length=300), nullable=False),
        sa.Column("type", lesson_type_enum, nullable=False),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("image_path", sa.String(length=1000), nullable=True),
        sa.Column("document_path", sa.String(length=1000), nullable=True),
        sa.Column("order", sa.Integer(), nullable=False),
    )
    op.create_index("ix_lessons_module_id", "lessons", ["module_id"], unique=False)

    op.create_table(
        "signatories",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("site_id", sa.String(length=64), sa.ForeignKey("sites.id"), nullable=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("position", sa.String(length=200), nullable=False),
        sa.Column("signature_image_path", sa.String(length=1000), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_signatories_site_id", "signatories", ["site_id"], unique=False)

    op.create_table(
        "course_signatories",
        sa.Column("course_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("courses.id"), primary_key=True, nullable=False),
        sa.Column("signatory_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("signatories.id"), primary_key=True, nullable=False),
    )


def downgrade() -> None:
    op.drop_table("course_signatories")
    op.drop_index("ix_signatories_site_id", table_name="signatories")
    op.drop_table("signatories")
    op.drop_index("ix_lessons_module_id", table_name="lessons")
    op.drop_table("lessons")
    op.drop_index("ix_modules_course_id", table_name="modules")
    op.drop_table("modules")
    op.drop_index("ix_courses_title", table_name="courses")
    op.drop_index("ix_courses_site_id", table_name="courses")
    op.drop_table("courses")
    op.execute("DROP TYPE IF EXISTS lessontype")
