"""create enrollments, transactions, progress and attempts

Revision ID: 0003
Revises: 0002
Create Date: 2026-10-19

"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0003"
down_revision = "0002"
branch_labels = None
depends_on = None


transaction_status_enum = sa.Enum("pending", "completed", "failed", name="transactionstatus")


def _attempt_columns() -> list[sa.Column]:
    return [
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("site_id", sa.String(length=64), sa.ForeignKey("sites.id"), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("course_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("courses.id"), nullable=False),
        sa.Column("score", sa.Integer(), nullable=False),
        sa.Column("total_questions", sa.Integer(), nullable=False),
        sa.Column("attempted_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    ]


def _index_attempts(table: str) -> None:
    for col in ("site_id", "user_id", "course_id"):
        op.create_index(f"ix_{table}_{col}", table, [col], unique=False)


def upgrade() -> None:
    op.create_table(
        "enrollments",
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), primary_key=True, nullable=False),
        sa.Column("course_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("courses.id"), primary_key=True, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )

    op.create_table(
        "transactions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("site_id", sa.String(length=64), sa.ForeignKey("sites.id"), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("course_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("courses.id"), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("currency", sa.String(length=8), nullable=False),
        sa.Column("status", transaction_status_enum, nullable=False, server_default="pending"),
        sa.Column("gateway", sa.String(length=50), nullable=False, server_default="paymongo"),
        sa.Column("gateway_transaction_id", sa.String(length=200), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_transactions_site_id", "transactions", ["site_id"], unique=False)
    op.create_index("ix_transactions_user_id", "transactions", ["user_id"], unique=False)
    op.create_index("ix_transactions_course_id", "transactions", ["course_id"], unique=False)
    op.create_index("ix_transactions_status", "transactions", ["status"], unique=False)
    op.create_index("ix_transactions_gateway_transaction_id", "transactions", ["gateway_transaction_id"], unique=True)

    op.create_table(
        "user_progress",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("lesson_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("lessons.id"), nullable=False),
        sa.Column("completed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("user_id", "lesson_id", name="uq_user_progress_user_lesson"),
    )
    op.create_index("ix_user_progress_user_id", "user_progress", ["user_id"], unique=False)
    op.create_index("ix_user_progress_lesson_id", "user_progress", ["lesson_id"], unique=False)

    op.create_table(
        "quiz_attempts",
        *_attempt_columns(),
        sa.Column("lesson_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("lessons.id"), nullable=False),
    )
    _index_attempts("quiz_attempts")
    op.create_index("ix_quiz_attempts_lesson_id", "quiz_attempts", ["lesson_id"], unique=False)

    for table in ("pre_test_attempts", "final_assessment_attempts"):
        op.create_table(
            table,
            *_attempt_columns(),
            sa.Column("passed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        )
        _index_attempts(table)


def downgrade() -> None:
    for table in ("final_assessment_attempts", "pre_test_attempts", "quiz_attempts"):
        op.drop_table(table)
    op.drop_table("user_progress")
    op.drop_table("transactions")
    op.drop_table("enrollments")
    op.execute("DROP TYPE IF EXISTS transactionstatus")
