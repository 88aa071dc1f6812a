"""create certificates

Revision ID: 0004
Revises: 0003
Create Date: 2026-10-19

"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0004"
down_revision = "0003"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "certificates",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("site_id", sa.String(length=64), sa.ForeignKey("sites.id"), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("course_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("courses.id"), nullable=True),
        sa.Column("type", sa.Enum("completion", "recognition", name="certificatetype"), nullable=False),
        sa.Column("certificate_number", sa.String(length=64), nullable=False),
        sa.Column("completion_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("certificate_number", name="uq_certificates_certificate_number"),
    )
    op.create_index("ix_certificates_site_id", "certificates", ["site_id"], unique=False)
    op.create_index("ix_certificates_user_id", "certificates", ["user_id"], unique=False)
    op.create_index("ix_certificates_course_id", "certificates", ["course_id"], unique=False)
    op.create_index("ix_certificates_type", "certificates", ["type"], unique=False)

    op.create_table(
        "certificate_signatories",
        sa.Column("certificate_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("certificates.id"), primary_key=True, nullable=False),
        sa.Column("signatory_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("signatories.id"), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("position", sa.String(length=200), nullable=False),
        sa.Column("signature_image_path", sa.String(length=1000), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("certificate_signatories")
    op.drop_index("ix_certificates_type", table_name="certificates")
    op.drop_index("ix_certificates_course_id", table_name="certificates")
    op.drop_index("ix_certificates_user_id", table_name="certificates")
    op.drop_index("ix_certificates_site_id", table_name="certificates")
    op.drop_table("certificates")
    op.execute("DROP TYPE IF EXISTS certificatetype")
