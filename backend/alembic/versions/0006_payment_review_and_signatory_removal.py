"""payment review and signatory removal

Revision ID: 0006
Revises: 0005
Create Date: 2026-10-19

"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0006"
down_revision = "0005"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # ALTER TYPE ... ADD VALUE cannot run inside the migration transaction; recreate the type.
    op.execute("ALTER TABLE transactions ALTER COLUMN status DROP DEFAULT")
    op.execute("ALTER TYPE transactionstatus RENAME TO transactionstatus_old")
    op.execute("CREATE TYPE transactionstatus AS ENUM ('pending', 'completed', 'failed', 'rejected')")
    op.execute(
        "ALTER TABLE transactions ALTER COLUMN status TYPE transactionstatus USING status::text::transactionstatus"
    )
    op.execute("DROP TYPE transactionstatus_old")
    op.execute("ALTER TABLE transactions ALTER COLUMN status SET DEFAULT 'pending'")

    op.add_column(
        "transactions",
        sa.Column("rejection_reason", sa.Text(), nullable=True),
    )

    # Certificate signer snapshots keep the signatory id after the signatory is deleted.
    op.drop_constraint(
        "certificate_signatories_signatory_id_fkey",
        "certificate_signatories",
        type_="foreignkey",
    )


def downgrade() -> None:
    op.execute("DELETE FROM certificate_signatories WHERE signatory_id NOT IN (SELECT id FROM signatories)")
    op.create_foreign_key(
        "certificate_signatories_signatory_id_fkey",
        "certificate_signatories",
        "signatories",
        ["signatory_id"],
        ["id"],
    )

    op.drop_column("transactions", "rejection_reason")

    op.execute("UPDATE transactions SET status = 'failed' WHERE status = 'rejected'")
    op.execute("ALTER TABLE transactions ALTER COLUMN status DROP DEFAULT")
    op.execute("ALTER TYPE transactionstatus RENAME TO transactionstatus_old")
    op.execute("CREATE TYPE transactionstatus AS ENUM ('pending', 'completed', 'failed')")
    op.execute(
        "ALTER TABLE transactions ALTER COLUMN status TYPE transactionstatus USING status::text::transactionstatus"
    )
    op.execute("DROP TYPE transactionstatus_old")
    op.execute("ALTER TABLE transactions ALTER COLUMN status SET DEFAULT 'pending'")
