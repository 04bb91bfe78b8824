"""add transfer_role to transfer legs

Revision ID: 202610171000
Revises: 202610170900
Create Date: 2026-10-17 10:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610171000"
down_revision = "202610170900"
branch_labels = None
depends_on = None


# partner leg: either side of the link may point at the other
_PARTNER = """
    other.type = 'transfer'
    AND other.id != transactions.id
    AND (
        other.id = transactions.linked_transaction_id
        OR other.linked_transaction_id = transactions.id
    )
"""


def upgrade():
    with op.batch_alter_table("transactions") as batch_op:
        batch_op.add_column(
            sa.Column(
                "transfer_role",
                sa.Enum("withdrawal", "deposit", name="transferrole"),
                nullable=True,
            )
        )

    # the earlier-created leg of each pair was the withdrawal
    op.execute(
        f"""
        UPDATE transactions SET transfer_role = 'withdrawal'
        WHERE type = 'transfer'
          AND transfer_role IS NULL
          AND EXISTS (
            SELECT 1 FROM transactions AS other
            WHERE {_PARTNER}
              AND (
                transactions.created_at < other.created_at
                OR (
                    transactions.created_at = other.created_at
                    AND transactions.id < other.id
                )
              )
          )
        """
    )
    op.execute(
        f"""
        UPDATE transactions SET transfer_role = 'deposit'
        WHERE type = 'transfer'
          AND transfer_role IS NULL
          AND EXISTS (SELECT 1 FROM transactions AS other WHERE {_PARTNER})
        """
    )


def downgrade():
    with op.batch_alter_table("transactions") as batch_op:
        batch_op.drop_column("transfer_role")
