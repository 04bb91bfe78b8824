"""add transaction templates

Revision ID: 202610181000
Revises: 202610171000
Create Date: 2026-10-18 10:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610181000"
down_revision = "202610171000"
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "transaction_templates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("amount_cents", sa.Integer()),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("categories.id", ondelete="SET NULL"),
        ),
        sa.Column(
            "payment_method_id",
            sa.Integer(),
            sa.ForeignKey("payment_methods.id", ondelete="SET NULL"),
        ),
        sa.Column("description", sa.Text()),
        sa.Column(
            "is_favorite", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.CheckConstraint(
            "amount_cents IS NULL OR amount_cents > 0",
            name="ck_template_amount_positive",
        ),
        sa.UniqueConstraint("user_id", "name", name="uq_template_user_name"),
    )
    op.create_index(
        "ix_transaction_templates_user_favorite",
        "transaction_templates",
        ["user_id", "is_favorite"],
    )

    op.create_table(
        "template_tags",
        sa.Column(
            "template_id",
            sa.Integer(),
            sa.ForeignKey("transaction_templates.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "tag_id",
            sa.Integer(),
            sa.ForeignKey("tags.id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )


def downgrade():
    op.drop_table("template_tags")
    op.drop_index(
        "ix_transaction_templates_user_favorite", table_name="transaction_templates"
    )
    op.drop_table("transaction_templates")
