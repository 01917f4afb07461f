"""initial schema

Revision ID: 202610190000
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190000"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.String(length=128), primary_key=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "recurring_templates",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column(
            "user_id", sa.String(length=128), sa.ForeignKey("users.id"), nullable=False
        ),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_recurring_templates_user_id", "recurring_templates", ["user_id"]
    )

    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column(
            "user_id", sa.String(length=128), sa.ForeignKey("users.id"), nullable=False
        ),
        sa.Column("month", sa.String(length=3), nullable=False),
        sa.Column("day_key", sa.String(length=10), nullable=False),
        sa.Column("date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("template_id", sa.String(length=64)),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_ledger_entries_user_month_day",
        "ledger_entries",
        ["user_id", "month", "day_key"],
    )
    op.create_index(
        "ix_ledger_entries_template_id", "ledger_entries", ["template_id"]
    )


def downgrade():
    op.drop_index("ix_ledger_entries_template_id", table_name="ledger_entries")
    op.drop_index("ix_ledger_entries_user_month_day", table_name="ledger_entries")
    op.drop_table("ledger_entries")
    op.drop_index("ix_recurring_templates_user_id", table_name="recurring_templates")
    op.drop_table("recurring_templates")
    op.drop_table("users")
