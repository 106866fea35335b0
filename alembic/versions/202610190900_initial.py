"""initial ledger schema

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    transaction_type = sa.Enum("income", "expense", name="transactiontype")

    op.create_table(
        "categories",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("type", transaction_type, nullable=False),
        sa.Column("color", sa.String(length=9), nullable=False),
        sa.Column("is_system", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "counts_toward_savings",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column("budget_limit_cents", sa.Integer()),
        sa.Column("order", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.CheckConstraint(
            "budget_limit_cents IS NULL OR budget_limit_cents >= 0",
            name="ck_category_budget_positive",
        ),
    )

    op.create_table(
        "subcategories",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column(
            "category_id",
            sa.String(length=64),
            sa.ForeignKey("categories.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_index("ix_subcategories_category", "subcategories", ["category_id"])

    op.create_table(
        "tags",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=50), nullable=False, unique=True),
        *_timestamps(),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("type", transaction_type, nullable=False),
        sa.Column(
            "category_id",
            sa.String(length=64),
            sa.ForeignKey("categories.id"),
            nullable=False,
        ),
        sa.Column("subcategory_id", sa.String(length=64)),
        sa.Column("is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("origin_rule_id", sa.String(length=64)),
        sa.Column("occurrence_date", sa.Date()),
        *_timestamps(),
        sa.UniqueConstraint(
            "origin_rule_id", "occurrence_date", name="uq_txn_origin_occurrence"
        ),
        sa.CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )
    op.create_index("ix_transactions_date", "transactions", ["date"])
    op.create_index(
        "ix_transactions_category_sub",
        "transactions",
        ["category_id", "subcategory_id"],
    )

    op.create_table(
        "recurring_rules",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("type", transaction_type, nullable=False),
        sa.Column(
            "frequency",
            sa.Enum("weekly", "monthly", "yearly", name="frequency"),
            nullable=False,
        ),
        sa.Column("next_due_date", sa.Date(), nullable=False),
        sa.Column("auto_pay", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "category_id",
            sa.String(length=64),
            sa.ForeignKey("categories.id"),
            nullable=False,
        ),
        sa.Column("subcategory_id", sa.String(length=64)),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_rule_amount_positive"),
    )
    op.create_index(
        "ix_recurring_rules_due", "recurring_rules", ["auto_pay", "next_due_date"]
    )

    op.create_table(
        "transaction_tags",
        sa.Column(
            "transaction_id",
            sa.String(length=64),
            sa.ForeignKey("transactions.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("tag_id", sa.Integer(), sa.ForeignKey("tags.id"), primary_key=True),
    )
    op.create_table(
        "recurring_rule_tags",
        sa.Column(
            "rule_id",
            sa.String(length=64),
            sa.ForeignKey("recurring_rules.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("tag_id", sa.Integer(), sa.ForeignKey("tags.id"), primary_key=True),
    )

    op.create_table(
        "app_settings",
        sa.Column("key", sa.String(length=64), primary_key=True),
        sa.Column("value", sa.Text(), nullable=False),
    )


def downgrade():
    op.drop_table("app_settings")
    op.drop_table("recurring_rule_tags")
    op.drop_table("transaction_tags")
    op.drop_index("ix_recurring_rules_due", table_name="recurring_rules")
    op.drop_table("recurring_rules")
    op.drop_index("ix_transactions_category_sub", table_name="transactions")
    op.drop_index("ix_transactions_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("tags")
    op.drop_index("ix_subcategories_category", table_name="subcategories")
    op.drop_table("subcategories")
    op.drop_table("categories")
