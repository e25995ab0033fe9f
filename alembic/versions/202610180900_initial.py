"""initial ledger schema

Revision ID: 202610180900
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610180900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("account_number", sa.String(length=34)),
        sa.Column(
            "type",
            sa.Enum("current", "savings", "credit", name="accounttype"),
            nullable=False,
        ),
        sa.Column(
            "opening_balance_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "current_balance_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("next_sequence", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_id", "account_number", name="uq_account_user_number"),
        sa.CheckConstraint("next_sequence > 0", name="ck_account_sequence_positive"),
    )
    op.create_index("ix_accounts_user", "accounts", ["user_id"])

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type",
            sa.Enum("income", "expense", "neutral", name="categorytype"),
            nullable=False,
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_id", "name", name="uq_category_user_name"),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=False),
        sa.Column("debit_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("credit_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("balance_after_cents", sa.Integer()),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column(
            "is_transfer", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "linked_transaction_id", sa.Integer(), sa.ForeignKey("transactions.id")
        ),
        sa.Column("notes", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("account_id", "sequence", name="uq_txn_account_sequence"),
        sa.CheckConstraint("debit_cents >= 0", name="ck_transactions_debit_positive"),
        sa.CheckConstraint(
            "credit_cents >= 0", name="ck_transactions_credit_positive"
        ),
    )
    op.create_index(
        "ix_transactions_ledger_order",
        "transactions",
        ["account_id", "date", "sequence", "id"],
    )
    op.create_index("ix_transactions_category", "transactions", ["category_id"])

    op.create_table(
        "category_rules",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("pattern", sa.String(length=200), nullable=False),
        sa.Column("compiled_pattern", sa.Text(), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_category_rules_user_active_priority",
        "category_rules",
        ["user_id", "is_active", "priority", "id"],
    )

    op.create_table(
        "recurring_patterns",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("description_pattern", sa.String(length=255), nullable=False),
        sa.Column("merchant_name", sa.String(length=120)),
        sa.Column(
            "direction", sa.Enum("debit", "credit", name="direction"), nullable=False
        ),
        sa.Column("typical_amount_cents", sa.Integer(), nullable=False),
        sa.Column("typical_day", sa.Integer()),
        sa.Column(
            "frequency",
            sa.Enum(
                "weekly",
                "fortnightly",
                "monthly",
                "quarterly",
                "yearly",
                name="frequency",
            ),
            nullable=False,
        ),
        sa.Column(
            "is_subscription", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("last_seen", sa.Date()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "typical_amount_cents >= 0", name="ck_recurring_amount_positive"
        ),
    )
    op.create_index("ix_recurring_patterns_user", "recurring_patterns", ["user_id"])

    op.create_table(
        "recurring_pattern_transactions",
        sa.Column(
            "pattern_id",
            sa.Integer(),
            sa.ForeignKey("recurring_patterns.id"),
            primary_key=True,
        ),
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id"),
            primary_key=True,
            unique=True,
        ),
    )

    op.create_table(
        "anomalies",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("transaction_id", sa.Integer(), sa.ForeignKey("transactions.id")),
        sa.Column("anomaly_type", sa.String(length=50), nullable=False),
        sa.Column(
            "severity",
            sa.Enum("low", "medium", "high", name="severity"),
            nullable=False,
        ),
        sa.Column("description", sa.Text()),
        sa.Column(
            "is_dismissed", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("detected_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_anomalies_user", "anomalies", ["user_id"])


def downgrade():
    op.drop_index("ix_anomalies_user", table_name="anomalies")
    op.drop_table("anomalies")
    op.drop_table("recurring_pattern_transactions")
    op.drop_index("ix_recurring_patterns_user", table_name="recurring_patterns")
    op.drop_table("recurring_patterns")
    op.drop_index("ix_category_rules_user_active_priority", table_name="category_rules")
    op.drop_table("category_rules")
    op.drop_index("ix_transactions_category", table_name="transactions")
    op.drop_index("ix_transactions_ledger_order", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("categories")
    op.drop_index("ix_accounts_user", table_name="accounts")
    op.drop_table("accounts")
