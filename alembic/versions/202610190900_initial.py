"""initial schema

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


TRANSACTION_TYPE = sa.Enum("REVENUE", "EXPENSE", name="transactiontype")
RECORD_STATUS = sa.Enum("ACTIVE", "DELETED", name="recordstatus")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("first_name", sa.String(length=100), nullable=False),
        sa.Column("last_name", sa.String(length=100), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column(
            "role", sa.Enum("USER", "ADMIN", name="userrole"), nullable=False
        ),
        sa.Column("avatar_url", sa.String(length=500)),
        sa.Column(
            "status",
            sa.Enum("ACTIVE", "SUSPENDED", name="userstatus"),
            nullable=False,
        ),
        *_timestamps(),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("type", TRANSACTION_TYPE, nullable=False),
        sa.Column("color", sa.String(length=9)),
        sa.Column("icon", sa.String(length=32)),
        sa.Column("budget_limit_cents", sa.Integer()),
        sa.Column("status", RECORD_STATUS, nullable=False),
        *_timestamps(),
        sa.CheckConstraint(
            "budget_limit_cents IS NULL OR budget_limit_cents >= 0",
            name="ck_categories_budget_positive",
        ),
    )
    op.create_index(
        "uq_category_user_type_name_active",
        "categories",
        ["user_id", "type", "name"],
        unique=True,
        sqlite_where=sa.text("status = 'ACTIVE'"),
        postgresql_where=sa.text("status = 'ACTIVE'"),
    )
    op.create_index("ix_categories_user_status", "categories", ["user_id", "status"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("type", TRANSACTION_TYPE, nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("description", sa.Text()),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("status", RECORD_STATUS, nullable=False),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "date"])
    op.create_index(
        "ix_transactions_user_category_date",
        "transactions",
        ["user_id", "category_id", "date"],
    )
    op.create_index(
        "ix_transactions_user_type_date", "transactions", ["user_id", "type", "date"]
    )

    op.create_table(
        "budget_alerts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "type",
            sa.Enum(
                "BUDGET_EXCEEDED",
                "THRESHOLD_REACHED",
                "LARGE_EXPENSE",
                name="alerttype",
            ),
            nullable=False,
        ),
        sa.Column(
            "source_type",
            sa.Enum("GLOBAL", "CATEGORY", "TRANSACTION", name="alertsource"),
            nullable=False,
        ),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("transaction_id", sa.Integer(), sa.ForeignKey("transactions.id")),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("amount_cents", sa.Integer()),
        sa.Column("threshold_cents", sa.Integer()),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("status", RECORD_STATUS, nullable=False),
        sa.Column("dedup_key", sa.String(length=120)),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "dedup_key", name="uq_alert_user_dedup_key"),
    )
    op.create_index(
        "ix_alerts_user_status_read", "budget_alerts", ["user_id", "status", "is_read"]
    )

    op.create_table(
        "financial_recommendations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "type",
            sa.Enum(
                "BUDGET_ALERT",
                "SPENDING_PATTERN",
                "SAVING_OPPORTUNITY",
                "DEBT_REDUCTION",
                "INVESTMENT_SUGGESTION",
                "CATEGORY_OPTIMIZATION",
                "SUBSCRIPTION_REVIEW",
                "INCOME_OPTIMIZATION",
                "GOAL_PROGRESSION",
                "SYSTEM_SUGGESTION",
                name="recommendationtype",
            ),
            nullable=False,
        ),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    )
    op.create_index(
        "ix_recommendations_user_type", "financial_recommendations", ["user_id", "type"]
    )

    op.create_table(
        "chat_messages",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "role", sa.Enum("USER", "ASSISTANT", name="chatrole"), nullable=False
        ),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_chat_messages_user_created", "chat_messages", ["user_id", "created_at"]
    )

    op.create_table(
        "reports",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("report_type", sa.String(length=40), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("total_income_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "total_expense_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("balance_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("file_path", sa.String(length=500)),
        sa.Column("status", RECORD_STATUS, nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_reports_user_created", "reports", ["user_id", "created_at"])

    op.create_table(
        "password_reset_tokens",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("token", sa.String(length=64), nullable=False, unique=True),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("PENDING", "USED", name="resettokenstatus"),
            nullable=False,
        ),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        *_timestamps(),
    )


def downgrade():
    op.drop_table("password_reset_tokens")
    op.drop_index("ix_reports_user_created", table_name="reports")
    op.drop_table("reports")
    op.drop_index("ix_chat_messages_user_created", table_name="chat_messages")
    op.drop_table("chat_messages")
    op.drop_index("ix_recommendations_user_type", table_name="financial_recommendations")
    op.drop_table("financial_recommendations")
    op.drop_index("ix_alerts_user_status_read", table_name="budget_alerts")
    op.drop_table("budget_alerts")
    op.drop_index("ix_transactions_user_type_date", table_name="transactions")
    op.drop_index("ix_transactions_user_category_date", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_categories_user_status", table_name="categories")
    op.drop_index("uq_category_user_type_name_active", table_name="categories")
    op.drop_table("categories")
    op.drop_table("users")
