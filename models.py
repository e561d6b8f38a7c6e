from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


def _value_enum(enum_cls: type[Enum], name: str) -> SAEnum:
    return SAEnum(
        enum_cls,
        name=name,
        values_callable=lambda members: [member.value for member in members],
    )


class TransactionType(str, Enum):
    revenue = "REVENUE"
    expense = "EXPENSE"


class RecordStatus(str, Enum):
    active = "ACTIVE"
    deleted = "DELETED"


class UserRole(str, Enum):
    user = "USER"
    admin = "ADMIN"


class UserStatus(str, Enum):
    active = "ACTIVE"
    suspended = "SUSPENDED"


class AlertType(str, Enum):
    budget_exceeded = "BUDGET_EXCEEDED"
    threshold_reached = "THRESHOLD_REACHED"
    large_expense = "LARGE_EXPENSE"


class AlertSource(str, Enum):
    global_ = "GLOBAL"
    category = "CATEGORY"
    transaction = "TRANSACTION"


class RecommendationType(str, Enum):
    budget_alert = "BUDGET_ALERT"
    spending_pattern = "SPENDING_PATTERN"
    saving_opportunity = "SAVING_OPPORTUNITY"
    debt_reduction = "DEBT_REDUCTION"
    investment_suggestion = "INVESTMENT_SUGGESTION"
    category_optimization = "CATEGORY_OPTIMIZATION"
    subscription_review = "SUBSCRIPTION_REVIEW"
    income_optimization = "INCOME_OPTIMIZATION"
    goal_progression = "GOAL_PROGRESSION"
    system_suggestion = "SYSTEM_SUGGESTION"


class ChatRole(str, Enum):
    user = "USER"
    assistant = "ASSISTANT"


class ResetTokenStatus(str, Enum):
    pending = "PENDING"
    used = "USED"


TRANSACTION_TYPE_ENUM = _value_enum(TransactionType, "transactiontype")
RECORD_STATUS_ENUM = _value_enum(RecordStatus, "recordstatus")


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[UserRole] = mapped_column(
        _value_enum(UserRole, "userrole"), nullable=False, default=UserRole.user
    )
    avatar_url: Mapped[Optional[str]] = mapped_column(String(500))
    status: Mapped[UserStatus] = mapped_column(
        _value_enum(UserStatus, "userstatus"),
        nullable=False,
        default=UserStatus.active,
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[TransactionType] = mapped_column(TRANSACTION_TYPE_ENUM, nullable=False)
    color: Mapped[Optional[str]] = mapped_column(String(9))
    icon: Mapped[Optional[str]] = mapped_column(String(32))
    budget_limit_cents: Mapped[Optional[int]] = mapped_column(Integer)
    status: Mapped[RecordStatus] = mapped_column(
        RECORD_STATUS_ENUM, nullable=False, default=RecordStatus.active
    )

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category"
    )

    __table_args__ = (
        Index(
            "uq_category_user_type_name_active",
            "user_id",
            "type",
            "name",
            unique=True,
            sqlite_where=text("status = 'ACTIVE'"),
            postgresql_where=text("status = 'ACTIVE'"),
        ),
        Index("ix_categories_user_status", "user_id", "status"),
        CheckConstraint(
            "budget_limit_cents IS NULL OR budget_limit_cents >= 0",
            name="ck_categories_budget_positive",
        ),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    type: Mapped[TransactionType] = mapped_column(TRANSACTION_TYPE_ENUM, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    description: Mapped[Optional[str]] = mapped_column(Text)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[RecordStatus] = mapped_column(
        RECORD_STATUS_ENUM, nullable=False, default=RecordStatus.active
    )

    category: Mapped[Optional["Category"]] = relationship(
        "Category", back_populates="transactions"
    )

    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_user_category_date", "user_id", "category_id", "date"),
        Index("ix_transactions_user_type_date", "user_id", "type", "date"),
        CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )


class BudgetAlert(Base, TimestampMixin):
    __tablename__ = "budget_alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    type: Mapped[AlertType] = mapped_column(
        _value_enum(AlertType, "alerttype"), nullable=False
    )
    source_type: Mapped[AlertSource] = mapped_column(
        _value_enum(AlertSource, "alertsource"),
        nullable=False,
        default=AlertSource.global_,
    )
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    transaction_id: Mapped[Optional[int]] = mapped_column(ForeignKey("transactions.id"))
    message: Mapped[str] = mapped_column(Text, nullable=False)
    amount_cents: Mapped[Optional[int]] = mapped_column(Integer)
    threshold_cents: Mapped[Optional[int]] = mapped_column(Integer)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status: Mapped[RecordStatus] = mapped_column(
        RECORD_STATUS_ENUM, nullable=False, default=RecordStatus.active
    )
    # Set only while the alert is unread and active.
    dedup_key: Mapped[Optional[str]] = mapped_column(String(120))

    category: Mapped[Optional["Category"]] = relationship("Category")
    transaction: Mapped[Optional["Transaction"]] = relationship("Transaction")

    __table_args__ = (
        UniqueConstraint("user_id", "dedup_key", name="uq_alert_user_dedup_key"),
        Index("ix_alerts_user_status_read", "user_id", "status", "is_read"),
    )


class FinancialRecommendation(Base, TimestampMixin):
    __tablename__ = "financial_recommendations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    type: Mapped[RecommendationType] = mapped_column(
        _value_enum(RecommendationType, "recommendationtype"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    category: Mapped[Optional["Category"]] = relationship("Category")

    __table_args__ = (Index("ix_recommendations_user_type", "user_id", "type"),)


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    role: Mapped[ChatRole] = mapped_column(
        _value_enum(ChatRole, "chatrole"), nullable=False
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (Index("ix_chat_messages_user_created", "user_id", "created_at"),)


class Report(Base, TimestampMixin):
    __tablename__ = "reports"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    report_type: Mapped[str] = mapped_column(String(40), nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    total_income_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_expense_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    file_path: Mapped[Optional[str]] = mapped_column(String(500))
    status: Mapped[RecordStatus] = mapped_column(
        RECORD_STATUS_ENUM, nullable=False, default=RecordStatus.active
    )

    __table_args__ = (Index("ix_reports_user_created", "user_id", "created_at"),)


class PasswordResetToken(Base, TimestampMixin):
    __tablename__ = "password_reset_tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    token: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[ResetTokenStatus] = mapped_column(
        _value_enum(ResetTokenStatus, "resettokenstatus"),
        nullable=False,
        default=ResetTokenStatus.pending,
    )
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)

    user: Mapped["User"] = relationship("User")
