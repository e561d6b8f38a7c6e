from __future__ import annotations

import logging
import math
import re
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape
from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from ai_client import ChatTurn
from config import get_settings
from errors import (
    AuthenticationFailed,
    NotFound,
    PermissionDenied,
    ServiceError,
    ValidationFailed,
)
from mailer import EmailDeliveryError
from models import (
    AlertSource,
    AlertType,
    BudgetAlert,
    Category,
    ChatMessage,
    ChatRole,
    FinancialRecommendation,
    PasswordResetToken,
    RecommendationType,
    RecordStatus,
    Report,
    ResetTokenStatus,
    Transaction,
    TransactionType,
    User,
    UserStatus,
)
from periods import (
    Period,
    current_month,
    local_today,
    month_start,
    resolve_dashboard_period,
    trailing_months,
)
from schemas import (
    REPORT_TYPES,
    AlertIn,
    CategoryIn,
    CategoryUpdateIn,
    ForgotPasswordIn,
    LoginIn,
    ProfileUpdateIn,
    RegisterIn,
    ReportRequest,
    ResetPasswordIn,
    TransactionIn,
    TransactionUpdateIn,
)
from security import create_access_token, hash_password, verify_password

if TYPE_CHECKING:  # pragma: no cover
    from ai_client import CompletionClient
    from mailer import Mailer
    from scheduler import TaskQueue
    from storage import MediaStorage


logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"

LARGE_EXPENSE_THRESHOLD_CENTS = 50_000
DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100

UNCATEGORIZED_NAME = "Uncategorized"
UNCATEGORIZED_COLOR = "#6B7280"
UNCATEGORIZED_ICON = "📁"

RESET_TOKEN_TTL = timedelta(hours=1)
FORGOT_PASSWORD_MESSAGE = "If the email exists, a password reset link has been sent"

FRENCH_MONTHS_SHORT = (
    "janv.",
    "févr.",
    "mars",
    "avr.",
    "mai",
    "juin",
    "juil.",
    "août",
    "sept.",
    "oct.",
    "nov.",
    "déc.",
)


def format_euros(cents: Optional[int]) -> str:
    value = (cents or 0) / 100
    return f"{value:,.2f}".replace(",", " ").replace(".", ",") + " €"


def _percent(part: int, whole: int) -> int:
    """Integer percentage rounded half up; 0 when `whole` is 0."""
    if whole <= 0:
        return 0
    return (part * 200 + whole) // (whole * 2)


# ---------------------------------------------------------------------------
# Pagination


@dataclass(frozen=True)
class Page:
    items: list
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.page_size else 0

    def meta(self) -> dict[str, int]:
        return {
            "total": self.total,
            "page": self.page,
            "page_size": self.page_size,
            "total_pages": self.total_pages,
        }


def clamp_page(
    page: Optional[int],
    page_size: Optional[int],
    default_size: int = DEFAULT_PAGE_SIZE,
) -> tuple[int, int]:
    page = max(int(page or 1), 1)
    size = int(page_size or default_size)
    return page, min(max(size, 1), MAX_PAGE_SIZE)


def paginate(
    session: Session,
    stmt,
    page: Optional[int] = None,
    page_size: Optional[int] = None,
    default_size: int = DEFAULT_PAGE_SIZE,
) -> Page:
    page, size = clamp_page(page, page_size, default_size)
    total = session.scalar(
        select(func.count()).select_from(stmt.order_by(None).subquery())
    )
    rows = session.scalars(stmt.offset((page - 1) * size).limit(size)).unique().all()
    return Page(list(rows), int(total or 0), page, size)


# ---------------------------------------------------------------------------
# Auth


class AuthService:
    def __init__(
        self,
        session: Session,
        *,
        mailer: Optional["Mailer"] = None,
        tasks: Optional["TaskQueue"] = None,
        storage: Optional["MediaStorage"] = None,
    ) -> None:
        self.session = session
        self.mailer = mailer
        self.tasks = tasks
        self.storage = storage

    def _queue_email(self, name: str, func: Callable, *args: object) -> None:
        if self.tasks is None or self.mailer is None:
            return
        self.tasks.submit(func, *args, name=name)

    def _save_avatar(self, avatar) -> Optional[str]:
        if avatar is None:
            return None
        if self.storage is None:
            raise ServiceError("Avatar storage is not configured")
        return self.storage.save(avatar, "avatars")

    def _discard_avatar(self, url: Optional[str]) -> None:
        if url and self.storage is not None:
            self.storage.delete(url)

    def register(self, data: RegisterIn, avatar=None) -> tuple[User, str]:
        existing = self.session.scalar(select(User.id).where(User.email == data.email))
        if existing:
            raise ValidationFailed("A user with this email already exists")

        avatar_url = self._save_avatar(avatar)
        try:
            user = User(
                first_name=data.first_name.strip(),
                last_name=data.last_name.strip(),
                email=data.email,
                password_hash=hash_password(data.password),
                avatar_url=avatar_url,
            )
            self.session.add(user)
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            self._discard_avatar(avatar_url)
            raise
        self.session.refresh(user)

        token = create_access_token(user.id, user.email, user.role.value)
        if self.mailer is not None:
            self._queue_email(
                f"welcome_email:{user.id}",
                self.mailer.send_welcome,
                user.email,
                user.full_name,
            )
        logger.info(f"user_registered: user_id={user.id}")
        return user, token

    def login(self, data: LoginIn) -> tuple[User, str]:
        user = self.session.scalar(select(User).where(User.email == data.email))
        if not user or not verify_password(data.password, user.password_hash):
            raise AuthenticationFailed("Invalid email or password")
        if user.status == UserStatus.suspended:
            raise PermissionDenied("Account suspended")
        token = create_access_token(user.id, user.email, user.role.value)
        logger.info(f"user_login: user_id={user.id}")
        return user, token

    def current_user(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise NotFound("User not found")
        return user

    def update_profile(self, user_id: int, data: ProfileUpdateIn, avatar=None) -> User:
        user = self.current_user(user_id)
        old_avatar = user.avatar_url
        new_avatar = self._save_avatar(avatar)
        try:
            if data.first_name:
                user.first_name = data.first_name.strip()
            if data.last_name:
                user.last_name = data.last_name.strip()
            if new_avatar:
                user.avatar_url = new_avatar
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            self._discard_avatar(new_avatar)
            raise

        if new_avatar and old_avatar:
            self._discard_avatar(old_avatar)
        self.session.refresh(user)
        return user

    def forgot_password(self, data: ForgotPasswordIn) -> str:
        user = self.session.scalar(select(User).where(User.email == data.email))
        if not user:
            logger.info("password_reset_requested: known_email=false")
            return FORGOT_PASSWORD_MESSAGE

        token = str(uuid.uuid4())
        expires_at = datetime.utcnow() + RESET_TOKEN_TTL
        row = self.session.scalar(
            select(PasswordResetToken).where(PasswordResetToken.email == data.email)
        )
        if row:
            row.token = token
            row.expires_at = expires_at
            row.status = ResetTokenStatus.pending
            row.user_id = user.id
        else:
            self.session.add(
                PasswordResetToken(
                    email=data.email,
                    token=token,
                    expires_at=expires_at,
                    user_id=user.id,
                )
            )
        self.session.commit()

        if self.mailer is None:
            raise ServiceError("Email delivery is not configured")
        try:
            self.mailer.send_password_reset(data.email, token)
        except EmailDeliveryError as exc:
            logger.error(f"password_reset_email_failed: user_id={user.id}")
            raise ServiceError("Unable to send the password reset email") from exc
        logger.info(f"password_reset_requested: known_email=true user_id={user.id}")
        return FORGOT_PASSWORD_MESSAGE

    def reset_password(self, data: ResetPasswordIn) -> User:
        row = self.session.scalar(
            select(PasswordResetToken)
            .options(joinedload(PasswordResetToken.user))
            .where(
                PasswordResetToken.token == data.token,
                PasswordResetToken.status == ResetTokenStatus.pending,
                PasswordResetToken.expires_at > datetime.utcnow(),
            )
        )
        if not row:
            raise ValidationFailed("Invalid or expired token")

        user = row.user
        user.password_hash = hash_password(data.new_password)
        row.status = ResetTokenStatus.used
        self.session.commit()

        if self.mailer is not None:
            self._queue_email(
                f"password_changed_email:{user.id}",
                self.mailer.send_password_changed,
                user.email,
                user.full_name,
            )
        logger.info(f"password_reset_completed: user_id={user.id}")
        return user


# ---------------------------------------------------------------------------
# Categories


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list(
        self,
        type: Optional[TransactionType] = None,
        page: Optional[int] = None,
        page_size: Optional[int] = None,
    ) -> Page:
        stmt = (
            select(Category)
            .where(
                Category.user_id == self.user_id,
                Category.status == RecordStatus.active,
            )
            .order_by(Category.created_at.desc(), Category.id.desc())
        )
        if type:
            stmt = stmt.where(Category.type == type)
        return paginate(self.session, stmt, page, page_size)

    def get(self, category_id: int) -> Category:
        category = self.session.scalar(
            select(Category).where(
                Category.id == category_id,
                Category.user_id == self.user_id,
                Category.status == RecordStatus.active,
            )
        )
        if not category:
            raise NotFound("Category not found")
        return category

    def _ensure_unique(
        self, name: str, type: TransactionType, exclude_id: Optional[int] = None
    ) -> None:
        stmt = select(Category.id).where(
            Category.user_id == self.user_id,
            Category.type == type,
            Category.name == name,
            Category.status == RecordStatus.active,
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        if self.session.scalar(stmt):
            raise ValidationFailed("A category with this name and type already exists")

    def _commit_unique(self) -> None:
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ValidationFailed(
                "A category with this name and type already exists"
            ) from exc

    def create(self, data: CategoryIn) -> Category:
        self._ensure_unique(data.name, data.type)
        category = Category(
            user_id=self.user_id,
            name=data.name,
            type=data.type,
            color=data.color,
            icon=data.icon,
            budget_limit_cents=data.budget_limit_cents,
        )
        self.session.add(category)
        self._commit_unique()
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryUpdateIn) -> Category:
        category = self.get(category_id)
        fields = data.model_fields_set

        new_name = data.name.strip() if data.name else category.name
        new_type = data.type or category.type
        if new_name != category.name or new_type != category.type:
            self._ensure_unique(new_name, new_type, exclude_id=category.id)

        category.name = new_name
        category.type = new_type
        if "color" in fields:
            category.color = data.color
        if "icon" in fields:
            category.icon = data.icon
        if "budget_limit_cents" in fields:
            category.budget_limit_cents = data.budget_limit_cents
        self._commit_unique()
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        category.status = RecordStatus.deleted
        self.session.commit()


# ---------------------------------------------------------------------------
# Transactions


TRANSACTION_STATUS_FILTERS = ("ACTIVE", "DELETED", "ALL")


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    category_id: Optional[int] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    search: Optional[str] = None
    status: str = "ACTIVE"


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list(
        self,
        filters: Optional[TransactionFilters] = None,
        page: Optional[int] = None,
        page_size: Optional[int] = None,
    ) -> Page:
        filters = filters or TransactionFilters()
        status = (filters.status or "ACTIVE").upper()
        if status not in TRANSACTION_STATUS_FILTERS:
            raise ValidationFailed("Invalid status filter")

        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        if status != "ALL":
            stmt = stmt.where(Transaction.status == RecordStatus(status))
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.category_id:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.start_date:
            stmt = stmt.where(Transaction.date >= filters.start_date)
        if filters.end_date:
            stmt = stmt.where(Transaction.date <= filters.end_date)
        if filters.search:
            like = f"%{filters.search.strip().lower()}%"
            matching_categories = select(Category.id).where(
                Category.user_id == self.user_id,
                func.lower(Category.name).like(like),
            )
            stmt = stmt.where(
                or_(
                    func.lower(func.coalesce(Transaction.description, "")).like(like),
                    Transaction.category_id.in_(matching_categories),
                )
            )
        return paginate(self.session, stmt, page, page_size)

    def get(self, transaction_id: int, *, include_deleted: bool = False) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id,
                Transaction.id == transaction_id,
            )
        )
        if not include_deleted:
            stmt = stmt.where(Transaction.status == RecordStatus.active)
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFound("Transaction not found")
        return txn

    def _check_category(self, category_id: int, txn_type: TransactionType) -> Category:
        category = CategoryService(self.session, self.user_id).get(category_id)
        if category.type != txn_type:
            raise ValidationFailed("Category type mismatch")
        return category

    def _refresh_alerts(self, txn_type: TransactionType, today: Optional[date]) -> None:
        if txn_type == TransactionType.expense:
            AlertService(self.session, self.user_id).generate_automatic_alerts(today)

    def create(self, data: TransactionIn, today: Optional[date] = None) -> Transaction:
        if data.category_id is not None:
            self._check_category(data.category_id, data.type)
        txn = Transaction(
            user_id=self.user_id,
            type=data.type,
            amount_cents=data.amount_cents,
            category_id=data.category_id,
            description=(data.description or "").strip() or None,
            date=data.date or today or local_today(),
        )
        self.session.add(txn)
        self.session.commit()
        logger.info(
            f"transaction_created: user_id={self.user_id} id={txn.id} "
            f"type={txn.type.value} amount_cents={txn.amount_cents}"
        )
        self._refresh_alerts(txn.type, today)
        return self.get(txn.id)

    def update(
        self,
        transaction_id: int,
        data: TransactionUpdateIn,
        today: Optional[date] = None,
    ) -> Transaction:
        txn = self.get(transaction_id)
        fields = data.model_fields_set

        new_type = data.type or txn.type
        new_category_id = data.category_id if "category_id" in fields else txn.category_id
        if new_category_id is not None and (
            new_category_id != txn.category_id or new_type != txn.type
        ):
            self._check_category(new_category_id, new_type)

        txn.type = new_type
        txn.category_id = new_category_id
        if data.amount_cents is not None:
            txn.amount_cents = data.amount_cents
        if "description" in fields:
            txn.description = (data.description or "").strip() or None
        if data.date is not None:
            txn.date = data.date
        self.session.commit()
        self._refresh_alerts(txn.type, today)
        return self.get(txn.id)

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        txn.status = RecordStatus.deleted
        self.session.commit()
        logger.info(f"transaction_deleted: user_id={self.user_id} id={txn.id}")

    def restore(self, transaction_id: int, today: Optional[date] = None) -> Transaction:
        txn = self.session.scalar(
            select(Transaction).where(
                Transaction.id == transaction_id,
                Transaction.user_id == self.user_id,
                Transaction.status == RecordStatus.deleted,
            )
        )
        if not txn:
            raise NotFound("Deleted transaction not found")
        txn.status = RecordStatus.active
        self.session.commit()
        self._refresh_alerts(txn.type, today)
        return self.get(txn.id)


# ---------------------------------------------------------------------------
# Alerts


ALERT_SORT_FIELDS = {
    "created_at": BudgetAlert.created_at,
    "updated_at": BudgetAlert.updated_at,
    "type": BudgetAlert.type,
    "amount_cents": BudgetAlert.amount_cents,
}


@dataclass
class AlertFilters:
    is_read: Optional[bool] = None
    type: Optional[AlertType] = None
    source_type: Optional[AlertSource] = None


def alert_dedup_key(alert_type: AlertType, subject: str, subject_id: int, day: date) -> str:
    return f"{alert_type.value}:{subject}:{subject_id}:{day:%Y-%m}"


class AlertService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list(
        self,
        filters: Optional[AlertFilters] = None,
        page: Optional[int] = None,
        page_size: Optional[int] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> Page:
        filters = filters or AlertFilters()
        column = ALERT_SORT_FIELDS.get(sort_by or "created_at")
        if column is None:
            raise ValidationFailed("Invalid sort field")
        if sort_order not in ("asc", "desc"):
            raise ValidationFailed("Invalid sort order")
        ordering = column.asc() if sort_order == "asc" else column.desc()
        tiebreak = BudgetAlert.id.asc() if sort_order == "asc" else BudgetAlert.id.desc()

        stmt = (
            select(BudgetAlert)
            .options(joinedload(BudgetAlert.category))
            .where(
                BudgetAlert.user_id == self.user_id,
                BudgetAlert.status == RecordStatus.active,
            )
            .order_by(ordering, tiebreak)
        )
        if filters.is_read is not None:
            stmt = stmt.where(BudgetAlert.is_read.is_(filters.is_read))
        if filters.type:
            stmt = stmt.where(BudgetAlert.type == filters.type)
        if filters.source_type:
            stmt = stmt.where(BudgetAlert.source_type == filters.source_type)
        return paginate(self.session, stmt, page, page_size)

    def get(self, alert_id: int) -> BudgetAlert:
        alert = self.session.scalar(
            select(BudgetAlert)
            .options(joinedload(BudgetAlert.category))
            .where(
                BudgetAlert.id == alert_id,
                BudgetAlert.user_id == self.user_id,
                BudgetAlert.status == RecordStatus.active,
            )
        )
        if not alert:
            raise NotFound("Alert not found")
        return alert

    def mark_as_read(self, alert_id: int) -> BudgetAlert:
        alert = self.get(alert_id)
        alert.is_read = True
        alert.dedup_key = None
        self.session.commit()
        return alert

    def delete(self, alert_id: int) -> None:
        alert = self.get(alert_id)
        alert.status = RecordStatus.deleted
        alert.dedup_key = None
        self.session.commit()

    def create_manual_alert(self, data: AlertIn) -> BudgetAlert:
        if data.category_id is not None:
            CategoryService(self.session, self.user_id).get(data.category_id)
        alert = BudgetAlert(
            user_id=self.user_id,
            type=data.type,
            source_type=data.source_type,
            category_id=data.category_id,
            message=data.message,
            amount_cents=data.amount_cents,
            threshold_cents=data.threshold_cents,
            is_read=False,
        )
        self.session.add(alert)
        self.session.commit()
        return self.get(alert.id)

    def stats(self) -> dict[str, object]:
        base = (
            BudgetAlert.user_id == self.user_id,
            BudgetAlert.status == RecordStatus.active,
        )
        total = self.session.scalar(select(func.count(BudgetAlert.id)).where(*base))
        rows = self.session.execute(
            select(BudgetAlert.type, func.count(BudgetAlert.id))
            .where(*base, BudgetAlert.is_read.is_(False))
            .group_by(BudgetAlert.type)
        ).all()
        by_type = {alert_type.value: 0 for alert_type in AlertType}
        for alert_type, count in rows:
            by_type[alert_type.value] = int(count)
        return {
            "total": int(total or 0),
            "unread": sum(by_type.values()),
            "by_type": by_type,
        }

    def _insert_deduplicated(self, alert: BudgetAlert) -> bool:
        try:
            with self.session.begin_nested():
                self.session.add(alert)
        except IntegrityError:
            logger.info(
                f"alert_skipped: user_id={self.user_id} dedup_key={alert.dedup_key}"
            )
            return False
        return True

    def generate_automatic_alerts(self, today: Optional[date] = None) -> list[BudgetAlert]:
        """Emit budget and large-expense alerts for the current calendar month.

        Each candidate carries a dedup key naming its (type, subject, month) slot.
        Slots already held by an unread alert are skipped; the unique
        (user_id, dedup_key) constraint rejects any insert that races another
        generator for the same slot.
        """
        period = current_month(today)
        categories = self.session.scalars(
            select(Category).where(
                Category.user_id == self.user_id,
                Category.status == RecordStatus.active,
                Category.budget_limit_cents.isnot(None),
            )
        ).all()
        expenses = self.session.scalars(
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type == TransactionType.expense,
                Transaction.status == RecordStatus.active,
                Transaction.date.between(period.start, period.end),
            )
            .order_by(Transaction.date, Transaction.id)
        ).all()
        open_keys = set(
            self.session.scalars(
                select(BudgetAlert.dedup_key).where(
                    BudgetAlert.user_id == self.user_id,
                    BudgetAlert.dedup_key.isnot(None),
                )
            ).all()
        )
        # Manually created alerts carry no key but still hold their category slot.
        manual_slots = self.session.execute(
            select(BudgetAlert.type, BudgetAlert.category_id).where(
                BudgetAlert.user_id == self.user_id,
                BudgetAlert.status == RecordStatus.active,
                BudgetAlert.is_read.is_(False),
                BudgetAlert.dedup_key.is_(None),
                BudgetAlert.category_id.isnot(None),
                BudgetAlert.created_at >= datetime.combine(period.start, time.min),
            )
        ).all()
        for alert_type, category_id in manual_slots:
            open_keys.add(
                alert_dedup_key(alert_type, "category", category_id, period.start)
            )

        spent_by_category: dict[int, int] = defaultdict(int)
        for txn in expenses:
            if txn.category_id is not None:
                spent_by_category[txn.category_id] += txn.amount_cents

        candidates: list[BudgetAlert] = []
        for category in categories:
            limit = category.budget_limit_cents or 0
            spent = spent_by_category.get(category.id, 0)
            if spent > limit:
                alert_type = AlertType.budget_exceeded
                message = (
                    f"Budget exceeded for {category.name}: "
                    f"{format_euros(spent)} spent of {format_euros(limit)}"
                )
            elif spent * 10 >= limit * 9:
                alert_type = AlertType.threshold_reached
                pct = _percent(spent, limit) if limit else 100
                message = (
                    f"Budget threshold reached for {category.name}: "
                    f"{format_euros(spent)} spent ({pct}% of budget)"
                )
            else:
                continue
            candidates.append(
                BudgetAlert(
                    user_id=self.user_id,
                    type=alert_type,
                    source_type=AlertSource.category,
                    category_id=category.id,
                    message=message,
                    amount_cents=spent,
                    threshold_cents=limit,
                    dedup_key=alert_dedup_key(
                        alert_type, "category", category.id, period.start
                    ),
                )
            )

        for txn in expenses:
            if txn.amount_cents < LARGE_EXPENSE_THRESHOLD_CENTS:
                continue
            candidates.append(
                BudgetAlert(
                    user_id=self.user_id,
                    type=AlertType.large_expense,
                    source_type=AlertSource.transaction,
                    category_id=txn.category_id,
                    transaction_id=txn.id,
                    message=(
                        f"Large expense: {format_euros(txn.amount_cents)} "
                        f"for {txn.description or 'no description'}"
                    ),
                    amount_cents=txn.amount_cents,
                    dedup_key=alert_dedup_key(
                        AlertType.large_expense, "transaction", txn.id, period.start
                    ),
                )
            )

        created: list[BudgetAlert] = []
        for alert in candidates:
            if alert.dedup_key in open_keys:
                continue
            if self._insert_deduplicated(alert):
                open_keys.add(alert.dedup_key)
                created.append(alert)
        self.session.commit()

        if created:
            logger.info(
                f"alerts_generated: user_id={self.user_id} created={len(created)}"
            )
        return created


def run_alert_sweep(session: Session, today: Optional[date] = None) -> int:
    user_ids = session.scalars(
        select(User.id).where(User.status == UserStatus.active).order_by(User.id)
    ).all()
    created = 0
    for user_id in user_ids:
        created += len(AlertService(session, user_id).generate_automatic_alerts(today))
    logger.info(f"alert_sweep: users={len(user_ids)} created={created}")
    return created


# ---------------------------------------------------------------------------
# Recommendations


RECOMMENDATION_SYSTEM_PROMPT = "Tu es MoneyWise, assistant financier expert."

DEFAULT_RECOMMENDATIONS = (
    (
        RecommendationType.spending_pattern,
        "Analysez vos dépenses régulières",
        "Revoyez vos dépenses mensuelles pour identifier les économies possibles.",
    ),
    (
        RecommendationType.saving_opportunity,
        "Établissez un fonds d'urgence",
        "Mettez de côté 3 mois de dépenses pour faire face aux imprévus.",
    ),
)

RECOMMENDATION_KEYWORDS = (
    (RecommendationType.budget_alert, ("budget", "dépense", "depense")),
    (RecommendationType.saving_opportunity, ("épargne", "epargne", "économi", "economi")),
    (RecommendationType.debt_reduction, ("dette", "crédit", "credit")),
    (RecommendationType.investment_suggestion, ("investi",)),
)

_BULLET_PREFIX = re.compile(r"^[•\-\*\d\.\)\s]+")
_SENTENCE_END = re.compile(r"[.!?:]")
MAX_RECOMMENDATIONS = 5
TITLE_MAX_LENGTH = 50


def classify_recommendation(text: str) -> RecommendationType:
    lowered = text.lower()
    for rec_type, keywords in RECOMMENDATION_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return rec_type
    return RecommendationType.spending_pattern


def recommendation_title(text: str) -> str:
    first = _SENTENCE_END.split(text, maxsplit=1)[0].strip() or text.strip()
    if len(first) > TITLE_MAX_LENGTH:
        return first[: TITLE_MAX_LENGTH - 3].rstrip() + "..."
    return first


def parse_recommendations(reply: str) -> list[dict[str, object]]:
    parsed: list[dict[str, object]] = []
    for line in reply.splitlines():
        clean = _BULLET_PREFIX.sub("", line.strip()).replace("**", "").strip()
        if not clean:
            continue
        parsed.append(
            {
                "type": classify_recommendation(clean),
                "title": recommendation_title(clean),
                "message": clean,
            }
        )
    return parsed[:MAX_RECOMMENDATIONS]


class RecommendationService:
    def __init__(
        self,
        session: Session,
        user_id: int,
        ai: Optional["CompletionClient"] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.ai = ai

    def spending_patterns(self, today: Optional[date] = None) -> dict[str, object]:
        start = month_start(today or local_today())
        rows = self.session.execute(
            select(
                Transaction.type,
                Category.name,
                func.coalesce(func.sum(Transaction.amount_cents), 0),
            )
            .outerjoin(Category, Transaction.category_id == Category.id)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.status == RecordStatus.active,
                Transaction.date >= start,
            )
            .group_by(Transaction.type, Category.name)
        ).all()

        income = 0
        expenses = 0
        by_category: dict[str, int] = defaultdict(int)
        for txn_type, name, total in rows:
            if txn_type == TransactionType.revenue:
                income += int(total)
            else:
                expenses += int(total)
                by_category[name or UNCATEGORIZED_NAME] += int(total)

        top = sorted(by_category.items(), key=lambda item: item[1], reverse=True)[:5]
        savings_rate = round((income - expenses) / income * 100, 1) if income else 0
        return {
            "total_income_cents": income,
            "total_expenses_cents": expenses,
            "top_categories": [{"name": n, "amount_cents": a} for n, a in top],
            "savings_rate": savings_rate,
        }

    def _snapshot(self, today: Optional[date]) -> dict[str, object]:
        start = month_start(today or local_today())
        transactions = self.session.scalars(
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id,
                Transaction.status == RecordStatus.active,
                Transaction.date >= start,
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .limit(50)
        ).all()
        categories = self.session.scalars(
            select(Category).where(
                Category.user_id == self.user_id,
                Category.status == RecordStatus.active,
            )
        ).all()
        unread_alerts = self.session.scalar(
            select(func.count(BudgetAlert.id)).where(
                BudgetAlert.user_id == self.user_id,
                BudgetAlert.status == RecordStatus.active,
                BudgetAlert.is_read.is_(False),
            )
        )
        return {
            "transactions": transactions,
            "categories": categories,
            "unread_alerts": int(unread_alerts or 0),
            "patterns": self.spending_patterns(today),
        }

    @staticmethod
    def build_prompt(snapshot: dict[str, object]) -> str:
        patterns = snapshot["patterns"]
        top = ", ".join(
            f"{item['name']} ({format_euros(item['amount_cents'])})"
            for item in patterns["top_categories"]
        ) or "aucune"
        recent = "\n".join(
            f"- {txn.date.isoformat()}: {format_euros(txn.amount_cents)} pour "
            f"{txn.description or 'Non précisé'} "
            f"({txn.category.name if txn.category else 'Non catégorisé'})"
            for txn in snapshot["transactions"][:10]
        ) or "- aucune transaction ce mois-ci"
        return (
            "Analyse les données et propose 3 à 5 recommandations financières "
            "claires, personnalisées et réalistes.\n\n"
            f"Revenus : {format_euros(patterns['total_income_cents'])}\n"
            f"Dépenses : {format_euros(patterns['total_expenses_cents'])}\n"
            f"Taux d'épargne : {patterns['savings_rate']}%\n"
            f"Catégories principales : {top}\n"
            f"Catégories suivies : {len(snapshot['categories'])}\n"
            f"Alertes budgétaires non lues : {snapshot['unread_alerts']}\n\n"
            f"Transactions récentes :\n{recent}\n\n"
            "Réponds en français, sous forme de liste à puces."
        )

    def _save(self, rows: list[dict[str, object]]) -> list[FinancialRecommendation]:
        saved = []
        for row in rows:
            rec = FinancialRecommendation(
                user_id=self.user_id,
                type=row["type"],
                title=row["title"],
                message=row["message"],
                category_id=row.get("category_id"),
            )
            self.session.add(rec)
            saved.append(rec)
        self.session.commit()
        return saved

    def _save_defaults(self) -> list[FinancialRecommendation]:
        logger.info(f"recommendations_fallback: user_id={self.user_id}")
        return self._save(
            [
                {"type": rec_type, "title": title, "message": message}
                for rec_type, title, message in DEFAULT_RECOMMENDATIONS
            ]
        )

    def generate_automatic_recommendations(
        self, today: Optional[date] = None
    ) -> list[FinancialRecommendation]:
        snapshot = self._snapshot(today)
        if self.ai is None:
            return self._save_defaults()

        try:
            reply = self.ai.complete(
                [
                    ChatTurn("system", RECOMMENDATION_SYSTEM_PROMPT),
                    ChatTurn("user", self.build_prompt(snapshot)),
                ],
                max_tokens=500,
            )
        except Exception as exc:
            logger.warning(
                f"recommendations_ai_failed: user_id={self.user_id} error={exc}"
            )
            return self._save_defaults()

        if not isinstance(reply, str) or not reply.strip():
            return self._save_defaults()
        parsed = parse_recommendations(reply)
        if not parsed:
            return self._save_defaults()

        saved = self._save(parsed)
        logger.info(
            f"recommendations_generated: user_id={self.user_id} count={len(saved)}"
        )
        return saved

    def list(
        self,
        type: Optional[RecommendationType] = None,
        page: Optional[int] = None,
        page_size: Optional[int] = None,
    ) -> Page:
        stmt = (
            select(FinancialRecommendation)
            .options(joinedload(FinancialRecommendation.category))
            .where(FinancialRecommendation.user_id == self.user_id)
            .order_by(
                FinancialRecommendation.created_at.desc(),
                FinancialRecommendation.id.desc(),
            )
        )
        if type:
            stmt = stmt.where(FinancialRecommendation.type == type)
        return paginate(self.session, stmt, page, page_size)

    def get(self, recommendation_id: int) -> FinancialRecommendation:
        rec = self.session.scalar(
            select(FinancialRecommendation).where(
                FinancialRecommendation.id == recommendation_id,
                FinancialRecommendation.user_id == self.user_id,
            )
        )
        if not rec:
            raise NotFound("Recommendation not found")
        return rec

    def mark_as_read(self, recommendation_id: int) -> FinancialRecommendation:
        rec = self.get(recommendation_id)
        rec.is_read = True
        self.session.commit()
        return rec

    def delete(self, recommendation_id: int) -> None:
        rec = self.get(recommendation_id)
        self.session.delete(rec)
        self.session.commit()


# ---------------------------------------------------------------------------
# Dashboard


def budget_health(percentage: int) -> str:
    if percentage >= 90:
        return "danger"
    if percentage >= 75:
        return "warning"
    return "safe"


class DashboardService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _total(self, txn_type: TransactionType, period: Period) -> int:
        return int(
            self.session.scalar(
                select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
                    Transaction.user_id == self.user_id,
                    Transaction.type == txn_type,
                    Transaction.status == RecordStatus.active,
                    Transaction.date.between(period.start, period.end),
                )
            )
            or 0
        )

    def _spent_by_category(self, period: Period) -> dict[Optional[int], tuple[int, int]]:
        rows = self.session.execute(
            select(
                Transaction.category_id,
                func.coalesce(func.sum(Transaction.amount_cents), 0),
                func.count(Transaction.id),
            )
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type == TransactionType.expense,
                Transaction.status == RecordStatus.active,
                Transaction.date.between(period.start, period.end),
            )
            .group_by(Transaction.category_id)
        ).all()
        return {category_id: (int(total), int(count)) for category_id, total, count in rows}

    def budget_status(self, period: Period) -> list[dict[str, object]]:
        spent = self._spent_by_category(period)
        categories = self.session.scalars(
            select(Category)
            .where(
                Category.user_id == self.user_id,
                Category.status == RecordStatus.active,
                Category.budget_limit_cents > 0,
            )
            .order_by(Category.name)
        ).all()
        status = []
        for category in categories:
            budget = category.budget_limit_cents
            amount = spent.get(category.id, (0, 0))[0]
            percentage = min(_percent(amount, budget), 100)
            status.append(
                {
                    "category_id": category.id,
                    "category_name": category.name,
                    "spent_cents": amount,
                    "budget_cents": budget,
                    "remaining_cents": max(budget - amount, 0),
                    "percentage": percentage,
                    "color": category.color,
                    "icon": category.icon,
                    "status": budget_health(percentage),
                }
            )
        return status

    def recent_transactions(self, limit: int = 5) -> list[dict[str, object]]:
        rows = self.session.scalars(
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id,
                Transaction.status == RecordStatus.active,
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .limit(limit)
        ).all()
        return [
            {
                "id": txn.id,
                "type": txn.type.value,
                "amount_cents": txn.amount_cents,
                "description": txn.description,
                "date": txn.date.isoformat(),
                "category": txn.category.name if txn.category else UNCATEGORIZED_NAME,
                "color": (txn.category.color if txn.category else None)
                or UNCATEGORIZED_COLOR,
                "icon": (txn.category.icon if txn.category else None)
                or UNCATEGORIZED_ICON,
            }
            for txn in rows
        ]

    def overview(self, period: Optional[str] = None, today: Optional[date] = None) -> dict:
        window = resolve_dashboard_period(period, today)
        income = self._total(TransactionType.revenue, window)
        expenses = self._total(TransactionType.expense, window)
        count = self.session.scalar(
            select(func.count(Transaction.id)).where(
                Transaction.user_id == self.user_id,
                Transaction.status == RecordStatus.active,
                Transaction.date.between(window.start, window.end),
            )
        )
        unread_alerts = self.session.scalar(
            select(func.count(BudgetAlert.id)).where(
                BudgetAlert.user_id == self.user_id,
                BudgetAlert.status == RecordStatus.active,
                BudgetAlert.is_read.is_(False),
            )
        )
        return {
            "summary": {
                "balance_cents": income - expenses,
                "total_income_cents": income,
                "total_expenses_cents": expenses,
                "transactions_count": int(count or 0),
                "unread_alerts_count": int(unread_alerts or 0),
            },
            "budget_status": self.budget_status(window),
            "recent_transactions": self.recent_transactions(5),
            "period": window.label,
        }

    def expenses_by_category(
        self, period: Optional[str] = None, today: Optional[date] = None
    ) -> dict:
        window = resolve_dashboard_period(period, today)
        spent = self._spent_by_category(window)
        ids = [category_id for category_id in spent if category_id is not None]
        categories = {
            category.id: category
            for category in self.session.scalars(
                select(Category).where(
                    Category.user_id == self.user_id,
                    Category.id.in_(ids),
                    Category.status == RecordStatus.active,
                )
            ).all()
        } if ids else {}

        items = []
        for category_id, (amount, count) in spent.items():
            category = categories.get(category_id)
            items.append(
                {
                    "category_id": category_id,
                    "name": category.name if category else UNCATEGORIZED_NAME,
                    "amount_cents": amount,
                    "count": count,
                    "color": (category.color if category else None)
                    or UNCATEGORIZED_COLOR,
                    "icon": (category.icon if category else None) or UNCATEGORIZED_ICON,
                }
            )
        items.sort(key=lambda item: item["amount_cents"], reverse=True)
        total = sum(item["amount_cents"] for item in items)
        for item in items:
            item["percentage"] = _percent(item["amount_cents"], total)
        return {"items": items, "total_cents": total, "period": window.label}

    def monthly_trends(self, months: Optional[int] = 6, today: Optional[date] = None) -> dict:
        count = 6 if months is None else min(max(int(months), 1), 12)
        today = today or local_today()
        starts = trailing_months(count, today)

        rows = self.session.execute(
            select(
                Transaction.date,
                Transaction.type,
                func.coalesce(func.sum(Transaction.amount_cents), 0),
            )
            .where(
                Transaction.user_id == self.user_id,
                Transaction.status == RecordStatus.active,
                Transaction.date.between(starts[0], today),
            )
            .group_by(Transaction.date, Transaction.type)
        ).all()

        buckets: dict[tuple[int, int], dict[TransactionType, int]] = defaultdict(
            lambda: defaultdict(int)
        )
        for day, txn_type, total in rows:
            buckets[(day.year, day.month)][txn_type] += int(total)

        points = []
        for start in starts:
            bucket = buckets.get((start.year, start.month), {})
            income = bucket.get(TransactionType.revenue, 0)
            expenses = bucket.get(TransactionType.expense, 0)
            points.append(
                {
                    "month": f"{start:%Y-%m}",
                    "label": f"{FRENCH_MONTHS_SHORT[start.month - 1]} {start.year}",
                    "income_cents": income,
                    "expense_cents": expenses,
                    "balance_cents": income - expenses,
                }
            )
        return {
            "points": points,
            "totals": {
                "income_cents": sum(p["income_cents"] for p in points),
                "expense_cents": sum(p["expense_cents"] for p in points),
            },
            "period": f"{count} derniers mois",
        }

    def global_budget(self) -> dict[str, int]:
        total = self.session.scalar(
            select(func.coalesce(func.sum(Category.budget_limit_cents), 0)).where(
                Category.user_id == self.user_id,
                Category.status == RecordStatus.active,
            )
        )
        return {"budget_global_cents": int(total or 0)}


# ---------------------------------------------------------------------------
# Reports


PdfRenderer = Callable[[str, Path], None]

_report_templates = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=select_autoescape(["html"]),
)
_report_templates.filters["euros"] = format_euros


def render_pdf(html: str, target: Path) -> None:
    try:
        from weasyprint import HTML
    except ImportError as exc:
        raise ServiceError(
            "PDF export requires WeasyPrint system dependencies; install them and retry"
        ) from exc
    HTML(string=html, base_url=str(TEMPLATES_DIR)).write_pdf(str(target))


class ReportService:
    def __init__(
        self,
        session: Session,
        user_id: int,
        renderer: Optional[PdfRenderer] = None,
        reports_dir: Optional[Path] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.renderer = renderer or render_pdf
        self.reports_dir = Path(reports_dir or get_settings().reports_dir)

    def build_data(
        self,
        report_type: str,
        start: date,
        end: date,
        category_id: Optional[int] = None,
    ) -> dict[str, object]:
        if report_type not in REPORT_TYPES:
            raise ValidationFailed("Invalid report type")
        if start > end:
            raise ValidationFailed("Start date must be before end date")

        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id,
                Transaction.status == RecordStatus.active,
                Transaction.date.between(start, end),
            )
            .order_by(Transaction.date, Transaction.id)
        )
        if category_id:
            stmt = stmt.where(Transaction.category_id == category_id)
        transactions = self.session.scalars(stmt).all()

        income = sum(
            t.amount_cents for t in transactions if t.type == TransactionType.revenue
        )
        expenses = sum(
            t.amount_cents for t in transactions if t.type == TransactionType.expense
        )
        data: dict[str, object] = {
            "report_type": report_type,
            "start_date": start.isoformat(),
            "end_date": end.isoformat(),
            "totals": {
                "income_cents": income,
                "expense_cents": expenses,
                "net_cents": income - expenses,
                "transaction_count": len(transactions),
            },
        }

        if report_type == "category-breakdown":
            breakdown: dict[tuple[str, TransactionType], dict[str, object]] = {}
            for txn in transactions:
                name = txn.category.name if txn.category else UNCATEGORIZED_NAME
                entry = breakdown.setdefault(
                    (name, txn.type),
                    {"category": name, "type": txn.type.value, "total_cents": 0, "count": 0},
                )
                entry["total_cents"] += txn.amount_cents
                entry["count"] += 1
            data["breakdown"] = sorted(
                breakdown.values(), key=lambda e: e["total_cents"], reverse=True
            )
        elif report_type == "budget-vs-actual":
            categories = self.session.scalars(
                select(Category)
                .where(
                    Category.user_id == self.user_id,
                    Category.status == RecordStatus.active,
                    Category.budget_limit_cents.isnot(None),
                )
                .order_by(Category.name)
            ).all()
            actual: dict[int, int] = defaultdict(int)
            for txn in transactions:
                if txn.type == TransactionType.expense and txn.category_id:
                    actual[txn.category_id] += txn.amount_cents
            data["budget_vs_actual"] = [
                {
                    "category": category.name,
                    "budget_cents": category.budget_limit_cents,
                    "actual_cents": actual.get(category.id, 0),
                    "difference_cents": category.budget_limit_cents
                    - actual.get(category.id, 0),
                    "percentage_used": round(
                        actual.get(category.id, 0) / category.budget_limit_cents * 100, 2
                    )
                    if category.budget_limit_cents
                    else 0,
                }
                for category in categories
            ]
        return data

    def generate(self, request: ReportRequest) -> Report:
        data = self.build_data(
            request.report_type,
            request.start_date,
            request.end_date,
            request.category_id,
        )
        title = request.title or f"Rapport {request.report_type}"
        html = _report_templates.get_template("report.html").render(
            title=title,
            description=request.description,
            data=data,
            generated_at=datetime.now(),
        )

        self.reports_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.utcnow().strftime("%Y%m%d%H%M%S%f")
        target = self.reports_dir / f"report_{self.user_id}_{stamp}.pdf"
        started = datetime.now()
        self.renderer(html, target)
        duration = (datetime.now() - started).total_seconds()

        totals = data["totals"]
        report = Report(
            user_id=self.user_id,
            title=title,
            description=request.description,
            report_type=request.report_type,
            start_date=request.start_date,
            end_date=request.end_date,
            total_income_cents=totals["income_cents"],
            total_expense_cents=totals["expense_cents"],
            balance_cents=totals["net_cents"],
            file_path=str(target),
        )
        self.session.add(report)
        self.session.commit()
        logger.info(
            f"report_generated: user_id={self.user_id} type={request.report_type} "
            f"period={request.start_date}to{request.end_date} "
            f"pdf_duration={duration:.2f}s"
        )
        return report

    def list(self, page: Optional[int] = None, page_size: Optional[int] = None) -> Page:
        stmt = (
            select(Report)
            .where(Report.user_id == self.user_id, Report.status == RecordStatus.active)
            .order_by(Report.created_at.desc(), Report.id.desc())
        )
        return paginate(self.session, stmt, page, page_size)

    def get(self, report_id: int) -> Report:
        report = self.session.scalar(
            select(Report).where(
                Report.id == report_id,
                Report.user_id == self.user_id,
                Report.status == RecordStatus.active,
            )
        )
        if not report:
            raise NotFound("Report not found")
        return report

    def pdf_path(self, report: Report) -> Path:
        path = Path(report.file_path) if report.file_path else None
        if path is None or not path.is_file():
            raise NotFound("PDF file not found")
        return path


# ---------------------------------------------------------------------------
# Chat


CHAT_SYSTEM_PROMPT = (
    "Tu es MoneyWise, assistant financier expert.\n"
    "Fournis des conseils clairs, concis et pratiques.\n"
    "Prends en compte le contexte financier et l'historique de conversation.\n"
    "Réponds toujours en français."
)
CHAT_UNAVAILABLE_REPLY = "Désolé, le service IA est temporairement indisponible."
CHAT_EMPTY_REPLY = "Réponse non disponible."
CHAT_HISTORY_LIMIT = 10


class ChatService:
    def __init__(
        self,
        session: Session,
        user_id: int,
        ai: Optional["CompletionClient"] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.ai = ai

    def monthly_context(self, today: Optional[date] = None) -> dict[str, int]:
        start = month_start(today or local_today())
        transactions = self.session.scalars(
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.status == RecordStatus.active,
                Transaction.date >= start,
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .limit(10)
        ).all()
        income = sum(
            t.amount_cents for t in transactions if t.type == TransactionType.revenue
        )
        expenses = sum(
            t.amount_cents for t in transactions if t.type == TransactionType.expense
        )
        return {
            "income_cents": income,
            "expenses_cents": expenses,
            "savings_cents": income - expenses,
        }

    def recent_messages(
        self, limit: int = CHAT_HISTORY_LIMIT, exclude_id: Optional[int] = None
    ) -> list[ChatMessage]:
        stmt = (
            select(ChatMessage)
            .where(ChatMessage.user_id == self.user_id)
            .order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc())
            .limit(limit)
        )
        if exclude_id is not None:
            stmt = stmt.where(ChatMessage.id != exclude_id)
        return list(reversed(self.session.scalars(stmt).all()))

    def _ask(self, question: str, history: list[ChatMessage], context: dict[str, int]) -> str:
        if self.ai is None:
            return CHAT_UNAVAILABLE_REPLY
        turns = [ChatTurn("system", CHAT_SYSTEM_PROMPT)]
        turns.extend(ChatTurn(m.role.value.lower(), m.content) for m in history)
        turns.append(
            ChatTurn(
                "user",
                "CONTEXTE FINANCIER :\n"
                f"- Revenus mensuels : {format_euros(context['income_cents'])}\n"
                f"- Dépenses mensuelles : {format_euros(context['expenses_cents'])}\n"
                f"- Épargne mensuelle : {format_euros(context['savings_cents'])}\n\n"
                f"QUESTION :\n{question}",
            )
        )
        try:
            reply = self.ai.complete(turns, max_tokens=500)
        except Exception as exc:
            logger.warning(f"chat_ai_failed: user_id={self.user_id} error={exc}")
            return CHAT_UNAVAILABLE_REPLY
        if not isinstance(reply, str) or not reply.strip():
            return CHAT_EMPTY_REPLY
        return reply.strip()

    def send_message(
        self, content: str, today: Optional[date] = None
    ) -> tuple[ChatMessage, ChatMessage]:
        user_message = ChatMessage(
            user_id=self.user_id, role=ChatRole.user, content=content
        )
        self.session.add(user_message)
        self.session.commit()

        history = self.recent_messages(exclude_id=user_message.id)
        answer = self._ask(content, history, self.monthly_context(today))

        assistant_message = ChatMessage(
            user_id=self.user_id, role=ChatRole.assistant, content=answer
        )
        self.session.add(assistant_message)
        self.session.commit()
        return user_message, assistant_message

    def history(self, page: Optional[int] = None, page_size: Optional[int] = None) -> Page:
        stmt = (
            select(ChatMessage)
            .where(ChatMessage.user_id == self.user_id)
            .order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc())
        )
        return paginate(self.session, stmt, page, page_size, default_size=20)

    def clear(self) -> int:
        result = self.session.execute(
            delete(ChatMessage).where(ChatMessage.user_id == self.user_id)
        )
        self.session.commit()
        logger.info(f"chat_cleared: user_id={self.user_id} deleted={result.rowcount}")
        return int(result.rowcount or 0)
