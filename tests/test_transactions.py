from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from errors import NotFound, ValidationFailed
from models import AlertType, RecordStatus, TransactionType, User
from schemas import CategoryIn, TransactionIn, TransactionUpdateIn
from services import AlertService, CategoryService, TransactionFilters, TransactionService


TODAY = date(2026, 3, 20)


def _user(session: Session, email: str = "ana@example.com") -> User:
    user = User(first_name="Ana", last_name="Martin", email=email, password_hash="x")
    session.add(user)
    session.commit()
    return user


def _txn(service: TransactionService, amount_cents: int, **kwargs):
    kwargs.setdefault("type", TransactionType.expense)
    kwargs.setdefault("date", date(2026, 3, 10))
    return service.create(TransactionIn(amount_cents=amount_cents, **kwargs), today=TODAY)


def test_create_defaults_date_to_today_and_strips_description() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        service = TransactionService(session, user.id)

        txn = service.create(
            TransactionIn(
                type=TransactionType.revenue, amount_cents=250_000, description="  Salaire  "
            ),
            today=TODAY,
        )
        blank = _txn(service, 500, description="   ")

        assert txn.date == TODAY
        assert txn.description == "Salaire"
        assert txn.status == RecordStatus.active
        assert blank.description is None


def test_category_must_exist_belong_to_user_and_match_type() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        owner = _user(session)
        other = _user(session, "bob@example.com")
        categories = CategoryService(session, owner.id)
        food = categories.create(CategoryIn(name="Courses", type=TransactionType.expense))
        old = categories.create(CategoryIn(name="Ancienne", type=TransactionType.expense))
        categories.delete(old.id)

        service = TransactionService(session, owner.id)
        with pytest.raises(ValidationFailed, match="Category type mismatch"):
            _txn(service, 1_000, type=TransactionType.revenue, category_id=food.id)
        with pytest.raises(NotFound):
            _txn(service, 1_000, category_id=old.id)
        with pytest.raises(NotFound):
            _txn(TransactionService(session, other.id), 1_000, category_id=food.id)

        assert _txn(service, 1_000, category_id=food.id).category.name == "Courses"


def test_update_applies_only_provided_fields() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        food = CategoryService(session, user.id).create(
            CategoryIn(name="Courses", type=TransactionType.expense)
        )
        service = TransactionService(session, user.id)
        txn = _txn(service, 4_200, category_id=food.id, description="Marché")

        updated = service.update(txn.id, TransactionUpdateIn(amount_cents=4_500), today=TODAY)
        assert updated.amount_cents == 4_500
        assert updated.category_id == food.id
        assert updated.description == "Marché"

        cleared = service.update(
            txn.id, TransactionUpdateIn(category_id=None, description=None), today=TODAY
        )
        assert cleared.category_id is None
        assert cleared.description is None

        with pytest.raises(ValidationFailed):
            service.update(
                txn.id,
                TransactionUpdateIn(type=TransactionType.revenue, category_id=food.id),
                today=TODAY,
            )


def test_soft_delete_and_restore() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        service = TransactionService(session, user.id)
        kept = _txn(service, 1_000)
        removed = _txn(service, 2_000)

        service.delete(removed.id)

        assert [t.id for t in service.list().items] == [kept.id]
        deleted = service.list(TransactionFilters(status="DELETED")).items
        assert [t.id for t in deleted] == [removed.id]
        assert service.list(TransactionFilters(status="all")).total == 2
        with pytest.raises(NotFound):
            service.get(removed.id)
        with pytest.raises(NotFound):
            service.delete(removed.id)
        with pytest.raises(NotFound, match="Deleted transaction not found"):
            service.restore(kept.id, today=TODAY)

        restored = service.restore(removed.id, today=TODAY)
        assert restored.status == RecordStatus.active
        assert service.list().total == 2


def test_invalid_status_filter_is_rejected() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        with pytest.raises(ValidationFailed):
            TransactionService(session, user.id).list(TransactionFilters(status="ARCHIVED"))


def test_search_matches_description_or_category_name() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        dining = CategoryService(session, user.id).create(
            CategoryIn(name="Restaurant", type=TransactionType.expense)
        )
        service = TransactionService(session, user.id)
        groceries = _txn(service, 3_000, description="Courses Carrefour")
        dinner = _txn(service, 4_500, category_id=dining.id)
        _txn(service, 900, description="Boulangerie")

        by_description = service.list(TransactionFilters(search="carre")).items
        by_category = service.list(TransactionFilters(search="RESTAU")).items

        assert [t.id for t in by_description] == [groceries.id]
        assert [t.id for t in by_category] == [dinner.id]


def test_listing_filters_and_orders_newest_first() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        other = _user(session, "bob@example.com")
        service = TransactionService(session, user.id)
        early = _txn(service, 1_000, date=date(2026, 1, 15))
        mid = _txn(service, 2_000, date=date(2026, 2, 15))
        salary = _txn(service, 300_000, type=TransactionType.revenue, date=date(2026, 3, 1))
        _txn(TransactionService(session, other.id), 7_000)

        assert [t.id for t in service.list().items] == [salary.id, mid.id, early.id]
        ranged = service.list(
            TransactionFilters(start_date=date(2026, 2, 1), end_date=date(2026, 2, 28))
        ).items
        assert [t.id for t in ranged] == [mid.id]
        revenue = service.list(TransactionFilters(type=TransactionType.revenue)).items
        assert [t.id for t in revenue] == [salary.id]


def test_listing_pages_through_results() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        service = TransactionService(session, user.id)
        for i in range(15):
            _txn(service, 100 + i)

        second = service.list(page=2, page_size=10)
        oversized = service.list(page_size=1_000)

        assert len(second.items) == 5
        assert second.total_pages == 2
        assert oversized.page_size == 100


def test_expense_changes_refresh_alerts_but_revenue_does_not() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        fun = CategoryService(session, user.id).create(
            CategoryIn(name="Loisirs", type=TransactionType.expense, budget_limit_cents=1_000)
        )
        service = TransactionService(session, user.id)
        alerts = AlertService(session, user.id)

        _txn(service, 300_000, type=TransactionType.revenue)
        assert alerts.list().total == 0

        _txn(service, 1_500, category_id=fun.id)
        assert [a.type for a in alerts.list().items] == [AlertType.budget_exceeded]
