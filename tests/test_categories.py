import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from errors import NotFound, ValidationFailed
from models import RecordStatus, TransactionType
from schemas import CategoryIn, CategoryUpdateIn
from services import CategoryService


def test_duplicate_active_category_is_rejected() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = CategoryService(session, 1)
        service.create(CategoryIn(name="Courses", type=TransactionType.expense))

        with pytest.raises(ValidationFailed):
            service.create(CategoryIn(name="  Courses ", type=TransactionType.expense))

        income = service.create(CategoryIn(name="Courses", type=TransactionType.revenue))
        other_user = CategoryService(session, 2).create(
            CategoryIn(name="Courses", type=TransactionType.expense)
        )
        assert income.type == TransactionType.revenue
        assert other_user.user_id == 2


def test_name_is_reusable_after_soft_delete() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = CategoryService(session, 1)
        first = service.create(CategoryIn(name="Transport", type=TransactionType.expense))
        service.delete(first.id)

        second = service.create(CategoryIn(name="Transport", type=TransactionType.expense))

        assert second.id != first.id
        assert session.get(type(first), first.id).status == RecordStatus.deleted
        with pytest.raises(NotFound):
            service.get(first.id)


def test_update_rechecks_uniqueness_and_keeps_unset_fields() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = CategoryService(session, 1)
        service.create(CategoryIn(name="Loyer", type=TransactionType.expense))
        food = service.create(
            CategoryIn(
                name="Courses",
                type=TransactionType.expense,
                color="#10B981",
                budget_limit_cents=40_000,
            )
        )

        with pytest.raises(ValidationFailed):
            service.update(food.id, CategoryUpdateIn(name="Loyer"))

        updated = service.update(food.id, CategoryUpdateIn(budget_limit_cents=None, icon="🛒"))
        assert updated.name == "Courses"
        assert updated.color == "#10B981"
        assert updated.icon == "🛒"
        assert updated.budget_limit_cents is None


def test_listing_excludes_deleted_and_filters_by_type() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = CategoryService(session, 1)
        salary = service.create(CategoryIn(name="Salaire", type=TransactionType.revenue))
        rent = service.create(CategoryIn(name="Loyer", type=TransactionType.expense))
        gone = service.create(CategoryIn(name="Vieux", type=TransactionType.expense))
        service.delete(gone.id)

        assert {c.id for c in service.list().items} == {salary.id, rent.id}
        assert [c.id for c in service.list(TransactionType.revenue).items] == [salary.id]


def test_other_users_categories_are_invisible() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        category = CategoryService(session, 1).create(
            CategoryIn(name="Santé", type=TransactionType.expense)
        )

        with pytest.raises(NotFound):
            CategoryService(session, 2).get(category.id)
        with pytest.raises(NotFound):
            CategoryService(session, 2).delete(category.id)


def test_category_input_rejects_blank_name_and_negative_budget() -> None:
    with pytest.raises(ValidationError):
        CategoryIn(name="   ", type=TransactionType.expense)
    with pytest.raises(ValidationError):
        CategoryIn(name="Courses", type=TransactionType.expense, budget_limit_cents=-1)
