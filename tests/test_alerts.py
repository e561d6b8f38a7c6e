from datetime import date

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker

from database import Base
from errors import NotFound, ValidationFailed
from models import (
    AlertSource,
    AlertType,
    BudgetAlert,
    Transaction,
    TransactionType,
    User,
    UserStatus,
)
from periods import local_today
from scheduler import SchedulerManager
from schemas import AlertIn, CategoryIn, TransactionIn
from services import (
    AlertFilters,
    AlertService,
    CategoryService,
    TransactionService,
    alert_dedup_key,
    run_alert_sweep,
)


TODAY = date(2026, 3, 20)


def _user(session: Session, email: str = "ana@example.com") -> User:
    user = User(first_name="Ana", last_name="Martin", email=email, password_hash="x")
    session.add(user)
    session.commit()
    return user


def _expense(session: Session, user_id: int, category_id, amount_cents: int, day: date) -> None:
    session.add(
        Transaction(
            user_id=user_id,
            type=TransactionType.expense,
            amount_cents=amount_cents,
            category_id=category_id,
            date=day,
        )
    )
    session.commit()


def _category(session: Session, user_id: int, name: str, budget) -> int:
    return (
        CategoryService(session, user_id)
        .create(
            CategoryIn(name=name, type=TransactionType.expense, budget_limit_cents=budget)
        )
        .id
    )


def test_overspent_category_and_large_expense_raise_alerts() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        leisure = _category(session, user.id, "Loisirs", 50_000)

        TransactionService(session, user.id).create(
            TransactionIn(
                type=TransactionType.expense,
                amount_cents=60_000,
                category_id=leisure,
                description="Console",
                date=date(2026, 3, 5),
            ),
            today=TODAY,
        )

        alerts = AlertService(session, user.id).list().items
        by_type = {alert.type: alert for alert in alerts}
        assert set(by_type) == {AlertType.budget_exceeded, AlertType.large_expense}

        exceeded = by_type[AlertType.budget_exceeded]
        assert exceeded.amount_cents == 60_000
        assert exceeded.threshold_cents == 50_000
        assert exceeded.source_type == AlertSource.category
        assert exceeded.message == "Budget exceeded for Loisirs: 600,00 € spent of 500,00 €"

        large = by_type[AlertType.large_expense]
        assert large.source_type == AlertSource.transaction
        assert large.message == "Large expense: 600,00 € for Console"


def test_threshold_alert_fires_at_ninety_percent() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        food = _category(session, user.id, "Courses", 10_000)
        _expense(session, user.id, food, 9_000, date(2026, 3, 2))

        created = AlertService(session, user.id).generate_automatic_alerts(TODAY)

        assert [alert.type for alert in created] == [AlertType.threshold_reached]
        assert created[0].message == (
            "Budget threshold reached for Courses: 90,00 € spent (90% of budget)"
        )


def test_spending_under_threshold_raises_nothing() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        food = _category(session, user.id, "Courses", 10_000)
        _category(session, user.id, "Sans budget", None)
        _expense(session, user.id, food, 8_999, date(2026, 3, 2))

        assert AlertService(session, user.id).generate_automatic_alerts(TODAY) == []


def test_only_current_month_active_expenses_count() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        food = _category(session, user.id, "Courses", 10_000)
        _expense(session, user.id, food, 20_000, date(2026, 2, 27))
        txn_service = TransactionService(session, user.id)
        txn = txn_service.create(
            TransactionIn(
                type=TransactionType.expense,
                amount_cents=3_000,
                category_id=food,
                date=date(2026, 3, 3),
            ),
            today=TODAY,
        )
        txn_service.delete(txn.id)

        assert AlertService(session, user.id).generate_automatic_alerts(TODAY) == []


def test_zero_budget_with_no_spending_reports_threshold() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        _category(session, user.id, "Gel", 0)

        created = AlertService(session, user.id).generate_automatic_alerts(TODAY)

        assert len(created) == 1
        assert created[0].type == AlertType.threshold_reached
        assert "(100% of budget)" in created[0].message


def test_rerunning_generation_does_not_duplicate_unread_alerts() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        food = _category(session, user.id, "Courses", 10_000)
        _expense(session, user.id, food, 70_000, date(2026, 3, 2))
        service = AlertService(session, user.id)

        first = service.generate_automatic_alerts(TODAY)
        second = service.generate_automatic_alerts(TODAY)

        assert len(first) == 2
        assert second == []
        assert service.list().total == 2


def test_read_alert_frees_its_slot_for_a_new_one() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        food = _category(session, user.id, "Courses", 10_000)
        _expense(session, user.id, food, 12_000, date(2026, 3, 2))
        service = AlertService(session, user.id)

        (alert,) = service.generate_automatic_alerts(TODAY)
        read = service.mark_as_read(alert.id)
        assert read.is_read is True
        assert read.dedup_key is None

        again = service.generate_automatic_alerts(TODAY)
        assert [a.type for a in again] == [AlertType.budget_exceeded]
        unread = service.list(AlertFilters(is_read=False)).items
        assert len(unread) == 1


def test_conflicting_dedup_key_insert_is_skipped() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        key = alert_dedup_key(AlertType.budget_exceeded, "category", 1, TODAY)
        assert key == "BUDGET_EXCEEDED:category:1:2026-03"
        session.add(
            BudgetAlert(
                user_id=user.id,
                type=AlertType.budget_exceeded,
                source_type=AlertSource.category,
                message="first",
                dedup_key=key,
            )
        )
        session.commit()

        service = AlertService(session, user.id)
        inserted = service._insert_deduplicated(
            BudgetAlert(
                user_id=user.id,
                type=AlertType.budget_exceeded,
                source_type=AlertSource.category,
                message="second",
                dedup_key=key,
            )
        )
        session.commit()

        assert inserted is False
        messages = session.scalars(select(BudgetAlert.message)).all()
        assert messages == ["first"]


def test_stats_counts_unread_per_type() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        service = AlertService(session, user.id)
        first = service.create_manual_alert(
            AlertIn(type=AlertType.large_expense, message="Gros achat", amount_cents=80_000)
        )
        service.create_manual_alert(
            AlertIn(type=AlertType.budget_exceeded, message="Budget dépassé")
        )
        doomed = service.create_manual_alert(
            AlertIn(type=AlertType.budget_exceeded, message="À supprimer")
        )
        service.mark_as_read(first.id)
        service.delete(doomed.id)

        stats = service.stats()

        assert stats["total"] == 2
        assert stats["unread"] == 1
        assert stats["by_type"] == {
            "BUDGET_EXCEEDED": 1,
            "THRESHOLD_REACHED": 0,
            "LARGE_EXPENSE": 0,
        }


def test_alert_listing_paginates_and_validates_sorting() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        service = AlertService(session, user.id)
        for i in range(15):
            service.create_manual_alert(
                AlertIn(type=AlertType.large_expense, message=f"Alerte {i}")
            )

        page = service.list(page=2, page_size=10)
        assert len(page.items) == 5
        assert page.meta() == {"total": 15, "page": 2, "page_size": 10, "total_pages": 2}

        oldest_first = service.list(sort_by="created_at", sort_order="asc")
        assert oldest_first.items[0].message == "Alerte 0"

        with pytest.raises(ValidationFailed):
            service.list(sort_by="message")
        with pytest.raises(ValidationFailed):
            service.list(sort_order="sideways")


def test_alerts_are_scoped_to_their_owner() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        owner = _user(session)
        other = _user(session, "bob@example.com")
        alert = AlertService(session, owner.id).create_manual_alert(
            AlertIn(type=AlertType.large_expense, message="Privé")
        )

        with pytest.raises(NotFound):
            AlertService(session, other.id).mark_as_read(alert.id)
        with pytest.raises(NotFound):
            AlertService(session, other.id).create_manual_alert(
                AlertIn(
                    type=AlertType.budget_exceeded,
                    message="x",
                    category_id=_category(session, owner.id, "Courses", 100),
                )
            )


def test_sweep_covers_active_users_only() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        active = _user(session)
        suspended = _user(session, "bob@example.com")
        suspended.status = UserStatus.suspended
        session.commit()
        for user in (active, suspended):
            food = _category(session, user.id, "Courses", 10_000)
            _expense(session, user.id, food, 15_000, date(2026, 3, 2))

        assert run_alert_sweep(session, TODAY) == 1
        assert run_alert_sweep(session, TODAY) == 0
        assert AlertService(session, suspended.id).list().total == 0


def test_scheduled_sweep_commits_through_its_session_factory() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, expire_on_commit=False)

    with factory() as session:
        user = _user(session)
        food = _category(session, user.id, "Courses", 10_000)
        _expense(session, user.id, food, 15_000, local_today())

    manager = SchedulerManager(session_factory=factory)

    assert manager._run_alert_sweep("test") == 1
    with factory() as session:
        assert AlertService(session, user.id).list().total == 1


def test_unread_manual_alert_blocks_automatic_one_for_same_category() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session)
        food = _category(session, user.id, "Courses", 10_000)
        service = AlertService(session, user.id)
        manual = service.create_manual_alert(
            AlertIn(
                type=AlertType.budget_exceeded,
                source_type=AlertSource.category,
                category_id=food,
                message="Budget dépassé (saisie manuelle)",
            )
        )
        _expense(session, user.id, food, 20_000, date(2026, 3, 2))

        assert service.generate_automatic_alerts(TODAY) == []
        unread = service.list(AlertFilters(is_read=False, type=AlertType.budget_exceeded))
        assert [a.id for a in unread.items] == [manual.id]

        service.mark_as_read(manual.id)
        again = service.generate_automatic_alerts(TODAY)
        assert [a.type for a in again] == [AlertType.budget_exceeded]
