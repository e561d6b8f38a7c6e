from datetime import date
from pathlib import Path

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from errors import NotFound, ValidationFailed
from models import RecordStatus, Transaction, TransactionType
from schemas import CategoryIn, ReportRequest
from services import CategoryService, ReportService


USER_ID = 1
MARCH = (date(2026, 3, 1), date(2026, 3, 31))


class RecordingRenderer:
    def __init__(self) -> None:
        self.calls: list[tuple[str, Path]] = []

    def __call__(self, html: str, target: Path) -> None:
        self.calls.append((html, target))
        target.write_bytes(b"%PDF-1.7 fake")


def _seed(session: Session) -> dict[str, int]:
    categories = CategoryService(session, USER_ID)
    food = categories.create(
        CategoryIn(name="Courses", type=TransactionType.expense, budget_limit_cents=40_000)
    ).id
    fun = categories.create(
        CategoryIn(name="Loisirs", type=TransactionType.expense, budget_limit_cents=10_000)
    ).id
    salary = categories.create(CategoryIn(name="Salaire", type=TransactionType.revenue)).id
    rows = [
        (TransactionType.revenue, 250_000, salary, date(2026, 3, 1), RecordStatus.active),
        (TransactionType.expense, 30_000, food, date(2026, 3, 4), RecordStatus.active),
        (TransactionType.expense, 5_000, food, date(2026, 3, 18), RecordStatus.active),
        (TransactionType.expense, 12_000, fun, date(2026, 3, 20), RecordStatus.active),
        (TransactionType.expense, 2_500, None, date(2026, 3, 22), RecordStatus.active),
        (TransactionType.expense, 9_999, food, date(2026, 3, 23), RecordStatus.deleted),
        (TransactionType.expense, 70_000, food, date(2026, 4, 2), RecordStatus.active),
    ]
    for txn_type, amount, category_id, day, status in rows:
        session.add(
            Transaction(
                user_id=USER_ID,
                type=txn_type,
                amount_cents=amount,
                category_id=category_id,
                date=day,
                status=status,
            )
        )
    session.commit()
    return {"food": food, "fun": fun, "salary": salary}


def test_monthly_summary_totals() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _seed(session)
        data = ReportService(session, USER_ID, reports_dir=Path(".")).build_data(
            "monthly-summary", *MARCH
        )

        assert data["totals"] == {
            "income_cents": 250_000,
            "expense_cents": 49_500,
            "net_cents": 200_500,
            "transaction_count": 5,
        }
        assert "breakdown" not in data
        assert data["start_date"] == "2026-03-01"


def test_category_breakdown_groups_by_name_and_type() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _seed(session)
        data = ReportService(session, USER_ID, reports_dir=Path(".")).build_data(
            "category-breakdown", *MARCH
        )

        assert data["breakdown"] == [
            {"category": "Salaire", "type": "REVENUE", "total_cents": 250_000, "count": 1},
            {"category": "Courses", "type": "EXPENSE", "total_cents": 35_000, "count": 2},
            {"category": "Loisirs", "type": "EXPENSE", "total_cents": 12_000, "count": 1},
            {"category": "Uncategorized", "type": "EXPENSE", "total_cents": 2_500, "count": 1},
        ]


def test_budget_vs_actual_compares_limits() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        ids = _seed(session)
        service = ReportService(session, USER_ID, reports_dir=Path("."))
        data = service.build_data("budget-vs-actual", *MARCH)

        assert data["budget_vs_actual"] == [
            {
                "category": "Courses",
                "budget_cents": 40_000,
                "actual_cents": 35_000,
                "difference_cents": 5_000,
                "percentage_used": 87.5,
            },
            {
                "category": "Loisirs",
                "budget_cents": 10_000,
                "actual_cents": 12_000,
                "difference_cents": -2_000,
                "percentage_used": 120.0,
            },
        ]

        scoped = service.build_data("monthly-summary", *MARCH, category_id=ids["food"])
        assert scoped["totals"]["transaction_count"] == 2


def test_invalid_type_or_range_is_rejected() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = ReportService(session, USER_ID, reports_dir=Path("."))
        with pytest.raises(ValidationFailed):
            service.build_data("yearly-summary", *MARCH)
        with pytest.raises(ValidationFailed):
            service.build_data("monthly-summary", date(2026, 4, 1), date(2026, 3, 1))

    with pytest.raises(ValidationError):
        ReportRequest(
            report_type="monthly-summary",
            start_date=date(2026, 4, 1),
            end_date=date(2026, 3, 1),
        )


def test_generate_renders_pdf_and_persists_report(tmp_path) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    renderer = RecordingRenderer()

    with Session(engine) as session:
        _seed(session)
        service = ReportService(session, USER_ID, renderer=renderer, reports_dir=tmp_path)

        report = service.generate(
            ReportRequest(report_type="budget-vs-actual", start_date=MARCH[0], end_date=MARCH[1])
        )

        assert report.title == "Rapport budget-vs-actual"
        assert report.total_income_cents == 250_000
        assert report.total_expense_cents == 49_500
        assert report.balance_cents == 200_500
        html, target = renderer.calls[0]
        assert "Budget vs réel" in html
        assert "350,00 €" in html
        assert target.parent == tmp_path
        assert target.name.startswith(f"report_{USER_ID}_")
        assert service.pdf_path(report) == target
        assert [r.id for r in service.list().items] == [report.id]


def test_missing_pdf_or_foreign_report_is_not_found(tmp_path) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = ReportService(
            session, USER_ID, renderer=RecordingRenderer(), reports_dir=tmp_path
        )
        report = service.generate(
            ReportRequest(
                report_type="monthly-summary",
                start_date=MARCH[0],
                end_date=MARCH[1],
                title="Mars",
            )
        )
        Path(report.file_path).unlink()

        with pytest.raises(NotFound, match="PDF file not found"):
            service.pdf_path(report)
        with pytest.raises(NotFound):
            ReportService(session, 2, reports_dir=tmp_path).get(report.id)
