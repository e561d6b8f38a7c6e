import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import TYPE_CHECKING, Any, Callable, Iterator, Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import FileResponse, JSONResponse, Response
from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session, sessionmaker
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile

from config import Settings, get_settings
from errors import AuthenticationFailed, PermissionDenied, ValidationFailed
from models import (
    AlertSource,
    AlertType,
    BudgetAlert,
    Category,
    ChatMessage,
    FinancialRecommendation,
    RecommendationType,
    Report,
    Transaction,
    TransactionType,
    User,
    UserStatus,
)
from schemas import (
    AlertIn,
    CategoryIn,
    CategoryUpdateIn,
    ChatMessageIn,
    ForgotPasswordIn,
    LoginIn,
    ProfileUpdateIn,
    RegisterIn,
    ReportRequest,
    ResetPasswordIn,
    TransactionIn,
    TransactionUpdateIn,
)
from security import decode_access_token
from services import (
    AlertFilters,
    AlertService,
    AuthService,
    CategoryService,
    ChatService,
    DashboardService,
    Page,
    PdfRenderer,
    RecommendationService,
    ReportService,
    TransactionFilters,
    TransactionService,
)

if TYPE_CHECKING:  # pragma: no cover
    from ai_client import CompletionClient
    from mailer import Mailer
    from scheduler import SchedulerManager
    from storage import MediaStorage


logger = logging.getLogger(__name__)


@dataclass
class AppDeps:
    """Everything the routers need, injected once by `create_app`."""

    session_factory: sessionmaker
    ai: Optional["CompletionClient"] = None
    mailer: Optional["Mailer"] = None
    tasks: Any = None
    storage: Optional["MediaStorage"] = None
    renderer: Optional[PdfRenderer] = None
    settings: Settings = field(default_factory=get_settings)
    scheduler: Optional["SchedulerManager"] = None

    get_db: Callable[[], Iterator[Session]] = field(init=False, repr=False)
    current_user: Callable[..., User] = field(init=False, repr=False)
    ai_user: Callable[..., User] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        factory = self.session_factory
        settings = self.settings

        def get_db() -> Iterator[Session]:
            db = factory()
            try:
                yield db
            finally:
                db.close()

        def current_user(
            authorization: Optional[str] = Header(default=None),
            db: Session = Depends(get_db),
        ) -> User:
            scheme, _, token = (authorization or "").partition(" ")
            if scheme.lower() != "bearer" or not token.strip():
                raise AuthenticationFailed("Authentication token missing")
            payload = decode_access_token(token.strip())
            user = db.get(User, payload["id"])
            if not user:
                raise AuthenticationFailed("Invalid token")
            if user.status == UserStatus.suspended:
                raise PermissionDenied("Account suspended")
            return user

        def ai_user(user: User = Depends(current_user)) -> User:
            allowed = settings.ai_allowed_user_id
            if allowed is None or user.id != allowed:
                raise PermissionDenied("You do not have access to this AI feature")
            return user

        self.get_db = get_db
        self.current_user = current_user
        self.ai_user = ai_user


def envelope(data: Any = None, message: str = "OK", status_code: int = 200) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder({"success": True, "message": message, "data": data}),
    )


def format_validation_errors(errors: list[dict]) -> str:
    parts = []
    for error in errors:
        loc = [str(p) for p in error.get("loc", ()) if p not in ("body", "query", "path")]
        label = ".".join(loc)
        message = str(error.get("msg", "Invalid value")).removeprefix("Value error, ")
        parts.append(f"{label}: {message}" if label else message)
    return " | ".join(parts) or "Invalid request"


def export_filename(title: str, extension: str) -> str:
    # Header values must stay printable ASCII.
    stem = re.sub(r"[^\w .-]+", "_", title, flags=re.ASCII).strip(" .") or "report"
    return f"{stem}.{extension}"


def _validate(model: type[BaseModel], payload: dict) -> BaseModel:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise ValidationFailed(format_validation_errors(exc.errors())) from exc


async def _read_payload(request: Request) -> tuple[dict, Optional[UploadFile]]:
    """Accept JSON or form bodies; a form may carry an `avatar` file."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith(("multipart/form-data", "application/x-www-form-urlencoded")):
        form = await request.form()
        avatar = form.get("avatar")
        fields = {
            key: value
            for key, value in form.items()
            if key != "avatar" and isinstance(value, str) and value != ""
        }
        if not isinstance(avatar, UploadFile) or not avatar.filename:
            avatar = None
        return fields, avatar

    raw = await request.body()
    if not raw:
        return {}, None
    try:
        body = json.loads(raw)
    except ValueError as exc:
        raise ValidationFailed("Invalid JSON body") from exc
    if not isinstance(body, dict):
        raise ValidationFailed("Invalid JSON body")
    return body, None


def _listing(page: Page, serializer: Callable, **extra: Any) -> dict[str, Any]:
    return {
        "items": [serializer(item) for item in page.items],
        "pagination": page.meta(),
        **extra,
    }


# ---------------------------------------------------------------------------
# Serializers


def serialize_user(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "email": user.email,
        "role": user.role,
        "avatar_url": user.avatar_url,
        "status": user.status,
        "created_at": user.created_at,
        "updated_at": user.updated_at,
    }


def serialize_category_ref(category: Optional[Category]) -> Optional[dict[str, Any]]:
    if category is None:
        return None
    return {
        "id": category.id,
        "name": category.name,
        "color": category.color,
        "icon": category.icon,
    }


def serialize_category(category: Category) -> dict[str, Any]:
    return {
        "id": category.id,
        "name": category.name,
        "type": category.type,
        "color": category.color,
        "icon": category.icon,
        "budget_limit_cents": category.budget_limit_cents,
        "status": category.status,
        "created_at": category.created_at,
        "updated_at": category.updated_at,
    }


def serialize_transaction(txn: Transaction) -> dict[str, Any]:
    return {
        "id": txn.id,
        "type": txn.type,
        "amount_cents": txn.amount_cents,
        "category_id": txn.category_id,
        "category": serialize_category_ref(txn.category),
        "description": txn.description,
        "date": txn.date,
        "status": txn.status,
        "created_at": txn.created_at,
        "updated_at": txn.updated_at,
    }


def serialize_alert(alert: BudgetAlert) -> dict[str, Any]:
    return {
        "id": alert.id,
        "type": alert.type,
        "source_type": alert.source_type,
        "category": serialize_category_ref(alert.category),
        "transaction_id": alert.transaction_id,
        "message": alert.message,
        "amount_cents": alert.amount_cents,
        "threshold_cents": alert.threshold_cents,
        "is_read": alert.is_read,
        "status": alert.status,
        "created_at": alert.created_at,
        "updated_at": alert.updated_at,
    }


def serialize_recommendation(rec: FinancialRecommendation) -> dict[str, Any]:
    return {
        "id": rec.id,
        "type": rec.type,
        "title": rec.title,
        "message": rec.message,
        "category_id": rec.category_id,
        "is_read": rec.is_read,
        "created_at": rec.created_at,
    }


def serialize_chat_message(message: ChatMessage) -> dict[str, Any]:
    return {
        "id": message.id,
        "role": message.role,
        "content": message.content,
        "created_at": message.created_at,
    }


def serialize_report(report: Report) -> dict[str, Any]:
    return {
        "id": report.id,
        "title": report.title,
        "description": report.description,
        "report_type": report.report_type,
        "start_date": report.start_date,
        "end_date": report.end_date,
        "total_income_cents": report.total_income_cents,
        "total_expense_cents": report.total_expense_cents,
        "balance_cents": report.balance_cents,
        "file_path": report.file_path,
        "status": report.status,
        "created_at": report.created_at,
    }


# ---------------------------------------------------------------------------
# Routers


def auth_router(deps: AppDeps) -> APIRouter:
    router = APIRouter(prefix="/api/auth", tags=["auth"])

    def service(db: Session) -> AuthService:
        return AuthService(db, mailer=deps.mailer, tasks=deps.tasks, storage=deps.storage)

    @router.post("/register")
    async def register(request: Request, db: Session = Depends(deps.get_db)):
        payload, avatar = await _read_payload(request)
        data = _validate(RegisterIn, payload)
        user, token = await run_in_threadpool(service(db).register, data, avatar)
        return envelope(
            {"user": serialize_user(user), "token": token},
            "User registered successfully",
            201,
        )

    @router.post("/login")
    def login(data: LoginIn, db: Session = Depends(deps.get_db)):
        user, token = service(db).login(data)
        return envelope({"user": serialize_user(user), "token": token}, "Login successful")

    @router.post("/forgot-password")
    def forgot_password(data: ForgotPasswordIn, db: Session = Depends(deps.get_db)):
        return envelope(None, service(db).forgot_password(data))

    @router.post("/reset-password")
    def reset_password(data: ResetPasswordIn, db: Session = Depends(deps.get_db)):
        user = service(db).reset_password(data)
        return envelope(
            {"id": user.id, "email": user.email}, "Password reset successfully"
        )

    @router.get("/me")
    def me(user: User = Depends(deps.current_user)):
        return envelope(serialize_user(user))

    @router.put("/profile")
    async def update_profile(
        request: Request,
        user: User = Depends(deps.current_user),
        db: Session = Depends(deps.get_db),
    ):
        payload, avatar = await _read_payload(request)
        data = _validate(ProfileUpdateIn, payload)
        updated = await run_in_threadpool(
            service(db).update_profile, user.id, data, avatar
        )
        return envelope(serialize_user(updated), "Profile updated successfully")

    return router


def transactions_router(deps: AppDeps) -> APIRouter:
    router = APIRouter(prefix="/api/transactions", tags=["transactions"])

    @router.get("")
    def list_transactions(
        type: Optional[TransactionType] = None,
        category_id: Optional[int] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        search: Optional[str] = None,
        status: str = "ACTIVE",
        page: int = 1,
        page_size: int = 10,
        user: User = Depends(deps.current_user),
        db: Session = Depends(deps.get_db),
    ):
        filters = TransactionFilters(
            type=type,
            category_id=category_id,
            start_date=start_date,
            end_date=end_date,
            search=search,
            status=status,
        )
        result = TransactionService(db, user.id).list(filters, page, page_size)
        return envelope(_listing(result, serialize_transaction))

    @router.post("")
    def create_transaction(
        data: TransactionIn,
        user: User = Depends(deps.current_user),
        db: Session = Depends(deps.get_db),
    ):
        txn = TransactionService(db, user.id).create(data)
        return envelope(
            serialize_transaction(txn), "Transaction created successfully", 201
        )

    @router.put("/{transaction_id}")
    def update_transaction(
        transaction_id: int,
        data: TransactionUpdateIn,
        user: User = Depends(deps.current_user),
        db: Session = Depends(deps.get_db),
    ):
        txn = TransactionService(db, user.id).update(transaction_id, data)
        return envelope(serialize_transaction(txn), "Transaction updated successfully")

    @router.delete("/{transaction_id}")
    def delete_transaction(
        transaction_id: int,
        user: User = Depends(deps.current_user),
        db: Session = Depends(deps.get_db),
    ):
        TransactionService(db, user.id).delete(transaction_id)
        return envelope(None, "Transaction deleted successfully")

    @router.post("/{transaction_id}/restore")
    def restore_transaction(
        transaction_id: int,
        user: User = Depends(deps.current_user),
        db: Session = Depends(deps.get_db),
    ):
        txn = TransactionService(db, user.id).restore(transaction_id)
        return envelope(serialize_transaction(txn), "Transaction restored successfully")

    return router


def categories_router(deps: AppDeps) -> APIRouter:
    router = APIRouter(prefix="/api/categories", tags=["categories"])

    @router.get("")
    def list_categories(
        type: Optional[TransactionType] = None,
        page: int = 1,
        page_size: int = 10,
        user: User = Depends(deps.current_user),
        db: Session = Depends(deps.get_db),
    ):
        result = CategoryService(db, user.id).list(type, page, page_size)
        return envelope(_listing(result, serialize_category))

    @router.get("/{category_id}")
    def get_category(
        category_id: int,
        user: User = Depends(deps.current_user),
        db: Session = Depends(deps.get_db),
    ):
        return envelope(serialize_category(CategoryService(db, user.id).get(category_id)))

    @router.post("")
    def create_category(
        data: CategoryIn,
        user: User = Depends(deps.current_user),
        db: Session = Depends(deps.get_db),
    ):
        category = CategoryService(db, user.id).create(data)
        return envelope(serialize_category(category), "Category created successfully", 201)

    @router.put("/{category_id}")
    def update_category(
        category_id: int,
        data: CategoryUpdateIn,
        user: User = Depends(deps.current_user),
        db: Session = Depends(deps.get_db),
    ):
        category = CategoryService(db, user.id).update(category_id, data)
        return envelope(serialize_category(category), "Category updated successfully")

    @router.delete("/{category_id}")
    def delete_category(
        category_id: int,
        user: User = Depends(deps.current_user),
        db: Session = Depends(deps.get_db),
    ):
        CategoryService(db, user.id).delete(category_id)
        return envelope(None, "Category deleted successfully")

    return router


def alerts_router(deps: AppDeps) -> APIRouter:
    router = APIRouter(prefix="/api/alerts", tags=["alerts"])

    @router.get("")
    def list_alerts(
        is_read: Optional[bool] = None,
        type: Optional[AlertType] = None,
        source_type: Optional[AlertSource] = None,
        page: int = 1,
        page_size: int = 10,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        user: User = Depends(deps.current_user),
        db: Session = Depends(deps.get_db),
    ):
        filters = AlertFilters(is_read=is_read, type=type, source_type=source_type)
        result = AlertService(db, user.id).list(
            filters, page, page_size, sort_by, sort_order
        )
        return envelope(
            _listing(
                result,
                serialize_alert,
                filters={"is_read": is_read, "type": type, "source_type": source_type},
            )
        )

    @router.get("/stats")
    def alert_stats(
        user: User = Depends(deps.current_user),
        db: Session = Depends(deps.get_db),
    ):
        return envelope(AlertService(db, user.id).stats())

    @router.post("")
    def create_alert(
        data: AlertIn,
        user: User = Depends(deps.current_user),
        db: Session = Depends(deps.get_db),
    ):
        alert = AlertService(db, user.id).create_manual_alert(data)
        return envelope(serialize_alert(alert), "Alert created successfully", 201)

    @router.post("/generate")
    def generate_alerts(
        user: User = Depends(deps.current_user),
        db: Session = Depends(deps.get_db),
    ):
        created = AlertService(db, user.id).generate_automatic_alerts()
        return envelope(
            [serialize_alert(alert) for alert in created],
            f"{len(created)} alert(s) generated",
        )

    @router.put("/{alert_id}/read")
    def mark_alert_read(
        alert_id: int,
        user: User = Depends(deps.current_user),
        db: Session = Depends(deps.get_db),
    ):
        alert = AlertService(db, user.id).mark_as_read(alert_id)
        return envelope(serialize_alert(alert), "Alert marked as read")

    @router.delete("/{alert_id}")
    def delete_alert(
        alert_id: int,
        user: User = Depends(deps.current_user),
        db: Session = Depends(deps.get_db),
    ):
        AlertService(db, user.id).delete(alert_id)
        return envelope(None, "Alert deleted successfully")

    return router


def reports_router(deps: AppDeps) -> APIRouter:
    router = APIRouter(prefix="/api/reports", tags=["reports"])

    def service(db: Session, user: User) -> ReportService:
        return ReportService(
            db, user.id, renderer=deps.renderer, reports_dir=deps.settings.reports_dir
        )

    @router.get("")
    def list_reports(
        page: int = 1,
        page_size: int = 10,
        user: User = Depends(deps.current_user),
        db: Session = Depends(deps.get_db),
    ):
        return envelope(_listing(service(db, user).list(page, page_size), serialize_report))

    @router.post("")
    def generate_report(
        data: ReportRequest,
        user: User = Depends(deps.current_user),
        db: Session = Depends(deps.get_db),
    ):
        report = service(db, user).generate(data)
        return envelope(serialize_report(report), "Report generated successfully", 201)

    @router.post("/generate-data")
    def report_data(
        data: ReportRequest,
        user: User = Depends(deps.current_user),
        db: Session = Depends(deps.get_db),
    ):
        result = service(db, user).build_data(
            data.report_type, data.start_date, data.end_date, data.category_id
        )
        return envelope(result)

    @router.get("/export/{report_id}")
    def export_report(
        report_id: int,
        format: str = Query(default="pdf"),
        user: User = Depends(deps.current_user),
        db: Session = Depends(deps.get_db),
    ):
        reports = service(db, user)
        report = reports.get(report_id)
        if format == "pdf":
            return FileResponse(
                reports.pdf_path(report),
                media_type="application/pdf",
                filename=export_filename(report.title, "pdf"),
            )
        if format == "json":
            body = json.dumps(jsonable_encoder(serialize_report(report)), indent=2)
            return Response(
                content=body,
                media_type="application/json",
                headers={
                    "Content-Disposition": (
                        f'attachment; filename="{export_filename(report.title, "json")}"'
                    )
                },
            )
        raise ValidationFailed("Unsupported export format")

    return router


def recommendations_router(deps: AppDeps) -> APIRouter:
    router = APIRouter(prefix="/api/recommendations", tags=["recommendations"])

    @router.get("")
    def list_recommendations(
        type: Optional[RecommendationType] = None,
        page: int = 1,
        page_size: int = 10,
        user: User = Depends(deps.current_user),
        db: Session = Depends(deps.get_db),
    ):
        result = RecommendationService(db, user.id).list(type, page, page_size)
        return envelope(_listing(result, serialize_recommendation))

    @router.post("/generate")
    def generate_recommendations(
        user: User = Depends(deps.current_user),
        db: Session = Depends(deps.get_db),
    ):
        saved = RecommendationService(
            db, user.id, ai=deps.ai
        ).generate_automatic_recommendations()
        return envelope(
            [serialize_recommendation(rec) for rec in saved],
            "Recommendations generated successfully",
            201,
        )

    @router.put("/{recommendation_id}/read")
    def mark_recommendation_read(
        recommendation_id: int,
        user: User = Depends(deps.current_user),
        db: Session = Depends(deps.get_db),
    ):
        rec = RecommendationService(db, user.id).mark_as_read(recommendation_id)
        return envelope(serialize_recommendation(rec), "Recommendation marked as read")

    @router.delete("/{recommendation_id}")
    def delete_recommendation(
        recommendation_id: int,
        user: User = Depends(deps.current_user),
        db: Session = Depends(deps.get_db),
    ):
        RecommendationService(db, user.id).delete(recommendation_id)
        return envelope(None, "Recommendation deleted successfully")

    return router


def dashboard_router(deps: AppDeps) -> APIRouter:
    router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])

    @router.get("/overview")
    def overview(
        period: str = "month",
        user: User = Depends(deps.current_user),
        db: Session = Depends(deps.get_db),
    ):
        return envelope(DashboardService(db, user.id).overview(period))

    @router.get("/expenses-by-category")
    def expenses_by_category(
        period: str = "month",
        user: User = Depends(deps.current_user),
        db: Session = Depends(deps.get_db),
    ):
        return envelope(DashboardService(db, user.id).expenses_by_category(period))

    @router.get("/monthly-trends")
    def monthly_trends(
        months: int = 6,
        user: User = Depends(deps.current_user),
        db: Session = Depends(deps.get_db),
    ):
        return envelope(DashboardService(db, user.id).monthly_trends(months))

    @router.get("/global-budget")
    def global_budget(
        user: User = Depends(deps.current_user),
        db: Session = Depends(deps.get_db),
    ):
        return envelope(DashboardService(db, user.id).global_budget())

    return router


def chat_router(deps: AppDeps) -> APIRouter:
    router = APIRouter(prefix="/api/chat", tags=["chat"])

    @router.post("/messages")
    def send_message(
        data: ChatMessageIn,
        user: User = Depends(deps.ai_user),
        db: Session = Depends(deps.get_db),
    ):
        user_message, assistant_message = ChatService(
            db, user.id, ai=deps.ai
        ).send_message(data.content)
        return envelope(
            {
                "user_message": serialize_chat_message(user_message),
                "assistant_message": serialize_chat_message(assistant_message),
            },
            "Message sent",
            201,
        )

    @router.get("/messages")
    def history(
        page: int = 1,
        page_size: int = 20,
        user: User = Depends(deps.ai_user),
        db: Session = Depends(deps.get_db),
    ):
        result = ChatService(db, user.id).history(page, page_size)
        return envelope(_listing(result, serialize_chat_message))

    @router.delete("/messages")
    def clear_history(
        user: User = Depends(deps.ai_user),
        db: Session = Depends(deps.get_db),
    ):
        deleted = ChatService(db, user.id).clear()
        return envelope({"deleted_count": deleted}, "Chat history cleared")

    return router


ROUTER_FACTORIES = (
    auth_router,
    transactions_router,
    categories_router,
    alerts_router,
    reports_router,
    recommendations_router,
    dashboard_router,
    chat_router,
)
