import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException

from ai_client import CompletionClient
from api import ROUTER_FACTORIES, AppDeps, envelope, format_validation_errors
from config import get_settings
from database import SessionLocal
from errors import ErrorKind, ServiceError
from mailer import Mailer
from scheduler import InlineTaskQueue, SchedulerManager
from storage import MEDIA_URL_PREFIX, MediaStorage


logger = logging.getLogger(__name__)


def _load_app_version() -> str:
    try:
        import tomllib
    except ImportError:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except (OSError, tomllib.TOMLDecodeError):
        return "unknown"


APP_VERSION = _load_app_version()


def default_deps() -> AppDeps:
    settings = get_settings()
    scheduler = SchedulerManager() if settings.enable_scheduler else None
    return AppDeps(
        session_factory=SessionLocal,
        ai=CompletionClient(),
        mailer=Mailer(),
        tasks=scheduler.tasks if scheduler else InlineTaskQueue(),
        storage=MediaStorage(settings.media_dir),
        settings=settings,
        scheduler=scheduler,
    )


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code, content={"success": False, "message": message}
    )


def create_app(deps: Optional[AppDeps] = None) -> FastAPI:
    deps = deps or default_deps()
    app = FastAPI(title="MoneyWise API", version=APP_VERSION)
    app.state.deps = deps

    for factory in ROUTER_FACTORIES:
        app.include_router(factory(deps))

    media_dir = deps.settings.media_dir
    media_dir.mkdir(parents=True, exist_ok=True)
    app.mount(MEDIA_URL_PREFIX, StaticFiles(directory=str(media_dir)), name="media")

    @app.get("/")
    def root():
        return envelope({"name": "MoneyWise API", "version": APP_VERSION}, "MoneyWise API")

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        if exc.kind == ErrorKind.internal:
            logger.error(
                f"request_failed: path={request.url.path} error={exc.message}",
                exc_info=exc,
            )
        return _error(exc.status_code, exc.message)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return _error(400, format_validation_errors(exc.errors()))

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404 and exc.detail == "Not Found":
            return _error(404, "Route not found")
        return _error(exc.status_code, str(exc.detail))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"request_failed: path={request.url.path}")
        return _error(500, "Internal server error")

    @app.on_event("startup")
    def startup_event():
        if deps.scheduler is not None:
            deps.scheduler.start()

    @app.on_event("shutdown")
    def shutdown_event():
        if deps.scheduler is not None:
            deps.scheduler.stop()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)
