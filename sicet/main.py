import os
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import Settings, get_settings
from .db import Database
from .errors import SicetError
from .logging import setup_logging, RequestIdMiddleware
from .services.mailer import Mailer
from .auth.router import router as auth_router, admin_router
from .routes.devices import router as devices_router, qr_router
from .routes.kpis import router as kpis_router
from .routes.todolists import router as todolists_router, tasks_router
from .routes.alerts import router as alerts_router
from .routes.exports import router as exports_router
from .routes.matrix import router as matrix_router
from .routes.dashboard import router as dashboard_router
from .routes.cron import router as cron_router
from .routes.reports import router as reports_router
from .routes.activities import router as activities_router


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Dati non validi"
    first = errors[0]
    field = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path"))
    message = first.get("msg", "valore non valido")
    if message.startswith("Value error, "):
        message = message[len("Value error, "):]
    return f"{field}: {message}" if field else message


def register_error_handlers(app: FastAPI) -> None:
    log = structlog.get_logger()

    @app.exception_handler(SicetError)
    async def _sicet_error(request: Request, exc: SicetError):
        if exc.status_code >= 500:
            log.error("request_failed", path=request.url.path, error=exc.message)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)}, headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"error": _validation_message(exc)})

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        log.exception("unhandled_error", path=request.url.path, method=request.method)
        return JSONResponse(status_code=500, content={"error": "Errore interno del server"})


def create_app(settings: Optional[Settings] = None, mailer=None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.log_level)
    app = FastAPI(title=settings.app_name)

    app.state.settings = settings
    app.state.db = Database(settings)
    app.state.mailer = mailer or Mailer(settings)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    register_error_handlers(app)

    # Routers
    app.include_router(auth_router)
    app.include_router(admin_router)
    app.include_router(devices_router)
    app.include_router(qr_router)
    app.include_router(kpis_router)
    app.include_router(todolists_router)
    app.include_router(tasks_router)
    app.include_router(alerts_router)
    app.include_router(exports_router)
    app.include_router(matrix_router)
    app.include_router(dashboard_router)
    app.include_router(cron_router)
    app.include_router(reports_router)
    app.include_router(activities_router)

    # Metrics
    Instrumentator().instrument(app).expose(app)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.on_event("startup")
    def _startup():
        log = structlog.get_logger()
        # Ensure local SQLite directory exists
        if settings.database_url.startswith("sqlite:///./"):
            os.makedirs("var", exist_ok=True)
        if settings.auto_create_db:
            app.state.db.create_all()
            log.info("database_tables_verified")
        log.info("startup_complete", app=settings.app_name, environment=settings.environment)

    @app.on_event("shutdown")
    def _shutdown():
        app.state.db.dispose()

    return app


app = create_app()
