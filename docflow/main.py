"""
Docflow API
Document workflow engine: templates, instances, SLA tracking, permissions and notifications.
"""

from dotenv import load_dotenv
load_dotenv()

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import Engine
from sqlmodel import create_engine
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import settings
from .deps import Services
from .errors import DomainError
from .logging_config import get_logger, set_request_id, setup_logging
from .repository import create_schema
from .routers import directory, metrics, notifications, permissions, sla, templates, workflows
from .scheduler import SLAScheduler
from .util import new_id

logger = get_logger(__name__)

_HTTP_CODES = {401: "UNAUTHORIZED", 403: "NOT_AUTHORIZED", 404: "NOT_FOUND", 405: "METHOD_NOT_ALLOWED"}


# ============================================================================
# Database Configuration
# ============================================================================

def build_engine(database_url: Optional[str] = None) -> Engine:
    url = database_url or settings.database_url
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args, echo=False)


# ============================================================================
# App Factory
# ============================================================================

def create_app(engine: Optional[Engine] = None, start_scheduler: Optional[bool] = None) -> FastAPI:
    setup_logging()
    engine = engine or build_engine()
    if settings.auto_create_schema:
        create_schema(engine)
    services = Services(engine)

    run_scheduler = settings.scheduler_enabled if start_scheduler is None else start_scheduler

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        scheduler = SLAScheduler(services) if run_scheduler else None
        if scheduler:
            scheduler.start()
        app.state.scheduler = scheduler
        try:
            yield
        finally:
            if scheduler:
                scheduler.stop()

    app = FastAPI(
        title="Docflow API",
        version="1.0.0",
        description="Document workflow engine with SLA tracking and prioritized permissions",
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id_header(request: Request, call_next):
        request_id = request.headers.get("X-Request-Id") or new_id("req_")
        set_request_id(request_id)
        resp: Response = await call_next(request)
        resp.headers["X-Request-Id"] = request_id
        return resp

    # ------------------------------------------------------------------
    # Error handlers
    # ------------------------------------------------------------------

    @app.exception_handler(DomainError)
    async def domain_error_handler(request: Request, exc: DomainError):
        if exc.http_status >= 500:
            logger.error(exc.message, extra={"error_code": exc.error_code})
        else:
            logger.info(exc.message, extra={"error_code": exc.error_code})
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        problems = [
            {"path": ".".join(str(p) for p in err.get("loc", [])), "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content={
                "error": {
                    "code": "VALIDATION_ERROR",
                    "message": "Request validation failed",
                    "details": {"problems": problems},
                }
            },
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": {
                    "code": _HTTP_CODES.get(exc.status_code, "HTTP_ERROR"),
                    "message": str(exc.detail),
                    "details": {},
                }
            },
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def default_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error", extra={"error_code": "INTERNAL_ERROR"})
        return JSONResponse(
            status_code=500,
            content={"error": {"code": "INTERNAL_ERROR", "message": "Unhandled error", "details": {}}},
        )

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------

    app.include_router(workflows.router)
    app.include_router(templates.router)
    app.include_router(permissions.router)
    app.include_router(sla.router)
    app.include_router(metrics.router)
    app.include_router(notifications.router)
    app.include_router(directory.router)

    @app.get("/health", tags=["health"])
    def health():
        return {"status": "ok", "env": settings.app_env}

    logger.info("Docflow API ready", extra={"status": settings.app_env})
    return app


app = create_app()
