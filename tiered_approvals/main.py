from fastapi import FastAPI, Depends, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import HTTPException, RequestValidationError
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import structlog

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from tiered_approvals.config import settings
from tiered_approvals.database import init_db, close_db, get_db
from tiered_approvals.dependencies import init_services
from tiered_approvals.logging_config import setup_logging
from tiered_approvals.middleware.correlation import CorrelationIdMiddleware
from tiered_approvals.services.errors import ApprovalLevelError
from tiered_approvals.services.pg_listener import PgChangeListener

# Import models so they are registered with Base.metadata
import tiered_approvals.models  # noqa: F401

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info("starting_tiered_approvals", env=settings.ENVIRONMENT)
    await init_db()
    init_services(app)

    listener = None
    if settings.REALTIME_ENABLED:
        listener = PgChangeListener(app.state.change_feed)
        await listener.start()
    yield
    if listener is not None:
        await listener.stop()
    await close_db()


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Global exception handlers. Every error body is
# {"error": {"code": "...", "message": "..."}}
# ---------------------------------------------------------------------------

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, str):
        detail = {"error": {"code": "HTTP_ERROR", "message": detail}}
    elif isinstance(detail, dict) and "error" not in detail:
        detail = {"error": detail}
    return JSONResponse(status_code=exc.status_code, content=detail, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={
            "error": {
                "code": "VALIDATION_ERROR",
                "message": "Request validation failed",
                "details": jsonable_errors(exc),
            }
        },
    )


@app.exception_handler(ApprovalLevelError)
async def approval_level_exception_handler(request: Request, exc: ApprovalLevelError) -> JSONResponse:
    if exc.retryable:
        logger.error("approval_level_request_failed", code=exc.code, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_detail())


def jsonable_errors(exc: RequestValidationError) -> list:
    # pydantic may put exception objects in "ctx"; keep only what JSON can carry
    return [
        {key: value for key, value in error.items() if key in ("loc", "msg", "type")}
        for error in exc.errors()
    ]


app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_origin_regex=settings.CORS_ORIGIN_REGEX,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Requested-With", "X-Request-ID"],
)


@app.get("/health", tags=["System"])
async def health(response: Response, db: AsyncSession = Depends(get_db)):
    health_status = {"status": "healthy", "version": settings.APP_VERSION, "checks": {}}

    try:
        await db.execute(text("SELECT 1"))
        health_status["checks"]["db"] = "ok"
    except Exception as e:
        logger.error("health_check_db_failed", error=str(e))
        health_status["checks"]["db"] = "error"
        health_status["status"] = "unhealthy"

    if health_status["status"] == "unhealthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return health_status


# --- Routers ---
from tiered_approvals.routes.approval_levels import router as approval_levels_router  # noqa: E402
from tiered_approvals.routes.approvers import router as approvers_router  # noqa: E402

app.include_router(approval_levels_router, prefix="/api/v1", tags=["Approval Levels"])
app.include_router(approvers_router, prefix="/api/v1", tags=["Approvers"])
