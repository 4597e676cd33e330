from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Depends, Request, Response, status
from fastapi.exceptions import HTTPException, RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from procurement.config import Settings, settings as default_settings
from procurement.database import init_db, close_db, get_db
from procurement.errors import ProcurementError
from procurement.logging_config import setup_logging
from procurement.middleware.correlation import CorrelationIdMiddleware
from procurement.routes.purchase_orders import router as po_router

# Import models so they are registered with Base.metadata
import procurement.models  # noqa: F401

logger = structlog.get_logger()

API_PREFIX = "/api/v1"


def _error_body(code: str, message: str, **extra) -> dict:
    return {"error": {"code": code, "message": message, **extra}}


# ---------------------------------------------------------------------------
# Error envelope: {"error": {"code": "...", "message": "...", "details": ...}}
# ---------------------------------------------------------------------------

async def procurement_error_handler(request: Request, exc: ProcurementError) -> JSONResponse:
    log = logger.warning if exc.http_status < 500 else logger.error
    log("procurement_error", code=exc.code.value, error=exc.message, path=request.url.path)
    # Retryable errors (lock timeout, version conflict) carry a Retry-After hint.
    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(
        status_code=exc.http_status,
        content={"error": {**exc.to_dict(), "retryable": exc.retryable}},
        headers=headers,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, str):
        detail = _error_body("HTTP_ERROR", detail)
    elif isinstance(detail, dict) and "error" not in detail:
        detail = {"error": detail}
    return JSONResponse(status_code=exc.status_code, content=detail, headers=exc.headers)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    logger.info("request_validation_failed", path=request.url.path, errors=len(details))
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=_error_body("VALIDATION_ERROR", "Request validation failed", details=details),
    )


async def health(response: Response, db: AsyncSession = Depends(get_db)):
    checks = {}
    try:
        await db.execute(text("SELECT 1"))
        checks["db"] = "ok"
    except SQLAlchemyError as e:
        logger.error("health_check_db_failed", error=str(e))
        checks["db"] = "error"

    healthy = all(v == "ok" for v in checks.values())
    if not healthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return {
        "status": "healthy" if healthy else "unhealthy",
        "version": default_settings.APP_VERSION,
        "checks": checks,
    }


def create_app(cfg: Optional[Settings] = None) -> FastAPI:
    cfg = cfg or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(cfg)
        logger.info("starting_procurement_engine", env=cfg.ENVIRONMENT)
        await init_db()
        yield
        await close_db()

    app = FastAPI(
        title=cfg.APP_NAME,
        version=cfg.APP_VERSION,
        docs_url="/docs" if cfg.DEBUG else None,
        redoc_url="/redoc" if cfg.DEBUG else None,
        lifespan=lifespan,
    )

    app.add_exception_handler(ProcurementError, procurement_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins_list,
        allow_origin_regex=cfg.CORS_ORIGIN_REGEX,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Requested-With", "X-Request-ID"],
    )

    app.add_api_route("/health", health, methods=["GET"], tags=["System"])
    app.include_router(
        po_router, prefix=f"{API_PREFIX}/purchase-orders", tags=["Purchase Orders"]
    )
    return app


app = create_app()
