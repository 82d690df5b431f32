"""
main.py
FastAPI application entry point for the booking ledger API.

- Structured JSON logging, tagged with the request id of the current request
- Domain errors mapped to 409 / 422 / 404, everything else to 503 "System busy"
- Health probe covering the database, Redis and the ledger template shard
- Prometheus metrics at /metrics
"""

import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar
from logging import LogRecord
from typing import Awaitable, Callable, Dict

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from config import redis_client as redis_state
from config.database import AsyncSessionLocal, close_db, init_db
from config.redis_client import close_redis, init_redis
from config.settings import settings
from services.admin.router import router as admin_router
from services.availability.router import router as availability_router
from services.booking.router import router as booking_router
from services.config.provider import seed_defaults
from services.config.router import router as config_router
from services.ledger.router import router as ledger_router
from services.ledger.storage import SqlLedgerStorage, ensure_template_shard
from shared.errors import LedgerError
from shared.utils.metrics import LEDGER_FAILURES

ROUTERS = (availability_router, booking_router, ledger_router, config_router, admin_router)

request_id_var: ContextVar[str] = ContextVar("request_id", default="-")


# ── Logging ──────────────────────────────────────────────────

class JSONFormatter(logging.Formatter):
    """One JSON object per line, carrying the request id it was logged under."""

    def format(self, record: LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "request_id": request_id_var.get(),
            "msg": record.getMessage(),
            "instance": os.getenv("INSTANCE_NAME", "unknown"),
        }
        kind = getattr(record, "kind", None)
        if kind:
            entry["kind"] = kind
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


def configure_logging() -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.basicConfig(level=logging.DEBUG if settings.DEBUG else logging.INFO, handlers=[handler])


configure_logging()
logger = logging.getLogger(__name__)


# ── Lifespan ─────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    await init_redis()

    async with AsyncSessionLocal() as session:
        if settings.APP_ENV == "development":
            await seed_defaults(session)
        # Raises LedgerSchemaError on an off-contract template header
        template = await ensure_template_shard(session)

    logger.info(f"{settings.APP_NAME} v{settings.APP_VERSION} ready (template shard {template.name!r})")
    yield

    await close_redis()
    await close_db()
    logger.info("Shutdown complete")


# ── Error mapping ────────────────────────────────────────────

def register_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(LedgerError)
    async def ledger_error(request: Request, exc: LedgerError):
        """Only capacity, validation and not-found messages reach the client."""
        LEDGER_FAILURES.labels(kind=exc.kind).inc()
        level = logging.INFO if exc.public else logging.ERROR
        logger.log(level, f"{request.method} {request.url.path}: {exc.message}", extra={"kind": exc.kind})
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.public_message, "code": exc.kind, "request_id": request_id_var.get()},
        )

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        LEDGER_FAILURES.labels(kind="internal_error").inc()
        logger.error(f"{request.method} {request.url.path}: unhandled {type(exc).__name__}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "detail": str(exc) if settings.DEBUG else "An internal server error occurred",
                "request_id": request_id_var.get(),
            },
        )


# ── Health ───────────────────────────────────────────────────

async def _probe(checks: Dict[str, str], name: str, call: Callable[[], Awaitable]) -> None:
    try:
        await call()
        checks[name] = "ok"
    except Exception as e:
        logger.warning(f"Health check {name} failed: {e}")
        checks[name] = "error"
        checks["status"] = "degraded"


async def _check_database():
    from sqlalchemy import text

    async with AsyncSessionLocal() as session:
        await session.execute(text("SELECT 1"))


async def _check_redis():
    if redis_state.redis_client is None:
        raise RuntimeError("Redis not initialized")
    await redis_state.redis_client.ping()


async def _check_template():
    async with AsyncSessionLocal() as session:
        shard = await SqlLedgerStorage(session).get_shard(settings.LEDGER_TEMPLATE_SHARD)
    if shard is None or not shard.is_template:
        raise RuntimeError("template shard missing")


# ── App Factory ──────────────────────────────────────────────

def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="""
## Branch Booking Ledger API

- **Availability**: cached per-slot occupancy for the booking picker
- **Bookings**: capacity-checked submission, lookup, cancellation, status
- **Ledger**: fortnight shard views with date headers, dividers and styles
- **Config**: branches, capacities and time slots
- **Admin**: reconciliation trigger, run log, intake archiving

Admin endpoints require the `X-Admin-Key` header.
        """,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        """Request id (taken from the caller when given) and processing time."""
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        token = request_id_var.set(request_id)
        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{(time.perf_counter() - start) * 1000:.2f}ms"
        return response

    register_error_handlers(app)

    @app.get("/health", tags=["Health"], include_in_schema=False)
    async def health():
        checks = {"status": "ok", "version": settings.APP_VERSION}
        await _probe(checks, "database", _check_database)
        await _probe(checks, "redis", _check_redis)
        await _probe(checks, "ledger_template", _check_template)
        return JSONResponse(content=checks, status_code=200 if checks["status"] == "ok" else 503)

    @app.get("/", include_in_schema=False)
    async def root():
        return {"name": settings.APP_NAME, "version": settings.APP_VERSION, "docs": "/docs"}

    for router in ROUTERS:
        app.include_router(router)

    Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Monitoring"])
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=1 if settings.DEBUG else settings.WORKERS,
        log_level="debug" if settings.DEBUG else "info",
    )
