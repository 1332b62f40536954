"""
Main FastAPI application: runs the scrape scheduler and serves its status
"""
import contextvars
import logging
import uuid
from contextlib import asynccontextmanager
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request as StarletteRequest
from starlette.responses import Response as StarletteResponse
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
import sentry_sdk
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from onlinewatch.config import settings
from onlinewatch.cycle import cycle_id_var
from onlinewatch.database import db
from onlinewatch.metrics import metrics
from onlinewatch.routes import status
from onlinewatch.scheduler import scrape_scheduler

# Request correlation ID: set per-request, available via contextvars in any async code
request_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="-")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(request_id)s/%(cycle_id)s]: %(message)s"


class _ContextFilter(logging.Filter):
    """Inject the current request_id and scrape cycle_id into every log record."""
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get("-")  # type: ignore[attr-defined]
        record.cycle_id = cycle_id_var.get("-")  # type: ignore[attr-defined]
        return True


def configure_logging(environment: str) -> None:
    handler = logging.StreamHandler()
    handler.addFilter(_ContextFilter())
    if environment != "development":
        # Structured JSON logging for production
        from pythonjsonlogger import json as jsonlogger
        handler.setFormatter(jsonlogger.JsonFormatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(request_id)s %(cycle_id)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        ))
    else:
        # Human-readable format for development
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.basicConfig(level=logging.INFO, handlers=[handler], force=True)
    # httpx logs every request at INFO: one line per channel per cycle is too much
    logging.getLogger("httpx").setLevel(logging.WARNING)


configure_logging(settings.ENVIRONMENT)
logger = logging.getLogger(__name__)

# Initialize Sentry if DSN is provided
if settings.SENTRY_DSN:
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        traces_sample_rate=1.0 if settings.ENVIRONMENT == "development" else 0.1,
        integrations=[AsyncioIntegration()],
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    await db.connect()
    await db.ensure_schema()
    await scrape_scheduler.start()
    logger.info("Server starting on %s:%d", settings.API_HOST, settings.API_PORT)
    yield
    await scrape_scheduler.stop()
    await db.close()


# Create FastAPI app
app = FastAPI(
    title="onlinewatch",
    description="Polls channel online-user lists and records visits",
    version="1.0.0",
    docs_url="/docs" if settings.ENVIRONMENT == "development" else None,
    redoc_url=None,
    lifespan=lifespan,
)


# Request correlation ID middleware: generates X-Request-ID for tracing
class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: StarletteRequest, call_next) -> StarletteResponse:
        rid = request.headers.get("x-request-id") or uuid.uuid4().hex[:16]
        request_id_var.set(rid)
        response = await call_next(request)
        response.headers["X-Request-ID"] = rid
        return response

app.add_middleware(RequestIdMiddleware)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_methods=["GET", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)

app.include_router(status.router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "name": "onlinewatch",
        "version": "1.0.0",
        "status": "running" if scrape_scheduler.running else "stopped",
    }


@app.get("/metrics")
async def prometheus_metrics():
    """Prometheus-compatible metrics endpoint."""
    return PlainTextResponse(
        content=metrics.render(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "onlinewatch.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        reload=False,
    )
