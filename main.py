"""
FastAPI entry point
Services are built in the lifespan and exposed on app.state.container
"""
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api import funds, jobs, market
from config import redact_database_url, settings
from schemas import HealthOut
from services.container import build_container, start_container, stop_container
from services.errors import ResourceUnavailableError


# Logger - Structured logging with request tracking
class RequestIDFilter(logging.Filter):
    """Add request_id to all log records"""
    def filter(self, record):
        if not hasattr(record, 'request_id'):
            record.request_id = 'startup'
        return True


logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s'
)
# Filters on the root logger do not see records from child loggers; install on handlers
for _handler in logging.getLogger().handlers:
    _handler.addFilter(RequestIDFilter())
logger = logging.getLogger(__name__)


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("🚀 Starting Fund Resolver API")
    logger.info(f"📍 Environment: {settings.ENVIRONMENT}")
    logger.info(f"🔌 DB: {redact_database_url(settings.DATABASE_URL)}")

    container = getattr(app.state, "container", None)
    if container is None:
        container = build_container(settings)
        app.state.container = container
    await start_container(container)
    logger.info(f"📊 Cache backend: {container.cache.backend}; store: {container.store_manager.state.value}")

    yield

    logger.info("🛑 Shutting down Fund Resolver API")
    await stop_container(container)


app = FastAPI(
    title="Fund Resolver API",
    description="Tiered fund data resolution with scheduled refresh and backfill",
    version="1.0.0",
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    lifespan=lifespan
)


def _error_body(code: int, message, request_id: str) -> dict:
    return {"error": {"code": code, "message": message, "request_id": request_id}}


# Global exception handler for consistency
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTPException with request_id"""
    request_id = request.headers.get("X-Request-Id", "unknown")
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc.status_code, exc.detail, request_id))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = request.headers.get("X-Request-Id", "unknown")
    return JSONResponse(status_code=422, content=_error_body(422, exc.errors(), request_id))


@app.exception_handler(ResourceUnavailableError)
async def resource_unavailable_handler(request: Request, exc: ResourceUnavailableError):
    """Cache or store unreachable: nothing to serve"""
    request_id = request.headers.get("X-Request-Id", "unknown")
    logger.error(f"[{request_id}] {exc}")
    return JSONResponse(
        status_code=503,
        content=_error_body(503, f"{exc.resource} temporarily unavailable", request_id),
        headers={"Retry-After": "5"},
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions gracefully"""
    request_id = request.headers.get("X-Request-Id", "unknown")
    logger.error(f"[{request_id}] Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content=_error_body(500, "Internal Server Error", request_id))


# Request ID middleware with logging context
@app.middleware("http")
async def add_request_id_header(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
    logger.info(f"[{request_id}] {request.method} {request.url.path}")
    try:
        response = await call_next(request)
        response.headers["X-Request-Id"] = request_id
        logger.info(f"[{request_id}] Response: {response.status_code}")
    except Exception as e:
        logger.exception(f"[{request_id}] Unhandled error: {e}")
        raise
    return response


# Middlewares
origins = settings.cors_origins_list if settings.cors_origins_list else ["*"]
app.add_middleware(CORSMiddleware, allow_origins=origins, allow_credentials=True, allow_methods=["*"], allow_headers=["*"])

# Routers
app.include_router(funds.router, prefix="/api/funds")
app.include_router(jobs.router, prefix="/api/jobs")
app.include_router(market.router, prefix="/api/market")


@app.get("/")
async def root():
    return {
        "message": "Fund Resolver",
        "version": "1.0.0",
        "status": "operational",
        "environment": settings.ENVIRONMENT,
        "timestamp": _utcnow_iso(),
        "endpoints": {
            "health": "/health",
            "docs": "/docs" if settings.DEBUG else None,
            "funds": "/api/funds/{identifier}",
            "charts": "/api/funds/{identifier}/chart?period=1Y",
            "jobs": "/api/jobs/stats",
            "market": "/api/market/status",
        }
    }


@app.get("/health", response_model=HealthOut)
async def health_check(request: Request):
    c = request.app.state.container

    db_status = "healthy" if await c.store.ping() else "unhealthy"
    cache_status = "healthy" if await c.cache.is_connected() else "unavailable"

    providers = {}
    for provider in c.providers:
        try:
            providers[provider.name] = "healthy" if await provider.health_check() else "unavailable"
        except Exception as e:
            logger.warning(f"Health check for {provider.name} raised {type(e).__name__}: {e}")
            providers[provider.name] = "unavailable"

    overall_status = "healthy" if db_status == "healthy" else "degraded"

    return {
        "status": overall_status,
        "timestamp": _utcnow_iso(),
        "services": {
            "database": db_status,
            "cache": cache_status,
            "cache_backend": c.cache.backend,
            "providers": providers,
            "scheduler": "running" if c.engine.is_running else "stopped",
            "backfill_worker": "running" if c.backfill_worker.is_running else "stopped",
        },
        "environment": settings.ENVIRONMENT,
    }


if __name__ == "__main__":
    uvicorn.run("main:app", host=settings.API_HOST, port=settings.API_PORT, reload=settings.DEBUG)
