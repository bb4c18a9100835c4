import asyncio
import logging
import sys
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from starlette.middleware.gzip import GZipMiddleware

from readingsync.config import settings
from readingsync.api.v1 import readings, photos, thresholds, websocket
from readingsync.core.redis import close_redis, check_redis_connection
from readingsync.database import init_db, close_db, check_db_connection
from readingsync.middleware.logging import LoggingMiddleware
from readingsync.middleware.monitoring import MonitoringMiddleware
from readingsync.middleware.request_id import RequestIDMiddleware, RequestIDLogFilter
from readingsync.monitoring import metrics
from readingsync.services.realtime import get_fanout


def configure_logging():
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestIDLogFilter())
    logging.basicConfig(
        level=logging.DEBUG if settings.DEBUG else getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s',
        handlers=[handler],
    )


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    await init_db()

    relay_task = None
    if settings.REALTIME_USE_REDIS:
        relay_task = asyncio.create_task(get_fanout().listen())
        logger.info("Realtime relay started")

    yield

    if relay_task is not None:
        relay_task.cancel()
        try:
            await relay_task
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("Realtime relay exited with an error")
        await close_redis()
    await close_db()


app = FastAPI(
    title=settings.APP_NAME,
    description="""
    **ReadingSync API** - offline-first meter reading ingestion

    ## Features
    * Idempotent single, bulk and device sync writes
    * Consumption derived from each customer's prior reading
    * Rule-based anomaly scoring with per-tenant thresholds
    * Realtime reading and anomaly events via WebSocket
    * Photo uploads to S3-compatible storage
    """,
    version=settings.APP_VERSION,
    lifespan=lifespan,
    openapi_tags=[
        {"name": "readings", "description": "Reading ingestion and queries"},
        {"name": "photos", "description": "Reading photos"},
        {"name": "thresholds", "description": "Anomaly thresholds"},
        {"name": "websocket", "description": "Real-time WebSocket connections"},
        {"name": "monitoring", "description": "System monitoring"},
    ],
    docs_url="/docs",
    redoc_url="/redoc" if settings.DEBUG else None,
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Report request validation failures as 400"""
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": jsonable_encoder(exc.errors())},
    )


# =====================================
# Process Time Middleware
# =====================================
@app.middleware("http")
async def add_process_time(request: Request, call_next):
    """Add request processing time to response headers"""
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time

    response.headers["X-Process-Time"] = f"{process_time:.3f}s"

    return response


# =====================================
# Configure Middleware Stack
# =====================================

# GZIP Compression (minimum 1KB)
app.add_middleware(GZipMiddleware, minimum_size=1000)

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=[
        "X-Request-ID",
        "X-Process-Time",
        "X-Idempotent-Replay",
        "X-Idempotency-Key",
    ],
    max_age=3600,
)

# Custom middleware
app.add_middleware(MonitoringMiddleware)
app.add_middleware(RequestIDMiddleware)
app.add_middleware(LoggingMiddleware)

# Include routers
app.include_router(readings.router, prefix=f"{settings.API_V1_PREFIX}/readings", tags=["readings"])
app.include_router(photos.router, prefix=f"{settings.API_V1_PREFIX}/photos", tags=["photos"])
app.include_router(thresholds.router, prefix=f"{settings.API_V1_PREFIX}/anomaly-thresholds", tags=["thresholds"])
app.include_router(websocket.router, prefix=f"{settings.API_V1_PREFIX}/ws", tags=["websocket"])

# Monitoring endpoints (internal use)
if settings.EXPOSE_METRICS:
    app.include_router(
        metrics.router,
        prefix="/internal",
        tags=["monitoring"]
    )


@app.get("/health")
async def health_check():
    database_ok = await check_db_connection()
    redis_ok = await check_redis_connection() if settings.REALTIME_USE_REDIS else None
    return {
        "status": "healthy" if database_ok and redis_ok is not False else "degraded",
        "database": database_ok,
        "redis": redis_ok,
        "environment": settings.ENVIRONMENT,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": settings.APP_VERSION,
    }
