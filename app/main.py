from __future__ import annotations
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
import structlog

from .db import dispose_db, init_db
from .routers import deliveries, entries, visitors
from .core.config import get_settings
from .core.errors import AccessError
from .core.log import configure_logging
from .core.redis import ping_redis
from .core.nats import nats_connect, nats_close
from .schemas import ErrorRead

settings = get_settings()
configure_logging(settings.log_level, settings.log_json)
logger = structlog.get_logger()

@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    # best-effort connect to infra; scans fail closed while redis is down
    if not await ping_redis():
        logger.warning("redis_unreachable", url=settings.redis_url)
    if settings.events_enabled:
        try:
            await nats_connect()
        except Exception as e:
            logger.warning("nats_unreachable", urls=settings.nats_urls, error=str(e))
    logger.info("gate_access_started")
    yield
    try:
        await nats_close()
    except Exception as e:
        logger.warning("nats_close_failed", error=str(e))
    await dispose_db()

ERROR_RESPONSES = {
    code: {"model": ErrorRead} for code in (400, 403, 404, 409, 503)
}

app = FastAPI(title="gate-access-svc", lifespan=lifespan, responses=ERROR_RESPONSES)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:8081",
        "http://127.0.0.1:8081",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.exception_handler(AccessError)
async def access_error_handler(request: Request, exc: AccessError):
    logger.info("access_refused", path=request.url.path, code=exc.code)
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorRead(detail=exc.message, code=exc.code, retryable=exc.retryable).model_dump(),
    )

app.include_router(visitors.router)
app.include_router(deliveries.router)
app.include_router(entries.router)

@app.get("/health")
async def health():
    return {"status": "ok", "service": "gate-access-svc"}

Instrumentator().instrument(app).expose(app)
