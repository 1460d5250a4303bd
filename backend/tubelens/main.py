import asyncio
import logging
import time
import traceback
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from tubelens.config import settings
from tubelens.database import async_session, engine
from tubelens.errors import InvalidTransition, TubelensError
from tubelens.middleware.logging_config import configure_logging

configure_logging(settings.log_level, settings.log_format)

from tubelens.api.analysis import router as analysis_router  # noqa: E402
from tubelens.api.deps import get_services  # noqa: E402
from tubelens.api.extraction import router as extraction_router  # noqa: E402
from tubelens.api.metrics import router as metrics_router  # noqa: E402
from tubelens.api.runs import router as runs_router  # noqa: E402
from tubelens.api.slide_analysis import router as slide_analysis_router  # noqa: E402
from tubelens.api.transcripts import router as transcripts_router  # noqa: E402
from tubelens.services.container import Services, build_services  # noqa: E402

logger = logging.getLogger("tubelens")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: verify DB connection
    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))

    services = build_services(settings, async_session)
    app.state.services = services
    # Run state lives in this process only; anything left in flight is lost
    await services.registry.reclaim_orphans()
    sweeper = asyncio.create_task(
        services.events.run_sweeper(settings.event_log_sweep_interval_seconds),
        name="event-log-sweeper",
    )
    yield
    # Shutdown
    sweeper.cancel()
    await services.runner.shutdown()
    await asyncio.gather(sweeper, return_exceptions=True)
    await engine.dispose()


app = FastAPI(
    title="tubelens",
    description="YouTube transcript analysis and slide extraction with resumable run streams",
    version="0.1.0",
    lifespan=lifespan,
)

# ── CORS ─────────────────────────────────────────────────────────────────────
origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "X-Request-ID", "Last-Event-ID"],
    expose_headers=["X-Request-ID", "X-Run-Id", "X-Analysis-Version"],
)

# ── Rate limiting middleware ─────────────────────────────────────────────────
from tubelens.middleware.rate_limit import RateLimitMiddleware  # noqa: E402

app.add_middleware(RateLimitMiddleware)

# ── Request context middleware (request ID + timing) ─────────────────────────
from tubelens.middleware.request_context import RequestContextMiddleware  # noqa: E402

app.add_middleware(RequestContextMiddleware)

# ── Prometheus metrics middleware ────────────────────────────────────────────
from tubelens.middleware.metrics import PrometheusMiddleware  # noqa: E402

app.add_middleware(PrometheusMiddleware)


@app.exception_handler(TubelensError)
async def tubelens_exception_handler(request: Request, exc: TubelensError):
    if isinstance(exc, InvalidTransition):
        logger.error(
            "Invariant violated on %s %s: %s",
            request.method, request.url.path, exc, exc_info=exc,
        )
    else:
        logger.info("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Return detailed error info in development mode so 500s are debuggable."""
    tb = traceback.format_exc()
    logger.error(
        "Unhandled %s on %s %s: %s\n%s",
        type(exc).__name__, request.method, request.url.path, exc, tb,
    )
    detail = f"{type(exc).__name__}: {exc}"
    if settings.environment == "development":
        return JSONResponse(
            status_code=500,
            content={"detail": detail, "traceback": tb.splitlines()[-5:]},
        )
    return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})


# Register API routers
app.include_router(analysis_router)
app.include_router(extraction_router)
app.include_router(slide_analysis_router)
app.include_router(runs_router)
app.include_router(transcripts_router)
app.include_router(metrics_router)


# ── Health check ─────────────────────────────────────────────────────────────

_health_cache: dict = {}
_health_cache_ts: float = 0.0
HEALTH_CACHE_TTL = 10.0  # seconds


@app.get("/api/health")
async def health_check(services: Services = Depends(get_services)):
    global _health_cache, _health_cache_ts

    now = time.time()
    if _health_cache and (now - _health_cache_ts) < HEALTH_CACHE_TTL:
        return _health_cache

    components: dict = {}

    # Database
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        components["database"] = {"status": "connected"}
    except Exception as exc:
        components["database"] = {"status": "disconnected", "error": str(exc)}

    # Redis (rate limiting only; the service runs without it)
    try:
        r = aioredis.from_url(settings.redis_url, decode_responses=True)
        await r.ping()
        await r.aclose()
        components["redis"] = {"status": "connected"}
    except Exception as exc:
        components["redis"] = {"status": "disconnected", "error": str(exc)}

    # Ollama
    if await services.llm.is_available():
        components["ollama"] = {"status": "ready", "model": services.llm.model}
    else:
        components["ollama"] = {"status": "unavailable", "model": services.llm.model}

    components["runs"] = {"in_flight": services.runner.active}

    db_ok = components["database"]["status"] == "connected"
    others_ok = components["redis"]["status"] == "connected" and components["ollama"]["status"] == "ready"

    if db_ok and others_ok:
        overall = "healthy"
    elif not db_ok:
        overall = "unhealthy"
    else:
        overall = "degraded"

    result = {
        "status": overall,
        "environment": settings.environment,
        "components": components,
    }

    _health_cache = result
    _health_cache_ts = now
    return result
