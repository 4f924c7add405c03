"""FastAPI application factory.

Learn: App factory pattern — create_app() returns a configured FastAPI
instance. Lifespan manages startup/shutdown (Redis pool, sweep worker,
database engine). Middleware, CORS, exception handlers and routers are
all registered here; each concern lives in its own module.
"""

import asyncio
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

from reps import __version__
from reps.api import api_router
from reps.api.auth import clear_session_cookie
from reps.auth.gate import AccountBlockedError
from reps.config import settings

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle.

    Learn: Anything before `yield` runs at startup, after `yield` runs at
    shutdown.
    """
    logger.info(
        "reps.starting",
        version=__version__,
        environment=settings.environment,
        port=settings.port,
    )

    from reps.redis_pool import close_redis, init_redis
    try:
        await init_redis()
        logger.info("reps.redis_connected")
    except (RedisError, OSError) as e:
        # Redis is optional — without it requests are simply not rate limited
        logger.warning("reps.redis_unavailable", error=str(e))

    from reps.services.sweeper import SweepWorker
    sweeper = SweepWorker(poll_interval=settings.sweep_interval_seconds)
    sweep_task = asyncio.create_task(sweeper.run_loop())
    logger.info("reps.sweeper_started")

    yield

    logger.info("reps.shutdown")

    sweeper.stop()
    sweep_task.cancel()
    try:
        await sweep_task
    except asyncio.CancelledError:
        pass

    await close_redis()

    from reps.db.engine import engine
    await engine.dispose()


async def account_blocked_handler(request: Request, exc: AccountBlockedError) -> JSONResponse:
    """Blocked is a 403, distinct from 401, and drops the browser cookie."""
    response = JSONResponse(status_code=403, content={"detail": "Account blocked"})
    clear_session_cookie(response)
    return response


def create_app() -> FastAPI:
    """Build and return the FastAPI application."""
    app = FastAPI(
        title="reps",
        description="Passwordless sign-in, CLI device authorization and sessions",
        version=__version__,
        lifespan=lifespan,
    )

    # ── Middleware stack ──────────────────────────────────────
    # Note: Starlette middleware executes in reverse order of registration.
    # Request flow: CORS → RateLimit → Security → RequestId → handler

    from reps.middleware.rate_limit import RateLimitMiddleware
    from reps.middleware.request_id import RequestIdMiddleware
    from reps.middleware.security import SecurityHeadersMiddleware

    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        RateLimitMiddleware,
        default_rpm=settings.rate_limit_rpm,
        auth_rpm=settings.rate_limit_auth_rpm,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(AccountBlockedError, account_blocked_handler)

    app.include_router(api_router)

    return app


# Default app instance (used by uvicorn: reps.main:app)
app = create_app()
