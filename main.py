"""
main.py
-------
FastAPI application factory and entry point.

Application lifecycle:
  1. App is created by create_application().
  2. lifespan context manager builds the AppContext on startup and closes
     it on shutdown. With RUN_WORKER_IN_PROCESS=true it also runs a worker
     pool inside the API process (handy for local development).
  3. Routers are registered with their URL prefixes.
  4. Global exception handlers turn domain errors into JSON responses.

Run with:
    uvicorn main:app --reload              # development
    uvicorn main:app --workers 4           # production (no --reload)
    python run_worker.py                   # background AI workers
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from chatroom_ai.api.routes import chatrooms
from chatroom_ai.core.config import settings
from chatroom_ai.core.context import AppContext
from chatroom_ai.core.exceptions import ChatroomError
from chatroom_ai.core.logging import configure_logging, get_logger
from chatroom_ai.core.redis import redis_healthy

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Startup / shutdown lifecycle hook.

    Startup:
      - Configure structured logging
      - Build the application context (DB engine, Redis, queue, cache, LLM)
      - Optionally start an in-process worker pool

    Shutdown:
      - Stop the worker pool, then close Redis and drain the DB pool
    """
    configure_logging(process="api")
    logger.info(
        "Starting up",
        app=settings.APP_NAME,
        env=settings.APP_ENV,
        debug=settings.DEBUG,
    )
    context = await AppContext.create(settings)
    app.state.context = context

    pool = None
    if settings.RUN_WORKER_IN_PROCESS:
        pool = context.build_worker_pool()
        await pool.start()

    yield

    logger.info("Shutting down")
    if pool is not None:
        await pool.stop()
    await context.close()


def create_application(use_lifespan: bool = True) -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Chatrooms with asynchronously generated AI replies, "
            "daily message quotas and a Redis-backed job queue."
        ),
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan if use_lifespan else None,
    )

    # ── CORS ─────────────────────────────────────────────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Routers ───────────────────────────────────────────────────────────────
    app.include_router(chatrooms.router)

    # ── Global Exception Handlers ─────────────────────────────────────────────

    @app.exception_handler(ChatroomError)
    async def chatroom_error_handler(
        request: Request, exc: ChatroomError
    ) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(
                "Request failed",
                path=request.url.path,
                error_code=exc.error_code,
                error=exc.message,
            )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.error(
            "Unhandled exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=True,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "message": "Internal server error"},
        )

    # ── Health Check ──────────────────────────────────────────────────────────

    @app.get("/health", tags=["Health"], summary="Service health check")
    async def health(request: Request) -> dict:
        redis_ok = await redis_healthy(request.app.state.context.redis)
        return {
            "status": "ok" if redis_ok else "degraded",
            "app": settings.APP_NAME,
            "env": settings.APP_ENV,
            "redis": redis_ok,
        }

    return app


app = create_application()
