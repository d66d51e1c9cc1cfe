from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException

from .db import TaskStorage
from .errors import PROBLEM_CONTENT_TYPE, ProblemError, StorageError, problem_body
from .logging_setup import setup_logging
from .routers import tasks as tasks_router
from .settings import Settings, get_settings

logger = logging.getLogger(__name__)

openapi_tags = [
    {"name": "health", "description": "Service health and status endpoints."},
    {"name": "tasks", "description": "CRUD operations for tasks."},
]


def _problem_response(status_code: int, detail: str, errors=None, headers=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=problem_body(status_code, detail, errors),
        media_type=PROBLEM_CONTENT_TYPE,
        headers=headers,
    )


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ProblemError)
    async def problem_error_handler(request: Request, exc: ProblemError) -> JSONResponse:
        """Render errors raised by request handlers as Problem Details."""
        return _problem_response(exc.status, exc.detail, exc.errors)

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
        """Storage failures become a generic 500; the cause is only logged."""
        logger.error(
            "Storage error during %s %s (%s): %s",
            request.method,
            request.url.path,
            exc.operation,
            exc.message,
            exc_info=exc,
        )
        return _problem_response(500, "An unexpected error occurred")

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        """
        Framework-level request parsing failures are malformed requests.
        """
        errors = [
            {"field": ".".join(str(part) for part in e.get("loc", ())[1:]) or "request", "message": e["msg"]}
            for e in exc.errors()
        ]
        return _problem_response(400, "Malformed request", errors)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return _problem_response(exc.status_code, str(exc.detail), headers=getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all that never leaks internal details."""
        logger.error("Unhandled exception on %s %s", request.method, request.url.path, exc_info=exc)
        return _problem_response(500, "An unexpected error occurred")


# PUBLIC_INTERFACE
def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI application.

    The task storage is created here and opened in the lifespan, so every app
    instance owns exactly one database connection.
    """
    settings = settings or get_settings()
    storage = TaskStorage(settings.sqlite_db_path)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        setup_logging(settings.log_level)
        # A failure here aborts startup.
        await storage.initialize()
        logger.info("Task API started")
        try:
            yield
        finally:
            await storage.close()
            logger.info("Task API shut down")

    app = FastAPI(
        title="Task Tracker",
        description="Backend API service for managing tasks stored in SQLite.",
        version="0.1.0",
        openapi_tags=openapi_tags,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.storage = storage

    # Configure CORS based on settings (CORS_ALLOW_ORIGINS), with '*' fallback
    allow_all = (settings.cors_allow_origins == ["*"]) or (len(settings.cors_allow_origins) == 0)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if allow_all else settings.cors_allow_origins,
        allow_credentials=not allow_all,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Location"],
    )

    _register_error_handlers(app)

    @app.get("/healthz", summary="Health Check", tags=["health"])
    async def health_check(request: Request):
        """
        Health check endpoint.

        Returns:
            A JSON object indicating service and database health.
        """
        try:
            await request.app.state.storage.ping()
        except StorageError:
            return _problem_response(503, "Database unavailable")
        return {"message": "Healthy", "database": "ok"}

    app.include_router(tasks_router.router)

    # Mounted last so the API routes take precedence.
    if os.path.isdir(settings.static_dir):
        app.mount("/", StaticFiles(directory=settings.static_dir, html=True), name="static")

    return app


app = create_app()


# PUBLIC_INTERFACE
def run() -> None:
    """Start the service with uvicorn using HOST/PORT from the environment."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port)
