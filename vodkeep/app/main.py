from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from structlog.contextvars import bind_contextvars, reset_contextvars

from vodkeep.app.api.routes import router
from vodkeep.app.dependencies import (
    get_artifact_resolver,
    get_maintenance_scheduler,
    get_settings,
    get_telemetry,
)
from vodkeep.app.logging_config import configure_application_logging
from vodkeep.app.services.scheduler_service import SchedulerService

LOGGER = logging.getLogger("vodkeep.http")
SCHEDULER_LOCK_FILE_NAME = "maintenance.lock"


def health_check() -> dict[str, str]:
    return {"status": "ok"}


@asynccontextmanager
async def app_lifespan(_: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    configure_application_logging(settings)
    scheduler: SchedulerService | None = None

    if settings.scheduler_enabled:
        scheduler = SchedulerService(
            maintenance=get_maintenance_scheduler(),
            interval_seconds=settings.maintenance_interval_seconds,
            initial_delay_seconds=settings.maintenance_initial_delay_seconds,
            telemetry=get_telemetry(),
            lock_path=settings.data_dir / SCHEDULER_LOCK_FILE_NAME,
        )
        scheduler.start()

    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.stop()
        get_artifact_resolver().close()


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    LOGGER.error(
        "unhandled request failure method=%s path=%s",
        request.method,
        request.url.path,
        exc_info=exc,
    )
    return JSONResponse(
        status_code=500,
        content={"success": False, "message": f"internal error: {type(exc).__name__}"},
    )


def create_app() -> FastAPI:
    app = FastAPI(title="Vodkeep Maintenance API", version="0.1.0", lifespan=app_lifespan)

    async def request_context_middleware(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        telemetry = get_telemetry()
        incoming_request_id = request.headers.get("X-Request-ID")
        request_id = (
            incoming_request_id.strip()
            if isinstance(incoming_request_id, str) and incoming_request_id.strip()
            else str(uuid4())
        )
        context_tokens = bind_contextvars(
            http_request_id=request_id,
            http_method=request.method,
            http_path=request.url.path,
        )
        started_at = perf_counter()
        telemetry.emit(
            "http.request.start",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )
        try:
            response = await call_next(request)
        except Exception as exc:
            telemetry.emit(
                "http.request.error",
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                duration_ms=int((perf_counter() - started_at) * 1000),
                error_type=type(exc).__name__,
            )
            raise
        else:
            response.headers["X-Request-ID"] = request_id
            telemetry.emit(
                "http.request.finish",
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                duration_ms=int((perf_counter() - started_at) * 1000),
                status_code=response.status_code,
            )
            return response
        finally:
            reset_contextvars(**context_tokens)

    app.middleware("http")(request_context_middleware)
    app.add_exception_handler(Exception, unhandled_exception_handler)
    app.include_router(router)
    app.add_api_route(
        "/health",
        health_check,
        methods=["GET"],
        tags=["system"],
        operation_id="health_check",
    )

    return app


app = create_app()
