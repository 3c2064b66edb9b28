from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from structlog.contextvars import bind_contextvars, reset_contextvars

from tracklink.api.routes import router
from tracklink.dependencies import (
    get_http_client,
    get_message_handler,
    get_resolver,
    get_settings,
    get_telemetry,
)
from tracklink.logging_config import configure_application_logging

LOGGER = logging.getLogger("tracklink")


def health_check() -> dict[str, str]:
    return {"status": "ok"}


@asynccontextmanager
async def app_lifespan(_: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    configure_application_logging(settings)
    LOGGER.info(
        "startup allowed_channels=%s fetch_timeout_ms=%s deadline_ms=%s constrained_hosting=%s",
        ",".join(sorted(settings.allowed_channel_ids)) or "(all)",
        settings.effective_fetch_timeout_ms,
        settings.global_deadline_ms,
        settings.constrained_hosting,
    )
    if settings.slack_signing_secret is None:
        LOGGER.warning("slack signing secret not set; request signatures are not verified")
    if settings.slack_bot_token is None:
        LOGGER.warning("slack bot token not set; replies will fail")

    try:
        yield
    finally:
        if get_http_client.cache_info().currsize:
            await get_http_client().aclose()
        # Everything holding the closed client is rebuilt on the next startup.
        get_message_handler.cache_clear()
        get_resolver.cache_clear()
        get_http_client.cache_clear()


def create_app() -> FastAPI:
    app = FastAPI(title="Tracklink", version="0.1.0", lifespan=app_lifespan)

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
