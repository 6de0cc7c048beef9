from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from helpdesk.apps.api.routes.chat import router as chat_router
from helpdesk.apps.api.routes.health import router as health_router
from helpdesk.apps.api.routes.workflows import router as workflows_router
from helpdesk.core.config import get_settings
from helpdesk.core.logging import configure_logging


logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Helpdesk AI API")

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        logger.info(
            "request_completed path=%s status=%s latency_ms=%.1f request_id=%s",
            request.url.path,
            response.status_code,
            (time.monotonic() - start) * 1000.0,
            request_id,
        )
        response.headers["X-Request-Id"] = request_id
        return response

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        # Never leak stack traces; the full error goes to the log.
        logger.exception("unhandled_error path=%s", request.url.path, exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"detail": {"code": "INTERNAL_ERROR", "message": "Internal server error"}},
        )

    app.include_router(health_router)
    app.include_router(chat_router)
    app.include_router(workflows_router)
    logger.info("app_created name=%s", get_settings().app_name)
    return app


app = create_app()
