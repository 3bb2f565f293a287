from __future__ import annotations

import logging
import time

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from integrationhub.apps.api.errors import (
    domain_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from integrationhub.apps.api.response import API_VERSION, REQUEST_ID_HEADER, request_id_for
from integrationhub.apps.api.routes.connectors import router as connectors_router
from integrationhub.apps.api.routes.dead_letters import router as dead_letters_router
from integrationhub.apps.api.routes.health import router as health_router
from integrationhub.core.config import get_settings
from integrationhub.core.errors import IntegrationHubError
from integrationhub.core.logging import configure_logging


logger = logging.getLogger(__name__)


async def _log_unhandled(request: Request, exc: Exception):
    logger.exception("api_unhandled_error path=%s", request.url.path)
    return await unhandled_exception_handler(request, exc)


def create_app() -> FastAPI:
    """Build the operator API: health, dead-letter review and connector status."""
    configure_logging()
    app = FastAPI(title="Integration Hub Operator API", version=API_VERSION)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = request_id_for(request)
        start = time.monotonic()
        response = await call_next(request)
        logger.info(
            "api_request method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            (time.monotonic() - start) * 1000.0,
            request_id,
        )
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(IntegrationHubError, domain_exception_handler)
    app.add_exception_handler(Exception, _log_unhandled)

    for router in (health_router, dead_letters_router, connectors_router):
        app.include_router(router, prefix=f"/{API_VERSION}")
    logger.info("api_ready app=%s", get_settings().app_name)
    return app


app = create_app()
