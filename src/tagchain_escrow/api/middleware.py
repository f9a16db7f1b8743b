"""HTTP middleware: request correlation, domain error translation, CORS.

Middleware stack (outermost first):
    1. RequestIDMiddleware    X-Request-ID in, out, and on every log line
    2. ErrorHandlerMiddleware  EscrowError subclasses -> {"error", "message"} JSON
    3. CORSMiddleware         browser dashboards
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING

import structlog
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from tagchain_escrow.config import get_settings
from tagchain_escrow.domain.exceptions import (
    DuplicateOperationError,
    EscrowError,
    EscrowNotFoundError,
    InvalidEscrowDataError,
    MessageValidationError,
    PreconditionFailed,
    StorageError,
)

if TYPE_CHECKING:
    from fastapi import FastAPI, Request, Response

logger = structlog.get_logger(__name__)

# First match wins, so subclasses go before EscrowError.
ERROR_STATUS: tuple[tuple[type[EscrowError], int, int], ...] = (
    (EscrowNotFoundError, 404, logging.WARNING),
    (PreconditionFailed, 409, logging.WARNING),
    (DuplicateOperationError, 409, logging.WARNING),
    (InvalidEscrowDataError, 422, logging.WARNING),
    (MessageValidationError, 422, logging.WARNING),
    (StorageError, 503, logging.ERROR),
    (EscrowError, 400, logging.ERROR),
)


def status_for(exc: EscrowError) -> tuple[int, int]:
    """HTTP status and log level for a domain error."""
    for error_type, status_code, level in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code, level
    return 400, logging.ERROR


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Bind a request id (client-supplied or generated) for log correlation."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Translate domain errors raised by route handlers.

    Ledger errors never get here: the orchestrator folds them into the
    consensus_error field of a successful response.
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        try:
            return await call_next(request)
        except EscrowError as exc:
            status_code, level = status_for(exc)
            logger.log(level, "request.rejected", code=exc.code, error=exc.message)
            return JSONResponse(
                status_code=status_code,
                content={"error": exc.code, "message": exc.message},
            )
        except Exception as exc:
            logger.exception("request.unhandled_error", error=str(exc))
            return JSONResponse(
                status_code=500,
                content={"error": "INTERNAL_ERROR", "message": "An unexpected error occurred"},
            )


def setup_middleware(app: FastAPI) -> None:
    """Register middleware. The last one added runs first."""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_settings().cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(RequestIDMiddleware)
