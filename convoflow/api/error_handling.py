from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from convoflow.api.schemas import Envelope, ErrorBody
from convoflow.logging import get_logger, sanitize_error_message
from convoflow.service.errors import ServiceError

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    404: "not_found",
    405: "validation_error",
    409: "conflict",
    422: "validation_error",
}

# seconds a client should wait before re-delivering a message to a busy conversation
LOCK_BUSY_RETRY_AFTER = "1"


def error_envelope(
    status_code: int,
    message: str,
    *,
    code: Optional[str] = None,
    details: Any = None,
    headers: Optional[dict] = None,
) -> JSONResponse:
    body = ErrorBody(
        code=code or _STATUS_TO_CODE.get(status_code, "server_error"),
        message=message,
        details=details,
    )
    return JSONResponse(
        status_code=status_code,
        content=Envelope(status="error", error=body).model_dump(),
        headers=headers,
    )


def _log_failure(request: Request, event: str, status_code: int, **fields: Any) -> None:
    log = logger.error if status_code >= 500 else logger.warning
    log(event, path=request.url.path, method=request.method, status_code=status_code, **fields)


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure as an error envelope.

    Engine errors keep their stable code. Messages on 5xx responses are
    scrubbed since they may quote backend details.
    """

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        _log_failure(
            request,
            "service_error",
            exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        message = sanitize_error_message(exc.message) if exc.status_code >= 500 else exc.message
        headers = {"Retry-After": LOCK_BUSY_RETRY_AFTER} if exc.retryable else None
        return error_envelope(
            exc.status_code, message, code=exc.error_code, details=exc.detail or None, headers=headers
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        _log_failure(request, "request_validation_error", 400, errors=len(errors))
        details = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
            for err in errors
        ]
        return error_envelope(400, "invalid request", code="validation_error", details=details)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            _log_failure(request, "http_error", exc.status_code, message=message)
        return error_envelope(exc.status_code, message, headers=getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
        )
        return error_envelope(500, "internal server error", code="server_error")
