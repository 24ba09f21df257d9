from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from sessionguard.api.schemas import ErrorBody, ErrorResponse
from sessionguard.logging import get_logger
from sessionguard.service.errors import ErrorCode, ServiceError
from sessionguard.storage.errors import DocumentIntegrityError, StoreUnavailableError

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    401: ErrorCode.AUTH_FAILED,
    503: ErrorCode.SERVICE_UNAVAILABLE,
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, ErrorCode.INTERNAL_ERROR)


def error_response(
    status_code: int,
    message: str,
    *,
    code: str | None = None,
    requires_logout: bool = False,
    session_expired: bool = False,
) -> JSONResponse:
    """Build the ``{"error": {...}}`` body every failure is reported with."""
    body = ErrorBody(
        code=code or _error_code_for_status(status_code),
        message=message,
        requires_logout=requires_logout,
        session_expired=session_expired,
    )
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=body).model_dump(by_alias=True),
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install exception handlers for service and storage errors."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        return error_response(
            exc.status_code,
            exc.message,
            code=exc.error_code,
            requires_logout=exc.requires_logout,
            session_expired=exc.session_expired,
        )

    @app.exception_handler(StoreUnavailableError)
    async def handle_store_unavailable(request: Request, exc: StoreUnavailableError):
        logger.error(
            "durable_store_unavailable",
            path=request.url.path,
            method=request.method,
            error=exc.message,
            detail=exc.detail,
        )
        return error_response(
            503,
            "User sessions could not be validated",
            code=ErrorCode.SERVICE_UNAVAILABLE,
        )

    @app.exception_handler(DocumentIntegrityError)
    async def handle_integrity_error(request: Request, exc: DocumentIntegrityError):
        logger.error(
            "session_document_corrupt",
            path=request.url.path,
            method=request.method,
            error=exc.message,
            detail=exc.detail,
        )
        return error_response(500, "Session data is inconsistent", code=ErrorCode.INTERNAL_ERROR)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return error_response(500, "internal server error", code=ErrorCode.INTERNAL_ERROR)
