from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from schoolgate.api.schemas import (
    ErrorResponse,
    RateLimitErrorResponse,
    SuccessFlagErrorResponse,
)
from schoolgate.logging import get_correlation_id, get_logger
from schoolgate.service.errors import RateLimitedError, ServiceError
from schoolgate.storage.errors import StoreUnavailable

logger = get_logger(__name__)

GENERIC_SERVER_ERROR = "Internal server error"


def _error_response(status_code: int, message: str, headers: dict | None = None) -> JSONResponse:
    body = ErrorResponse(error=message)
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


def _with_request_id(response: JSONResponse) -> JSONResponse:
    # Handlers for bare Exception run outside the middleware stack
    correlation_id = get_correlation_id()
    if correlation_id:
        response.headers.setdefault("X-Request-ID", correlation_id)
    return response


def service_error_response(exc: ServiceError) -> JSONResponse:
    """Render a service error in the JSON shape clients expect for its kind."""
    if isinstance(exc, RateLimitedError):
        body = RateLimitErrorResponse(
            error=exc.message,
            type=exc.limit_type,
            limit=exc.limit,
            retry_after=exc.retry_after,
            current=exc.current,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=body.model_dump(by_alias=True, exclude_none=True),
            headers={"Retry-After": str(exc.retry_after)},
        )
    if exc.status_code >= 500:
        return _error_response(exc.status_code, GENERIC_SERVER_ERROR)
    if exc.success_envelope:
        body = SuccessFlagErrorResponse(message=exc.message)
        return JSONResponse(status_code=exc.status_code, content=body.model_dump())
    return _error_response(exc.status_code, exc.message)


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for domain and storage errors."""

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
        return service_error_response(exc)

    @app.exception_handler(StoreUnavailable)
    async def handle_store_unavailable(request: Request, exc: StoreUnavailable):
        logger.error(
            "store_unavailable",
            path=request.url.path,
            method=request.method,
            message=exc.message,
        )
        return _error_response(500, GENERIC_SERVER_ERROR)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            errors=len(exc.errors()),
        )
        return _error_response(400, "Invalid request")

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
            message = GENERIC_SERVER_ERROR
        elif exc.status_code >= 400:
            logger.warning(
                "http_client_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message, headers=exc.headers)

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
        return _with_request_id(_error_response(500, GENERIC_SERVER_ERROR))
