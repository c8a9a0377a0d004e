"""
FastAPI Middleware

- correlation id per request (X-Correlation-ID in and out)
- request/response logging with timing
- AppException -> JSON error body
"""
import time
from typing import Callable

from fastapi import FastAPI, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from freight.core.exceptions import AppException, ErrorCode, ErrorKind
from freight.core.logging import get_logger, set_correlation_id, get_correlation_id

logger = get_logger(__name__)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Reuse the caller's X-Correlation-ID or mint one"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = set_correlation_id(request.headers.get("X-Correlation-ID"))
        request.state.correlation_id = correlation_id
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        path = request.url.path
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Request failed: {request.method} {path}",
                extra_data={
                    "method": request.method,
                    "path": path,
                    "duration_seconds": round(time.perf_counter() - started, 4),
                    "error": str(e),
                },
                exc_info=True
            )
            raise

        log = logger.info if response.status_code < 400 else logger.warning
        log(
            f"Request completed: {request.method} {path}",
            extra_data={
                "method": request.method,
                "path": path,
                "status_code": response.status_code,
                "duration_seconds": round(time.perf_counter() - started, 4),
            }
        )
        return response


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handle application exceptions"""
    logger.warning(
        f"Application exception: {exc.error_code.value}",
        extra_data={
            "error_code": exc.error_code.value,
            "kind": exc.kind.value,
            "message": exc.message,
            "details": exc.details,
            "path": request.url.path,
        }
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers={"X-Correlation-ID": get_correlation_id()}
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """pydantic body errors use the same envelope as ValidationException"""
    return JSONResponse(
        status_code=422,
        content={
            "error": {
                "code": ErrorCode.VALIDATION_ERROR.value,
                "kind": ErrorKind.VALIDATION.value,
                "message": "Request validation failed",
                "details": {"errors": jsonable_encoder(exc.errors())},
            }
        },
        headers={"X-Correlation-ID": get_correlation_id()}
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions without leaking internals"""
    logger.error(
        f"Unhandled exception: {type(exc).__name__}",
        extra_data={
            "exception_type": type(exc).__name__,
            "message": str(exc),
            "path": request.url.path,
        },
        exc_info=True
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": ErrorCode.INTERNAL_ERROR.value,
                "kind": ErrorKind.INTERNAL.value,
                "message": "An unexpected error occurred",
                "details": {},
            }
        },
        headers={"X-Correlation-ID": get_correlation_id()}
    )


def setup_middleware(app: FastAPI) -> None:
    # האחרון שנוסף הוא החיצוני: CorrelationId עוטף את RequestLogging
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)


def setup_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
