"""
Error Handlers

Centralized exception handlers for the FastAPI application. Every error
body has the shape ``{"error": {"code", "message", "details"}}``.
"""

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder

from ...domain.errors import DomainError
from ...utils.logger import get_logger, get_correlation_id

logger = get_logger(__name__)


def _headers() -> dict:
    return {"X-Correlation-Id": get_correlation_id() or ""}


async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    """
    Handle domain errors.

    4xx are expected during normal operation (nothing selected, stale
    workspace, empty reply). 5xx mean a collaborator failed: the helpdesk
    backend (FetchError) or the change stream.
    """
    log = logger.error if exc.http_status >= 500 else logger.warning
    log(
        f"Domain error: {exc.error_code} - {exc.message}",
        extra={"error_code": exc.error_code}
    )
    return JSONResponse(
        status_code=exc.http_status,
        content=exc.to_dict(),
        headers=_headers()
    )


async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle request validation errors (bad body, query or missing header)"""
    logger.warning(
        f"Validation error: {exc.errors()}, "
        f"path={request.url.path}, "
        f"method={request.method}",
        extra={"error_code": "VALIDATION_ERROR"}
    )
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": {
                "code": "VALIDATION_ERROR",
                "message": "Request validation failed",
                "details": {"errors": jsonable_encoder(exc.errors())}
            }
        },
        headers=_headers()
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Handle unexpected errors.

    Logs full stack trace for debugging.
    """
    logger.error(f"Unexpected error: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": {
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred",
                "details": {"hint": "Check server logs for details"}
            }
        },
        headers=_headers()
    )


def register_error_handlers(app: FastAPI) -> None:
    """
    Register all exception handlers with the FastAPI application.

    Args:
        app: The FastAPI application instance
    """
    app.add_exception_handler(DomainError, domain_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, general_exception_handler)
