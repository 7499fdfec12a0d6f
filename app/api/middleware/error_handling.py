"""
Global exception handlers for the Prompt Composer API.

Provides consistent error responses across all endpoints. Domain errors
map to status codes here so routers stay thin.
"""

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import logging

from app.domain.prompt.errors import (
    ConflictError,
    EmptyCompositionError,
    NotFoundError,
    PromptStoreError,
    TransactionError,
    ValidationError,
)

logger = logging.getLogger(__name__)


# Most specific first
DOMAIN_ERROR_STATUS = [
    (ValidationError, status.HTTP_400_BAD_REQUEST, "VALIDATION_ERROR"),
    (EmptyCompositionError, status.HTTP_400_BAD_REQUEST, "EMPTY_COMPOSITION"),
    (NotFoundError, status.HTTP_404_NOT_FOUND, "NOT_FOUND"),
    (ConflictError, status.HTTP_409_CONFLICT, "VERSION_CONFLICT"),
    (TransactionError, status.HTTP_500_INTERNAL_SERVER_ERROR, "TRANSACTION_FAILED"),
]


def _status_for(exc: PromptStoreError):
    for error_type, status_code, error_code in DOMAIN_ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code, error_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR, "PROMPT_STORE_ERROR"


def add_exception_handlers(app: FastAPI):
    """Add global exception handlers to FastAPI app."""

    @app.exception_handler(PromptStoreError)
    async def prompt_store_exception_handler(request: Request, exc: PromptStoreError):
        """Handle domain errors raised by the prompt services."""
        status_code, error_code = _status_for(exc)
        if status_code >= 500:
            logger.error(f"Prompt store failure: {exc}", exc_info=exc)
        else:
            logger.warning(f"{error_code}: {exc}")
        return JSONResponse(
            status_code=status_code,
            content={
                "detail": {
                    "error_code": error_code,
                    "message": str(exc),
                },
                "request_id": getattr(request.state, "request_id", None),
            },
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle request body and parameter validation errors."""
        logger.warning(f"Request validation error: {exc}")
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "detail": {
                    "error_code": "REQUEST_VALIDATION_ERROR",
                    "message": "Request validation failed",
                    "errors": jsonable_encoder(exc.errors()),
                },
            },
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": {
                    "error_code": "INTERNAL_ERROR",
                    "message": "An unexpected error occurred",
                },
                "request_id": getattr(request.state, "request_id", None),
            },
        )
