"""
Standardized error response system.

Maps domain exceptions raised by the services onto consistent JSON error bodies.
"""
import uuid
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from perfwatch.core.exceptions import NotFoundError, SchemaVersionError, ValidationError


class ErrorCode:
    """Standard error codes."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    SCHEMA_VERSION = "SCHEMA_VERSION"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ErrorResponse:
    """Standard error response format."""

    @staticmethod
    def create(
        code: str,
        message: str,
        status_code: int = 500,
        details: dict[str, Any] | None = None,
        request_id: str | None = None,
    ) -> JSONResponse:
        error_data: dict[str, Any] = {
            "error": {
                "code": code,
                "message": message,
            }
        }

        if details:
            error_data["error"]["details"] = details

        if request_id:
            error_data["error"]["request_id"] = request_id

        return JSONResponse(status_code=status_code, content=error_data)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", str(uuid.uuid4()))


async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return ErrorResponse.create(
        code=ErrorCode.VALIDATION_ERROR,
        message=exc.reason,
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        request_id=_request_id(request),
    )


async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return ErrorResponse.create(
        code=ErrorCode.NOT_FOUND,
        message=exc.reason,
        status_code=status.HTTP_404_NOT_FOUND,
        request_id=_request_id(request),
    )


async def schema_version_handler(request: Request, exc: SchemaVersionError) -> JSONResponse:
    return ErrorResponse.create(
        code=ErrorCode.SCHEMA_VERSION,
        message=exc.reason,
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        details={"on_disk": exc.on_disk, "supported": exc.supported},
        request_id=_request_id(request),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ValidationError, validation_error_handler)
    app.add_exception_handler(NotFoundError, not_found_handler)
    app.add_exception_handler(SchemaVersionError, schema_version_handler)
