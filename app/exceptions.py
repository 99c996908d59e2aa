"""
Custom exceptions and error handlers.
"""
import logging
from typing import List, Optional

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from app.config import get_cors_origins
from app.pdf.embed import IntegrityViolationError, SigningError
from app.pdf.geometry import PlacementValidationError
from app.utils.logging import get_request_id

logger = logging.getLogger(__name__)


def _get_cors_origin(request: Request) -> Optional[str]:
    """Get CORS origin from request if it's an allowed origin."""
    origin = request.headers.get("origin")
    if not origin:
        return None
    if origin in get_cors_origins():
        return origin
    return None


def _add_cors_headers(response: JSONResponse, request: Request) -> JSONResponse:
    """Add CORS headers to error response."""
    origin = _get_cors_origin(request)
    if origin:
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers["Vary"] = "Origin"
    return response


class AppException(HTTPException):
    """Base application exception."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        details: Optional[dict] = None,
    ):
        self.code = code
        self.message = message
        self.details = details
        super().__init__(status_code=status_code, detail=message)


class NotFoundError(AppException):
    """Resource not found."""

    def __init__(self, resource: str, resource_id: str):
        super().__init__(
            status_code=404,
            code="NOT_FOUND",
            message=f"{resource} not found: {resource_id}",
        )


class ValidationException(AppException):
    """Validation error."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(
            status_code=400,
            code="VALIDATION_ERROR",
            message=message,
            details=details,
        )


class LinkExpiredError(AppException):
    """Signing link is past its deadline."""

    def __init__(self):
        super().__init__(
            status_code=410,
            code="LINK_EXPIRED",
            message="This signing link has expired. Ask the sender to resend the document.",
        )


class FieldsUnsignedError(AppException):
    """Required signature/initial fields have no payload."""

    def __init__(self, field_ids: List[str], signer_email: str):
        self.field_ids = list(field_ids)
        super().__init__(
            status_code=400,
            code="FIELDS_UNSIGNED",
            message=f"{len(self.field_ids)} required signature field(s) have not been signed",
            details={"field_ids": self.field_ids, "recipient": signer_email},
        )


class AlreadySignedError(AppException):
    def __init__(self, message: str = "This document has already been signed"):
        super().__init__(status_code=409, code="ALREADY_SIGNED", message=message)


class SigningInProgressError(AppException):
    """Another completion holds the lock for this sign-request."""

    def __init__(self):
        super().__init__(
            status_code=409,
            code="SIGNING_IN_PROGRESS",
            message="Signing is already in progress for this request",
        )


class DocumentNotActiveError(AppException):
    def __init__(self, status: str, message: Optional[str] = None):
        super().__init__(
            status_code=409,
            code="DOCUMENT_NOT_ACTIVE",
            message=message or f"Document is {status} and no longer accepts changes",
            details={"status": status},
        )


class DeliveryFailedError(AppException):
    """
    Invitation email could not be delivered.

    kind is "bounce" when the provider rejected the address itself,
    "generic" for everything else (provider down, timeouts).
    """

    def __init__(self, kind: str, recipient: str, message: Optional[str] = None):
        self.kind = kind
        if kind == "bounce":
            code = "EMAIL_BOUNCED"
            default = f"The email address {recipient} appears to be invalid or undeliverable"
        else:
            code = "EMAIL_DELIVERY_FAILED"
            default = f"Failed to send the signing invitation to {recipient}"
        super().__init__(
            status_code=400,
            code=code,
            message=message or default,
            details={"kind": kind, "recipient": recipient},
        )


class PlacementException(AppException):
    """Field placement rejected against the live page geometry."""

    def __init__(self, message: str, code: str = "INVALID_PLACEMENT", details: Optional[dict] = None):
        super().__init__(
            status_code=422,
            code=code,
            message=message,
            details=details,
        )


def build_error_response(
    status_code: int,
    code: str,
    message: str,
    details: Optional[dict] = None,
) -> dict:
    """Build standardized error response."""
    response = {
        "error": True,
        "code": code,
        "message": message,
        "request_id": get_request_id(),
    }
    if details:
        response["details"] = details
    return response


async def app_exception_handler(
    request: Request,
    exc: AppException,
) -> JSONResponse:
    """Handle application exceptions."""
    logger.warning(f"AppException: {exc.code} - {exc.message}")
    response = JSONResponse(
        status_code=exc.status_code,
        content=build_error_response(
            exc.status_code,
            exc.code,
            exc.message,
            exc.details,
        ),
    )
    return _add_cors_headers(response, request)


async def http_exception_handler(
    request: Request,
    exc: HTTPException,
) -> JSONResponse:
    """Handle HTTP exceptions."""
    logger.warning(f"HTTPException: {exc.status_code} - {exc.detail}")

    # Extract code and message from detail if structured
    if isinstance(exc.detail, dict):
        code = exc.detail.get("code", "HTTP_ERROR")
        message = exc.detail.get("message", str(exc.detail))
    else:
        code = "HTTP_ERROR"
        message = str(exc.detail)

    response = JSONResponse(
        status_code=exc.status_code,
        content=build_error_response(exc.status_code, code, message),
    )
    return _add_cors_headers(response, request)


async def placement_error_handler(
    request: Request,
    exc: PlacementValidationError,
) -> JSONResponse:
    """Placement errors raised directly by the PDF layer."""
    logger.warning(f"PlacementValidationError: {exc.code} - {exc.message}")
    response = JSONResponse(
        status_code=422,
        content=build_error_response(422, exc.code, exc.message, exc.details),
    )
    return _add_cors_headers(response, request)


async def integrity_error_handler(
    request: Request,
    exc: IntegrityViolationError,
) -> JSONResponse:
    logger.error(f"IntegrityViolationError: unsigned fields {exc.field_ids}")
    response = JSONResponse(
        status_code=500,
        content=build_error_response(
            500,
            "INTEGRITY_VIOLATION",
            "Required signature fields were missing at embed time",
            {"field_ids": exc.field_ids},
        ),
    )
    return _add_cors_headers(response, request)


async def signing_error_handler(
    request: Request,
    exc: SigningError,
) -> JSONResponse:
    logger.error(f"SigningError: {exc}")
    response = JSONResponse(
        status_code=500,
        content=build_error_response(500, "SIGNING_ERROR", str(exc)),
    )
    return _add_cors_headers(response, request)


async def validation_exception_handler(
    request: Request,
    exc: ValidationError,
) -> JSONResponse:
    """Handle Pydantic validation errors."""
    logger.warning(f"ValidationError: {exc.errors()}")

    errors = []
    for error in exc.errors():
        errors.append({
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        })

    response = JSONResponse(
        status_code=422,
        content=build_error_response(
            422,
            "VALIDATION_ERROR",
            "Request validation failed",
            {"errors": errors},
        ),
    )
    return _add_cors_headers(response, request)


async def generic_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger.exception(f"Unexpected error: {exc}")

    response = JSONResponse(
        status_code=500,
        content=build_error_response(
            500,
            "INTERNAL_ERROR",
            "An unexpected error occurred",
        ),
    )
    return _add_cors_headers(response, request)
