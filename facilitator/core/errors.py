"""
Error taxonomy and FastAPI handlers.

Every non-2xx response other than a payment challenge (402) has the shape

    {"error": {"code", "message", "request_id", "details"?}, "detail": message}

Verification failures are not errors: they travel back to the payer inside a
re-issued 402 challenge.
"""

import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException
from starlette.requests import Request

from facilitator.core.logging import get_request_id

logger = logging.getLogger("facilitator")


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.details = details
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404


class ForbiddenError(AppError):
    code = "forbidden"
    status_code = 403


class PayerMismatchError(ForbiddenError):
    """A caller named a wallet other than the one that signed the payment."""
    code = "payer_mismatch"


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class SoldOutError(ConflictError):
    """A listing has no remaining supply."""
    code = "sold_out"


class UnsupportedNetworkError(ValidationError):
    code = "unsupported_network"


class InvalidProofError(ValidationError):
    """An X-PAYMENT proof could not be decoded or does not fit the challenge."""
    code = "invalid_payment_proof"


class ServiceUnavailableError(AppError):
    code = "service_unavailable"
    status_code = 503


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or str(uuid4())


def _respond(rid: str, status_code: int, code: str, message: str, details: Optional[Dict[str, Any]] = None) -> JSONResponse:
    error: Dict[str, Any] = {"code": code, "message": message, "request_id": rid}
    if details:
        error["details"] = details
    response = JSONResponse(status_code=status_code, content={"error": error, "detail": message})
    response.headers["x-request-id"] = rid
    return response


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _request_id(request)
    logger.log(
        logging.ERROR if exc.status_code >= 500 else logging.WARNING,
        f"app.error: {exc.message}",
        extra={"request_id": rid, "error_code": exc.code, "status": exc.status_code, "path": request.url.path},
    )
    return _respond(rid, exc.status_code, exc.code, exc.message, exc.details)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    rid = _request_id(request)
    fields = [".".join(str(part) for part in err.get("loc", ())) for err in exc.errors()]
    logger.warning("request.invalid", extra={"request_id": rid, "error_code": "request_invalid", "status": 422})
    return _respond(rid, 422, "request_invalid", "Request body or parameters are invalid", {"fields": fields})


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if isinstance(exc.detail, str) and exc.detail else "HTTP error"
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    return _respond(rid, exc.status_code, code, message)


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _request_id(request)
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    return _respond(rid, 500, "internal_error", "Unexpected error")
