"""Entitlement error taxonomy and structured error handlers.

Every error response includes a consistent envelope:
    {
        "code": "error_code",
        "message": "Human-readable message",
        "details": null | object,
        "request_id": "uuid"
    }

Services raise :class:`EntitlementError` subclasses with a stable ``code``;
the handlers registered here turn them into the envelope above.
"""
from __future__ import annotations

import logging

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class EntitlementError(Exception):
    code = "entitlement_error"
    status_code = 400
    default_message = "Request failed"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        details: object = None,
    ) -> None:
        self.message = message or self.default_message
        if code is not None:
            self.code = code
        self.details = details
        super().__init__(self.message)


class NotAuthenticated(EntitlementError):
    code = "not_authenticated"
    status_code = 401
    default_message = "Authentication required"


class Forbidden(EntitlementError):
    code = "forbidden"
    status_code = 403
    default_message = "Admin access required"


class NotFound(EntitlementError):
    code = "not_found"
    status_code = 404
    default_message = "Not found"


class InvalidInput(EntitlementError):
    code = "invalid_input"
    status_code = 400
    default_message = "Invalid input"


class Conflict(EntitlementError):
    code = "conflict"
    status_code = 409
    default_message = "Conflict"


class AlreadyRedeemed(Conflict):
    code = "already_redeemed"
    default_message = "You have already redeemed this voucher"


class VoucherInactive(EntitlementError):
    code = "voucher_inactive"
    default_message = "This voucher has been deactivated"


class VoucherExpired(EntitlementError):
    code = "voucher_expired"
    default_message = "This voucher has expired"


class VoucherExhausted(EntitlementError):
    code = "voucher_exhausted"
    default_message = "This voucher has reached its redemption limit"


class AccountUpdateFailed(EntitlementError):
    code = "account_update_failed"
    status_code = 500
    default_message = "Failed to update account. Please try again."


class UpstreamVerificationFailed(EntitlementError):
    code = "invalid_signature"
    status_code = 400
    default_message = "Webhook signature verification failed"


class UpstreamUnavailable(EntitlementError):
    code = "upstream_unavailable"
    status_code = 503
    default_message = "Payment processor unavailable"


def _get_request_id(request: Request) -> str:
    """Extract request_id set by ObservabilityMiddleware."""
    return getattr(request.state, "request_id", "unknown")


def _error_payload(
    code: str, message: str, details: object, request_id: str
) -> dict:
    return {
        "code": code,
        "message": message,
        "details": details,
        "request_id": request_id,
    }


def register_error_handlers(app: object) -> None:
    @app.exception_handler(EntitlementError)  # type: ignore[arg-type]
    async def entitlement_error_handler(
        request: Request, exc: EntitlementError
    ) -> JSONResponse:
        request_id = _get_request_id(request)
        log = logger.error if exc.status_code >= 500 else logger.info
        log(
            "Entitlement error on %s %s: %s",
            request.method,
            request.url.path,
            exc.code,
            extra={"request_id": request_id, "reason": exc.code},
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(exc.code, exc.message, exc.details, request_id),
        )

    @app.exception_handler(HTTPException)  # type: ignore[arg-type]
    async def http_exception_handler(
        request: Request, exc: HTTPException
    ) -> JSONResponse:
        request_id = _get_request_id(request)
        detail = exc.detail
        code = f"http_{exc.status_code}"
        message = "Request failed"
        details = None
        if isinstance(detail, dict):
            code = detail.get("code", code)
            message = detail.get("message", message)
            details = detail.get("details")
        elif isinstance(detail, str):
            message = detail
        else:
            details = detail
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(code, message, details, request_id),
        )

    @app.exception_handler(RequestValidationError)  # type: ignore[arg-type]
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        request_id = _get_request_id(request)
        logger.warning(
            "Validation error on %s %s: %s",
            request.method,
            request.url.path,
            exc.errors(),
            extra={"request_id": request_id},
        )
        return JSONResponse(
            status_code=422,
            content=_error_payload(
                "validation_error",
                "Validation error",
                jsonable_errors(exc),
                request_id,
            ),
        )

    @app.exception_handler(Exception)  # type: ignore[arg-type]
    async def unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        request_id = _get_request_id(request)
        logger.exception(
            "Unhandled exception on %s %s",
            request.method,
            request.url.path,
            extra={"request_id": request_id},
        )
        return JSONResponse(
            status_code=500,
            content=_error_payload(
                "internal_error",
                "Internal server error",
                None,
                request_id,
            ),
        )


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    # pydantic puts the raw exception object under "ctx" for custom validators
    errors = []
    for error in exc.errors():
        item = dict(error)
        if "ctx" in item:
            item["ctx"] = {key: str(value) for key, value in item["ctx"].items()}
        errors.append(item)
    return errors
