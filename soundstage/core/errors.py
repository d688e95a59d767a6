"""Error normalization and handlers."""

import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from soundstage.core.logging import get_request_id, log_event


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id
        self.details = details


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class AccountNotFoundError(NotFoundError):
    code = "account_not_found"

    def __init__(self, account_id: str):
        super().__init__(f"Account not found: {account_id}", details={"account_id": account_id})
        self.account_id = account_id


class ForbiddenError(AppError):
    code = "forbidden"
    status_code = 403


class EntitlementDeniedError(ForbiddenError):
    """A requested model/resolution/engine is outside the plan's allowed set."""
    code = "entitlement_denied"

    def __init__(self, message: str, *, dimension: str, requested: str, allowed: list, required_tier: Optional[str]):
        super().__init__(
            message,
            details={
                "dimension": dimension,
                "requested": requested,
                "allowed": allowed,
                "required_tier": required_tier,
            },
        )


class FeatureNotAvailableError(ForbiddenError):
    code = "feature_not_available"

    def __init__(self, message: str, *, feature: str, required_tier: Optional[str]):
        super().__init__(message, details={"feature": feature, "required_tier": required_tier})


class InsufficientCreditsError(AppError):
    """Expected business condition; clients show a purchase/upgrade flow."""
    code = "insufficient_credits"
    status_code = 402

    def __init__(self, message: str, *, balance: int, required: int, plan_tier: str):
        super().__init__(
            message,
            details={"balance": balance, "required": required, "plan_tier": plan_tier},
        )


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class PaymentVerificationError(AppError):
    code = "payment_verification_failed"
    status_code = 400


class PaymentMismatchError(ConflictError):
    code = "payment_mismatch"


class BillingDisabledError(AppError):
    code = "billing_disabled"
    status_code = 503


class GatewayError(AppError):
    code = "gateway_error"
    status_code = 502


def _request_id_for(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or uuid4().hex


def _error_response(
    status_code: int,
    code: str,
    message: str,
    request_id: str,
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    """Envelope shared by every handler: {"error": {...}, "detail": message}."""
    error: Dict[str, Any] = {"code": code, "message": message, "request_id": request_id}
    if details:
        error["details"] = details
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "detail": message},
        headers={"x-request-id": request_id},
    )


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _request_id_for(request)
    log_event(
        "error" if exc.status_code >= 500 else "warning",
        "app.error",
        request_id=rid,
        error_code=exc.code,
        extra={"status": exc.status_code, "error_message": exc.message},
    )
    return _error_response(exc.status_code, exc.code, exc.message, rid, exc.details)


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _request_id_for(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    log_event("warning", "http.error", request_id=rid, error_code=code, extra={"status": exc.status_code})
    return _error_response(exc.status_code, code, str(exc.detail or "HTTP error"), rid)


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _request_id_for(request)
    logging.getLogger("soundstage").error(
        "unhandled.exception",
        exc_info=(type(exc), exc, exc.__traceback__),
        extra={"request_id": rid, "error_code": "internal_error"},
    )
    return _error_response(500, "internal_error", "Unexpected error", rid)
