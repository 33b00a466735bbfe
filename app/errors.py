from __future__ import annotations

import logging

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class BillingError(HTTPException):
    """Base class for billing domain errors.

    Services raise these directly; the API layer renders them through
    ``register_error_handlers``. ``code`` is the stable machine-readable
    identifier, ``detail`` the human-readable message.
    """

    status_code = 400
    code = "billing_error"

    def __init__(self, message: str, details: object = None):
        super().__init__(status_code=self.status_code, detail=message)
        self.message = message
        self.details = details

    def __str__(self) -> str:
        return self.message


class NotFoundError(BillingError):
    status_code = 404
    code = "not_found"


class ValidationFailed(BillingError):
    """Input rejected; carries every problem found, not just the first."""

    status_code = 422
    code = "validation_failed"

    def __init__(self, errors: list[str] | str):
        if isinstance(errors, str):
            errors = [errors]
        self.errors = list(errors)
        super().__init__("; ".join(self.errors), details=self.errors)


class InvalidStateError(BillingError):
    status_code = 409
    code = "invalid_state"


class InvalidInvoiceState(InvalidStateError):
    code = "invalid_invoice_state"


class InvalidSubscriptionState(InvalidStateError):
    code = "invalid_subscription_state"


class InvalidTransactionState(InvalidStateError):
    code = "invalid_transaction_state"


class TenantAlreadySubscribed(InvalidStateError):
    code = "tenant_already_subscribed"


class PlanHasActiveSubscriptions(InvalidStateError):
    code = "plan_has_active_subscriptions"


class PaymentMethodInUse(InvalidStateError):
    code = "payment_method_in_use"


class InvalidWebhookSignature(BillingError):
    status_code = 400
    code = "invalid_signature"


class PaymentProviderError(BillingError):
    """Upstream payment provider failure.

    The provider's own exception is kept as ``__cause__`` (raise ... from exc)
    and its payload, when there is one, as ``provider_detail``.
    """

    status_code = 502
    code = "payment_provider_error"

    def __init__(self, provider: str, message: str, provider_detail: object = None):
        self.provider = provider
        self.provider_detail = provider_detail
        super().__init__(f"{provider}: {message}", details=provider_detail)


class PaymentProviderTimeout(PaymentProviderError):
    """The provider did not answer in time; the charge outcome is unknown."""

    status_code = 504
    code = "payment_provider_timeout"


def _error_payload(code: str, message: str, details: object) -> dict:
    payload = {"success": False, "error": code, "message": message}
    if details is not None:
        payload["details"] = details
    return payload


def register_error_handlers(app) -> None:
    @app.exception_handler(BillingError)
    async def billing_error_handler(request: Request, exc: BillingError):
        if exc.status_code >= 500:
            logger.error(
                "Billing error on %s %s: %s",
                request.method,
                request.url.path,
                exc.message,
                exc_info=exc.__cause__ is not None,
            )
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(exc.code, exc.message, exc.details),
        )

    async def _handle_http_exception(status_code: int, detail: object):
        code = f"http_{status_code}"
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
            status_code=status_code,
            content=_error_payload(code, message, details),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return await _handle_http_exception(exc.status_code, exc.detail)

    @app.exception_handler(StarletteHTTPException)
    async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        detail = exc.detail if getattr(exc, "detail", None) is not None else "Request failed"
        return await _handle_http_exception(exc.status_code, detail)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = []
        for error in exc.errors():
            location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
            errors.append(f"{location}: {error.get('msg')}" if location else error.get("msg"))
        return JSONResponse(
            status_code=422,
            content=_error_payload("validation_failed", "; ".join(errors), errors),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content=_error_payload("internal_error", "Internal server error", None),
        )
