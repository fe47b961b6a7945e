"""
Error taxonomy for the payment subsystem.

Every error carries a machine-readable code and the HTTP status it maps to,
so routes can raise domain errors and let the registered handlers render them.
"""
import logging
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class PaymentError(Exception):
    """Base class for payment subsystem errors."""
    status_code = 500
    code = "payment_error"

    def __init__(self, message: str, detail: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class ValidationError(PaymentError):
    """Malformed input, rejected before any state change."""
    status_code = 400
    code = "validation_error"


class CallbackParseError(ValidationError):
    """Provider notification that cannot be parsed; the provider should retry."""
    code = "malformed_callback"


class NotFoundError(PaymentError):
    """Unknown payment intent or subscription reference."""
    status_code = 404
    code = "not_found"


class ProviderError(PaymentError):
    """Network, auth or rejection error from the payment provider during initiation."""
    status_code = 400
    code = "payment_not_started"


class ConflictError(PaymentError):
    """Duplicate correlation id assignment. Indicates corrupted state."""
    status_code = 500
    code = "conflict"


class ReconciliationError(PaymentError):
    """Unit-of-work failure while applying a provider callback."""
    status_code = 500
    code = "reconciliation_failed"


class AuthenticationError(PaymentError):
    """Callback did not present the configured shared secret."""
    status_code = 403
    code = "forbidden"


async def payment_error_handler(request: Request, exc: PaymentError) -> JSONResponse:
    if isinstance(exc, ConflictError):
        logger.critical(f"Payment state conflict on {request.url.path}: {exc.message}")
    elif exc.status_code >= 500:
        logger.error(f"Payment processing failed on {request.url.path}: {exc.message}")

    content = {
        "success": False,
        "error": exc.code,
        "message": exc.message,
    }
    if exc.detail is not None:
        content["detail"] = exc.detail
    return JSONResponse(status_code=exc.status_code, content=content)


def register_exception_handlers(app: FastAPI) -> None:
    """Render every PaymentError subclass as a JSON error body."""
    app.add_exception_handler(PaymentError, payment_error_handler)
