from __future__ import annotations

from typing import Any


class LmsError(Exception):
    """Business-rule failure surfaced to the client as ``{"error": ..., "details": ...}``."""

    status_code: int = 400
    error_code: str = "error"

    def __init__(
        self,
        message: str,
        *,
        details: Any = None,
        status_code: int | None = None,
        error_code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details
        if status_code is not None:
            self.status_code = int(status_code)
        if error_code is not None:
            self.error_code = str(error_code)


class InputValidationError(LmsError):
    status_code = 400
    error_code = "validation_error"


class AuthorizationError(LmsError):
    status_code = 403
    error_code = "forbidden"


class NotFoundError(LmsError):
    status_code = 404
    error_code = "not_found"


class ConflictError(LmsError):
    status_code = 409
    error_code = "conflict"


class ContentIntegrityError(LmsError):
    status_code = 500
    error_code = "integrity_error"


class PaymentRequiredError(LmsError):
    status_code = 402
    error_code = "payment_required"


class GatewayError(LmsError):
    status_code = 502
    error_code = "gateway_error"
