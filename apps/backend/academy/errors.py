# apps/backend/academy/errors.py
"""
Domain exceptions raised by the service modules.

A single exception handler in academy.main answers with `status_code`;
the QPay webhook is the one place that catches them all and still
answers 200.
"""
from __future__ import annotations

from typing import Any, Optional


class AcademyError(Exception):
    status_code = 400

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context


class AuthenticationFailure(AcademyError):
    status_code = 401


class PermissionDenied(AcademyError):
    status_code = 403


class NotFound(AcademyError):
    status_code = 404


class Conflict(AcademyError):
    status_code = 409


class InvalidTransition(Conflict):
    """Order status change out of a terminal state, or re-pricing a settled order."""


class ExternalProviderFailure(AcademyError):
    status_code = 502


class QPayError(ExternalProviderFailure):
    """
    code: AUTH_FAILED / NETWORK_ERROR / TIMEOUT / RATE_LIMITED /
          QPAY_SERVICE_ERROR / QPAY_INVALID_RESPONSE / INVOICE_CREATE_FAILED ...
    http_status: status returned by QPay (0 when no response arrived)
    """

    def __init__(self, code: str, http_status: int = 0, detail: Optional[Any] = None):
        super().__init__(f"QPay {code} (HTTP {http_status})", detail=detail)
        self.code = code
        self.http_status = http_status
        self.detail = detail

    def to_log_data(self) -> dict:
        return {
            "code": self.code,
            "http_status": self.http_status,
            "detail": self.detail,
        }
