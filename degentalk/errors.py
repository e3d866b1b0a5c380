"""
degentalk.errors — Domain Error Hierarchy
===========================================

Services raise these; the FastAPI exception handlers in
:mod:`degentalk.api.main` render them as::

    {"success": false,
     "error": {"code": "...", "message": "...", "details": ..., "timestamp": "..."}}
"""

from __future__ import annotations

import enum
from datetime import UTC, datetime
from typing import Any


class ErrorCode(enum.StrEnum):
    BAD_REQUEST = "BAD_REQUEST"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    RATE_LIMITED = "RATE_LIMITED"
    BUSINESS_RULE_VIOLATION = "BUSINESS_RULE_VIOLATION"
    PAYMENT_PROVIDER_ERROR = "PAYMENT_PROVIDER_ERROR"
    WALLET_INSUFFICIENT_FUNDS = "WALLET_INSUFFICIENT_FUNDS"
    WALLET_TRANSACTION_FAILED = "WALLET_TRANSACTION_FAILED"
    THREAD_LOCKED = "THREAD_LOCKED"
    USER_BANNED = "USER_BANNED"
    FEATURE_DISABLED = "FEATURE_DISABLED"
    SERVER_ERROR = "SERVER_ERROR"


class AppError(Exception):
    """Base error carrying an HTTP status and a machine-readable code."""

    http_status: int = 500
    code: ErrorCode = ErrorCode.SERVER_ERROR

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode | None = None,
        http_status: int | None = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if http_status is not None:
            self.http_status = http_status
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": False,
            "error": {
                "code": str(self.code),
                "message": self.message,
                "details": self.details,
                "timestamp": datetime.now(UTC).isoformat(),
            },
        }

    def __str__(self) -> str:
        return self.message


class BadRequestError(AppError):
    http_status = 400
    code = ErrorCode.BAD_REQUEST


class ValidationError(AppError):
    http_status = 400
    code = ErrorCode.VALIDATION_FAILED


class UnauthorizedError(AppError):
    http_status = 401
    code = ErrorCode.UNAUTHORIZED


class ForbiddenError(AppError):
    http_status = 403
    code = ErrorCode.FORBIDDEN


class NotFoundError(AppError):
    http_status = 404
    code = ErrorCode.NOT_FOUND

    def __init__(self, resource: str = "Resource", **kwargs: Any) -> None:
        super().__init__(f"{resource} not found", **kwargs)


class ConflictError(AppError):
    http_status = 409
    code = ErrorCode.CONFLICT


class RateLimitError(AppError):
    http_status = 429
    code = ErrorCode.RATE_LIMITED

    def __init__(self, message: str = "Too many requests", *, retry_after: int, **kwargs: Any) -> None:
        super().__init__(message, details={"retry_after": retry_after}, **kwargs)
        self.retry_after = retry_after


class BusinessRuleViolationError(AppError):
    http_status = 400
    code = ErrorCode.BUSINESS_RULE_VIOLATION


class InsufficientFundsError(AppError):
    http_status = 400
    code = ErrorCode.WALLET_INSUFFICIENT_FUNDS


class ThreadLockedError(AppError):
    http_status = 403
    code = ErrorCode.THREAD_LOCKED


class UserBannedError(AppError):
    http_status = 403
    code = ErrorCode.USER_BANNED


class FeatureDisabledError(AppError):
    http_status = 503
    code = ErrorCode.FEATURE_DISABLED


class PaymentProviderError(AppError):
    """CCPayment rejected a call or could not be reached."""

    http_status = 502
    code = ErrorCode.PAYMENT_PROVIDER_ERROR

    def __init__(
        self,
        message: str,
        *,
        provider_code: int | None = None,
        **kwargs: Any,
    ) -> None:
        kwargs.setdefault("details", {"provider_code": provider_code})
        super().__init__(message, **kwargs)
        self.provider_code = provider_code
