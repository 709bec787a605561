from decimal import Decimal
from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse


class AppError(Exception):
    """Base application error with consistent schema."""

    def __init__(
        self,
        message: str,
        code: str = "ERROR",
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class UnauthorizedError(AppError):
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, code="UNAUTHORIZED", status_code=status.HTTP_401_UNAUTHORIZED)


class NotFoundError(AppError):
    def __init__(self, message: str = "Not found"):
        super().__init__(message, code="NOT_FOUND", status_code=status.HTTP_404_NOT_FOUND)


class BadRequestError(AppError):
    def __init__(self, message: str = "Bad request", details: dict[str, Any] | None = None):
        super().__init__(message, code="BAD_REQUEST", status_code=status.HTTP_400_BAD_REQUEST, details=details)


# Dispatch / ledger domain errors


class UnknownProviderError(AppError):
    def __init__(self, provider_id: str, details: dict[str, Any] | None = None):
        self.provider_id = provider_id
        super().__init__(
            f"Unknown AI provider: {provider_id}",
            code="UNKNOWN_PROVIDER",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"provider": provider_id, **(details or {})},
        )


class InsufficientCreditsError(AppError):
    def __init__(
        self,
        required: Decimal,
        available: Decimal,
        details: dict[str, Any] | None = None,
    ):
        self.required = required
        self.available = available
        shortfall = max(Decimal("0"), required - available)
        super().__init__(
            f"Insufficient credits. Required: {required}, available: {available}.",
            code="INSUFFICIENT_CREDITS",
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            details={
                "required": str(required),
                "available": str(available),
                "shortfall": str(shortfall),
                **(details or {}),
            },
        )


class AllProvidersExhaustedError(AppError):
    def __init__(self, message: str = "All AI providers failed", details: dict[str, Any] | None = None):
        super().__init__(
            message,
            code="ALL_PROVIDERS_EXHAUSTED",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details=details,
        )


class DispatchTimeoutError(AppError):
    def __init__(self, message: str = "AI request timed out", details: dict[str, Any] | None = None):
        super().__init__(
            message,
            code="DISPATCH_TIMEOUT",
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            details=details,
        )


class LedgerWriteConflict(AppError):
    """Another writer appended to the same ledger tail first."""

    def __init__(self, user_id: str, seq: int):
        self.user_id = user_id
        self.seq = seq
        super().__init__(
            "Ledger write conflict",
            code="LEDGER_WRITE_CONFLICT",
            status_code=status.HTTP_409_CONFLICT,
            details={"user_id": user_id, "seq": seq},
        )


class RefundTargetInvalidError(AppError):
    def __init__(self, message: str, transaction_id: str | None = None):
        self.transaction_id = transaction_id
        super().__init__(
            message,
            code="REFUND_TARGET_INVALID",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details={"transaction_id": transaction_id} if transaction_id else {},
        )


class RegistryConfigError(Exception):
    """Provider table is inconsistent; raised at startup."""


def error_response(request: Request, exc: AppError) -> ORJSONResponse:
    body = {
        "error": {
            "message": exc.message,
            "code": exc.code,
            "details": exc.details,
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(status_code=exc.status_code, content=body)


async def app_exception_handler(request: Request, exc: AppError) -> ORJSONResponse:
    return error_response(request, exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> ORJSONResponse:
    body = {
        "error": {
            "message": "Validation error",
            "code": "VALIDATION_ERROR",
            "details": {"errors": exc.errors()},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=body,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
    from aidispatch.core.logging import get_logger
    get_logger(__name__).exception("unhandled_exception", exc_info=exc)
    body = {
        "error": {
            "message": "Internal server error",
            "code": "INTERNAL_ERROR",
            "details": {},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=body,
    )
