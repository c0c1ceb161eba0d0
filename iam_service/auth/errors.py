"""
Failure kinds and error rendering for the IAM service.

Components return a Result for every expected failure instead of raising.
Routers turn a failed Result into a ServiceError, and the handlers
registered here render it as an MCP envelope with a stable machine code:

    {"status": "error", "message": ..., "data": ..., "error_code": "AUTH_TOKEN_EXPIRED"}
"""
import enum
import logging
from dataclasses import dataclass
from typing import Any, Dict, Generic, NamedTuple, Optional, TypeVar

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError

from iam_service.base_microservice import MCPResponse

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorCategory(str, enum.Enum):
    VALIDATION = "validation"
    CONFLICT = "conflict"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    NOT_FOUND = "not_found"
    TRANSACTION = "transaction"


class Failure(str, enum.Enum):
    # Registration and input
    WEAK_PASSWORD = "WeakPassword"
    USERNAME_TAKEN = "UsernameTaken"
    EMAIL_TAKEN = "EmailTaken"
    PHONE_TAKEN = "PhoneTaken"
    # Verification codes
    INVALID_CODE = "InvalidCode"
    CODE_NOT_FOUND = "NotFound"
    CODE_MISMATCH = "Mismatch"
    CODE_EXPIRED = "Expired"
    CODE_CONSUMED = "AlreadyConsumed"
    TOO_MANY_ATTEMPTS = "TooManyAttempts"
    RATE_LIMITED = "RateLimited"
    ALREADY_VERIFIED = "AlreadyVerified"
    PHONE_NOT_SET = "PhoneNotSet"
    # Credentials and tokens
    INVALID_CREDENTIALS = "InvalidCredentials"
    TOKEN_REQUIRED = "TokenRequired"
    TOKEN_EXPIRED = "TokenExpired"
    TOKEN_MALFORMED = "TokenMalformed"
    TOKEN_INVALID = "TokenInvalid"
    TOKEN_REVOKED = "TokenRevoked"
    # Authorization and state
    ACCOUNT_NOT_ACTIVE = "AccountNotActive"
    INSUFFICIENT_ROLE = "InsufficientRole"
    FORBIDDEN = "Forbidden"
    INVALID_TRANSITION = "InvalidTransition"
    ACCOUNT_NOT_FOUND = "AccountNotFound"
    INVALID_INPUT = "InvalidInput"
    # Storage
    TRANSACTION_FAILED = "TransactionFailed"


class FailureInfo(NamedTuple):
    category: ErrorCategory
    http_status: int
    code: str
    message: str


FAILURE_INFO: Dict[Failure, FailureInfo] = {
    Failure.WEAK_PASSWORD: FailureInfo(
        ErrorCategory.VALIDATION, 400, "VALIDATION_WEAK_PASSWORD", "Password does not meet requirements"),
    Failure.USERNAME_TAKEN: FailureInfo(
        ErrorCategory.CONFLICT, 400, "ACCOUNT_USERNAME_TAKEN", "Username already registered"),
    Failure.EMAIL_TAKEN: FailureInfo(
        ErrorCategory.CONFLICT, 400, "ACCOUNT_EMAIL_TAKEN", "Email already registered"),
    Failure.PHONE_TAKEN: FailureInfo(
        ErrorCategory.CONFLICT, 400, "ACCOUNT_PHONE_TAKEN", "Phone already registered"),
    Failure.INVALID_CODE: FailureInfo(
        ErrorCategory.VALIDATION, 400, "VERIFICATION_CODE_INVALID", "Invalid verification code"),
    Failure.CODE_NOT_FOUND: FailureInfo(
        ErrorCategory.VALIDATION, 400, "VERIFICATION_CODE_INVALID", "Invalid verification code"),
    Failure.CODE_MISMATCH: FailureInfo(
        ErrorCategory.VALIDATION, 400, "VERIFICATION_CODE_INVALID", "Invalid verification code"),
    Failure.CODE_EXPIRED: FailureInfo(
        ErrorCategory.VALIDATION, 400, "VERIFICATION_CODE_EXPIRED", "Verification code has expired"),
    Failure.CODE_CONSUMED: FailureInfo(
        ErrorCategory.VALIDATION, 400, "VERIFICATION_CODE_CONSUMED", "Verification code was already used"),
    Failure.TOO_MANY_ATTEMPTS: FailureInfo(
        ErrorCategory.VALIDATION, 400, "VERIFICATION_TOO_MANY_ATTEMPTS",
        "Too many failed attempts. Please request a new code"),
    Failure.RATE_LIMITED: FailureInfo(
        ErrorCategory.CONFLICT, 429, "VERIFICATION_RATE_LIMITED",
        "Please wait before requesting another code"),
    Failure.ALREADY_VERIFIED: FailureInfo(
        ErrorCategory.CONFLICT, 409, "VERIFICATION_ALREADY_VERIFIED", "Already verified"),
    Failure.PHONE_NOT_SET: FailureInfo(
        ErrorCategory.VALIDATION, 400, "VERIFICATION_PHONE_NOT_SET", "No phone number on this account"),
    Failure.INVALID_CREDENTIALS: FailureInfo(
        ErrorCategory.AUTHENTICATION, 401, "AUTH_INVALID_CREDENTIALS", "Invalid credentials"),
    Failure.TOKEN_REQUIRED: FailureInfo(
        ErrorCategory.AUTHENTICATION, 401, "AUTH_TOKEN_REQUIRED", "Authentication required"),
    Failure.TOKEN_EXPIRED: FailureInfo(
        ErrorCategory.AUTHENTICATION, 401, "AUTH_TOKEN_EXPIRED", "Token has expired"),
    Failure.TOKEN_MALFORMED: FailureInfo(
        ErrorCategory.AUTHENTICATION, 401, "AUTH_TOKEN_MALFORMED", "Token is malformed"),
    Failure.TOKEN_INVALID: FailureInfo(
        ErrorCategory.AUTHENTICATION, 401, "AUTH_TOKEN_INVALID", "Token is not valid"),
    Failure.TOKEN_REVOKED: FailureInfo(
        ErrorCategory.AUTHENTICATION, 401, "AUTH_TOKEN_REVOKED", "Token has been revoked"),
    Failure.ACCOUNT_NOT_ACTIVE: FailureInfo(
        ErrorCategory.AUTHORIZATION, 403, "AUTH_ACCOUNT_NOT_ACTIVE", "Account is not active"),
    Failure.INSUFFICIENT_ROLE: FailureInfo(
        ErrorCategory.AUTHORIZATION, 403, "ROLE_INSUFFICIENT", "Insufficient permissions"),
    Failure.FORBIDDEN: FailureInfo(
        ErrorCategory.AUTHORIZATION, 403, "ROLE_FORBIDDEN", "Operation not permitted for your role"),
    Failure.INVALID_TRANSITION: FailureInfo(
        ErrorCategory.CONFLICT, 409, "ACCOUNT_INVALID_TRANSITION",
        "Operation not allowed in the account's current state"),
    Failure.ACCOUNT_NOT_FOUND: FailureInfo(
        ErrorCategory.NOT_FOUND, 404, "ACCOUNT_NOT_FOUND", "Account not found"),
    Failure.INVALID_INPUT: FailureInfo(
        ErrorCategory.VALIDATION, 400, "VALIDATION_INVALID_INPUT", "Invalid input"),
    Failure.TRANSACTION_FAILED: FailureInfo(
        ErrorCategory.TRANSACTION, 500, "SERVER_TRANSACTION_FAILED", "Server error - please try again"),
}


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of a component operation: a value, or a failure kind."""
    value: Optional[T] = None
    failure: Optional[Failure] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def fail(cls, failure: Failure, detail: Optional[str] = None) -> "Result[T]":
        return cls(failure=failure, detail=detail)

    def unwrap(self) -> T:
        """Return the value, raising ServiceError on failure."""
        if self.failure is not None:
            raise ServiceError(self.failure, self.detail)
        return self.value


class ServiceError(Exception):
    """Raised at the HTTP boundary to render a failure kind."""

    def __init__(self, failure: Failure, detail: Optional[str] = None):
        self.failure = failure
        self.info = FAILURE_INFO[failure]
        self.detail = detail
        super().__init__(f"{failure.value}: {detail or self.info.message}")

    @property
    def http_status(self) -> int:
        return self.info.http_status

    @property
    def code(self) -> str:
        return self.info.code

    def to_response(self) -> MCPResponse:
        headers = {"WWW-Authenticate": "Bearer"} if self.http_status == 401 else None
        data: Optional[Dict[str, Any]] = None
        # Detail is only surfaced for client-correctable input problems
        if self.detail and self.info.category == ErrorCategory.VALIDATION:
            data = {"detail": self.detail}
        return MCPResponse(
            data=data,
            message=self.info.message,
            status="error",
            error_code=self.code,
            status_code=self.http_status,
            headers=headers,
        )


def register_error_handlers(app: FastAPI) -> None:
    """Register all global error handlers on the FastAPI app."""

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        log = logger.error if exc.http_status >= 500 else logger.info
        log(f"{exc.failure.value} on {request.method} {request.url.path}",
            extra={"error_code": exc.code})
        return exc.to_response()

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = [
            {
                "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
                "message": err.get("msg", "Invalid value"),
            }
            for err in exc.errors()
        ]
        logger.info(f"Validation error on {request.url.path}: {errors}")
        return MCPResponse(
            data={"errors": errors},
            message="Validation failed",
            status="error",
            error_code="VALIDATION_FAILED",
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return MCPResponse(
            message="Server error - contact support",
            status="error",
            error_code="SERVER_INTERNAL_ERROR",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
