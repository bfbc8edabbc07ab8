"""Typed error taxonomy for the billing core.

Every error carries an explicit ``kind`` so the HTTP boundary can choose a
transport status without string matching, plus a stable ``code`` for logs.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    GATEWAY = "gateway"
    INVALID_STATE = "invalid_state"
    PERSISTENCE = "persistence"


class BillingError(RuntimeError):
    """Base exception raised by the billing core."""

    kind: ErrorKind = ErrorKind.PERSISTENCE
    retryable: bool = False

    def __init__(self, message: str, code: str = "BILLING_ERROR") -> None:
        super().__init__(message)
        self.code = code


class BillingValidationError(BillingError):
    """Raised for invalid plans, malformed event types or payloads."""

    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, code: str = "400_INVALID_INPUT") -> None:
        super().__init__(message, code=code)


class UserNotFoundError(BillingError):
    """Raised when the referenced user does not exist."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, user_id: str) -> None:
        super().__init__(f"User {user_id} not found.", code="404_USER_NOT_FOUND")
        self.user_id = user_id


class GatewayError(BillingError):
    """Raised when the payments microservice times out or answers with a non-2xx status."""

    kind = ErrorKind.GATEWAY
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        body: str | None = None,
        code: str = "502_GATEWAY_ERROR",
    ) -> None:
        super().__init__(message, code=code)
        self.status_code = status_code
        self.body = body


class InvalidStateError(BillingError):
    """Raised when an operation is not allowed for the current subscription status."""

    kind = ErrorKind.INVALID_STATE

    def __init__(self, message: str, code: str = "409_INVALID_STATE") -> None:
        super().__init__(message, code=code)


class BillingPersistenceError(BillingError):
    """Raised when the ledger, subscription store or cache cannot be written."""

    kind = ErrorKind.PERSISTENCE
    retryable = True

    def __init__(self, message: str, code: str = "503_PERSISTENCE_ERROR") -> None:
        super().__init__(message, code=code)
