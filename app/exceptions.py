"""
Custom exception classes and FastAPI exception handlers.

The service layer raises domain-specific errors without importing HTTP
concepts; the handlers registered here translate them into JSON responses
of the form {"detail": ..., "error_type": ...}.

Exception hierarchy:
    OperationsAPIError (base)
    ├── ConfigurationError           — a required secret is not configured
    ├── InsufficientFundsError       — charge/withdrawal exceeds the balance
    ├── AccountNotFoundError         — requested account doesn't exist
    ├── OperationNotFoundError       — requested operation doesn't exist
    ├── PackageNotFoundError         — chosen package was not offered
    ├── UnauthorizedAccessError      — caller doesn't own the resource
    ├── InvalidTransitionError       — status write not in the transition table
    │   └── OperationNotCancellableError
    ├── OperationStateError          — action not allowed in the current status
    ├── CorrectionRequestError       — malformed correction request
    ├── DuplicateEmailError
    └── InvalidCredentialsError

Detected ledger anomalies are deliberately NOT exceptions: they are
reported by the anomaly service and fixed through an explicit correction.
"""

import uuid

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


# ---------------------------------------------------------------------------
# Base exception
# ---------------------------------------------------------------------------

class OperationsAPIError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, detail: str = "An error occurred"):
        self.detail = detail
        super().__init__(self.detail)


# ---------------------------------------------------------------------------
# Domain exceptions
# ---------------------------------------------------------------------------

class ConfigurationError(OperationsAPIError):
    """Raised when a required setting (e.g. a shared secret) is missing."""

    def __init__(self, setting_name: str):
        self.setting_name = setting_name
        super().__init__(f"{setting_name} is not configured")


class InsufficientFundsError(OperationsAPIError):
    """
    Raised when a charge or withdrawal would make the balance negative.

    Attributes:
        account_id: The account that lacks sufficient funds.
        requested_cents: The amount the caller tried to take.
        available_cents: The current cached balance of the account.
    """

    def __init__(
        self,
        account_id: uuid.UUID,
        requested_cents: int,
        available_cents: int,
    ):
        self.account_id = account_id
        self.requested_cents = requested_cents
        self.available_cents = available_cents
        super().__init__(
            f"Insufficient funds: requested {requested_cents} cents, "
            f"available {available_cents} cents"
        )


class AccountNotFoundError(OperationsAPIError):
    """Raised when a requested account does not exist."""

    def __init__(self, account_id: uuid.UUID | None = None):
        self.account_id = account_id
        if account_id is None:
            super().__init__("Account not found")
        else:
            super().__init__(f"Account {account_id} not found")


class OperationNotFoundError(OperationsAPIError):
    """Raised when a requested operation does not exist."""

    def __init__(self, operation_id: uuid.UUID):
        self.operation_id = operation_id
        super().__init__(f"Operation {operation_id} not found")


class PackageNotFoundError(OperationsAPIError):
    """Raised when a selected package is not among the operation's offers."""

    def __init__(self, operation_id: uuid.UUID, package_id: str):
        self.operation_id = operation_id
        self.package_id = package_id
        super().__init__(f"Package {package_id} is not offered for operation {operation_id}")


class UnauthorizedAccessError(OperationsAPIError):
    """Raised when a user attempts to access a resource they don't own."""

    def __init__(self, detail: str = "You do not have access to this resource"):
        super().__init__(detail)


class InvalidTransitionError(OperationsAPIError):
    """Raised when a status write is not an edge of the transition table."""

    def __init__(self, operation_id: uuid.UUID, current: str, target: str):
        self.operation_id = operation_id
        self.current = current
        self.target = target
        super().__init__(
            f"Operation {operation_id} cannot move from {current} to {target}"
        )


class OperationNotCancellableError(InvalidTransitionError):
    """Raised when cancellation is requested outside a cancellable status."""

    def __init__(self, operation_id: uuid.UUID, current: str):
        super().__init__(operation_id, current, "CANCELLED")
        self.detail = f"Operation in status {current} cannot be cancelled"
        self.args = (self.detail,)


class OperationStateError(OperationsAPIError):
    """Raised when a user action needs a different operation status."""

    def __init__(self, operation_id: uuid.UUID, current: str, detail: str):
        self.operation_id = operation_id
        self.current = current
        super().__init__(detail)


class CorrectionRequestError(OperationsAPIError):
    """Raised when a correction request is missing required input."""


class DuplicateEmailError(OperationsAPIError):
    """Raised when attempting to register with an email that's already in use."""

    def __init__(self, email: str):
        self.email = email
        super().__init__(f"Email {email} is already registered")


class InvalidCredentialsError(OperationsAPIError):
    """Raised when login credentials are incorrect."""

    def __init__(self):
        super().__init__("Invalid email or password")


# ---------------------------------------------------------------------------
# FastAPI exception handlers
# ---------------------------------------------------------------------------

def register_exception_handlers(app: FastAPI) -> None:
    """
    Register custom exception handlers with the FastAPI application.

    Each handler maps a domain exception to an HTTP status code and a
    consistent JSON body. Called once during app setup in main.py.
    """

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(
        request: Request, exc: ConfigurationError
    ) -> JSONResponse:
        # The setting name is operator-facing; keep the body generic.
        return JSONResponse(
            status_code=500,
            content={"detail": "Server configuration error", "error_type": "configuration_error"},
        )

    @app.exception_handler(InsufficientFundsError)
    async def insufficient_funds_handler(
        request: Request, exc: InsufficientFundsError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content={
                "detail": exc.detail,
                "error_type": "insufficient_funds",
                "requested_cents": exc.requested_cents,
                "available_cents": exc.available_cents,
            },
        )

    @app.exception_handler(AccountNotFoundError)
    async def account_not_found_handler(
        request: Request, exc: AccountNotFoundError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=404,
            content={"detail": exc.detail, "error_type": "account_not_found"},
        )

    @app.exception_handler(OperationNotFoundError)
    async def operation_not_found_handler(
        request: Request, exc: OperationNotFoundError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=404,
            content={"detail": exc.detail, "error_type": "operation_not_found"},
        )

    @app.exception_handler(PackageNotFoundError)
    async def package_not_found_handler(
        request: Request, exc: PackageNotFoundError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=404,
            content={"detail": exc.detail, "error_type": "package_not_found"},
        )

    @app.exception_handler(UnauthorizedAccessError)
    async def unauthorized_access_handler(
        request: Request, exc: UnauthorizedAccessError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=403,
            content={"detail": exc.detail, "error_type": "unauthorized_access"},
        )

    @app.exception_handler(InvalidTransitionError)
    async def invalid_transition_handler(
        request: Request, exc: InvalidTransitionError
    ) -> JSONResponse:
        error_type = (
            "not_cancellable"
            if isinstance(exc, OperationNotCancellableError)
            else "invalid_transition"
        )
        return JSONResponse(
            status_code=409,
            content={
                "detail": exc.detail,
                "error_type": error_type,
                "current_status": exc.current,
            },
        )

    @app.exception_handler(OperationStateError)
    async def operation_state_handler(
        request: Request, exc: OperationStateError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=409,
            content={
                "detail": exc.detail,
                "error_type": "invalid_operation_state",
                "current_status": exc.current,
            },
        )

    @app.exception_handler(CorrectionRequestError)
    async def correction_request_handler(
        request: Request, exc: CorrectionRequestError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"detail": exc.detail, "error_type": "invalid_correction_request"},
        )

    @app.exception_handler(DuplicateEmailError)
    async def duplicate_email_handler(
        request: Request, exc: DuplicateEmailError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=409,
            content={"detail": exc.detail, "error_type": "duplicate_email"},
        )

    @app.exception_handler(InvalidCredentialsError)
    async def invalid_credentials_handler(
        request: Request, exc: InvalidCredentialsError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=401,
            content={"detail": exc.detail, "error_type": "invalid_credentials"},
        )
