"""
Custom Exceptions for CreditFlow

Hierarchical exception classes for proper error handling across layers.
Every error carries a stable machine-readable ``code`` alongside the
human-readable message so API clients can branch on it.
"""

from typing import Optional, Dict, Any


class CreditFlowError(Exception):
    """Base exception for all CreditFlow errors."""

    code: str = "internal_error"

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.original_error = original_error

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details
        }


class ValidationError(CreditFlowError):
    """Raised when input validation fails. Nothing has been written."""

    code = "validation_error"


class InvalidStateTransitionError(ValidationError):
    """Raised when a subscription is asked to make a transition it does not allow."""

    code = "invalid_state_transition"

    def __init__(
        self,
        current: str,
        target: str,
        subscription_id: Optional[str] = None,
    ):
        details = {"current_status": current, "target_status": target}
        if subscription_id:
            details["subscription_id"] = subscription_id
        super().__init__(
            f"Cannot transition subscription from '{current}' to '{target}'",
            details,
        )


class NotFoundError(CreditFlowError):
    """Raised when a requested resource is not found."""

    code = "not_found"

    def __init__(
        self,
        resource: str,
        identifier: Any = None,
        message: Optional[str] = None,
    ):
        details = {"resource": resource}
        if identifier is not None:
            details["id"] = str(identifier)
        super().__init__(message or f"{resource} not found", details)


class InsufficientCreditsError(CreditFlowError):
    """Raised when a debit exceeds the available balance. Nothing has been written."""

    code = "insufficient_credits"

    def __init__(self, user_id: Any, requested: int, available: int):
        super().__init__(
            f"Insufficient credits: requested {requested}, available {available}",
            {"user_id": str(user_id), "requested": requested, "available": available},
        )
        self.requested = requested
        self.available = available


class DuplicateOperationError(CreditFlowError):
    """
    Raised when an idempotency key (or a unique business key such as an
    email or plan slug) has already been used.

    For retried operations callers treat this as a successful no-op.
    """

    code = "duplicate_operation"

    def __init__(
        self,
        message: str,
        key: Optional[str] = None,
        existing_id: Optional[Any] = None,
    ):
        details = {}
        if key:
            details["key"] = key
        if existing_id is not None:
            details["existing_id"] = str(existing_id)
        super().__init__(message, details)
        self.key = key
        self.existing_id = existing_id


class BalanceVersionConflict(CreditFlowError):
    """
    Internal signal: the compare-and-swap on a versioned row matched zero rows.

    Never surfaced to callers; the unit of work is rolled back and retried.
    """

    code = "version_conflict"


class ConcurrencyConflictError(CreditFlowError):
    """Raised when optimistic retries are exhausted. Transient; safe to retry."""

    code = "concurrency_conflict"

    def __init__(
        self,
        message: str = "Concurrent update conflict, please retry",
        attempts: int = 0,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message, {"attempts": attempts}, original_error)


class GatewayError(CreditFlowError):
    """Raised when the external payment provider fails."""

    code = "gateway_error"

    def __init__(
        self,
        message: str,
        provider: str = "stripe",
        operation: Optional[str] = None,
        payment_id: Optional[Any] = None,
        original_error: Optional[Exception] = None
    ):
        details = {"provider": provider}
        if operation:
            details["operation"] = operation
        if payment_id is not None:
            details["payment_id"] = str(payment_id)
        super().__init__(message, details, original_error)


class WebhookSignatureError(GatewayError):
    """Raised when an inbound webhook payload or signature is invalid."""

    code = "invalid_webhook"


class AuthenticationError(CreditFlowError):
    """Raised when credentials, tokens or sessions are rejected."""

    code = "authentication_failed"


class ConfigurationError(CreditFlowError):
    """Raised when configuration is missing or invalid."""

    code = "configuration_error"

    def __init__(
        self,
        message: str,
        missing_keys: Optional[list] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if missing_keys:
            details["missing_keys"] = missing_keys
        super().__init__(message, details, original_error)
