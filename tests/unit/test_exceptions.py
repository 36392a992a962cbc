"""
Unit tests for the exception hierarchy and its HTTP mapping.
"""

from uuid import uuid4

import pytest

from app.infrastructure.exceptions import (
    AuthenticationError,
    ConcurrencyConflictError,
    CreditFlowError,
    DuplicateOperationError,
    GatewayError,
    InsufficientCreditsError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
    WebhookSignatureError,
)
from app.main import status_for


class TestErrorPayloads:

    def test_insufficient_credits_details(self):
        user_id = uuid4()
        error = InsufficientCreditsError(user_id, requested=50, available=20)

        payload = error.to_dict()

        assert payload["error"] == "InsufficientCreditsError"
        assert payload["code"] == "insufficient_credits"
        assert payload["details"] == {"user_id": str(user_id), "requested": 50, "available": 20}

    def test_invalid_transition_is_a_validation_error(self):
        error = InvalidStateTransitionError("expired", "active", "sub-1")

        assert isinstance(error, ValidationError)
        assert error.details["current_status"] == "expired"
        assert error.details["target_status"] == "active"
        assert error.code == "invalid_state_transition"

    def test_not_found_message(self):
        error = NotFoundError("Payment", "abc")

        assert error.message == "Payment not found"
        assert error.details == {"resource": "Payment", "id": "abc"}

    def test_duplicate_keeps_key(self):
        error = DuplicateOperationError("dup", key="payment:pi_1", existing_id=7)

        assert error.key == "payment:pi_1"
        assert error.details["existing_id"] == "7"

    def test_gateway_error_wraps_original(self):
        original = RuntimeError("boom")
        error = GatewayError("failed", operation="create_refund", original_error=original)

        assert error.original_error is original
        assert error.details == {"provider": "stripe", "operation": "create_refund"}


class TestStatusMapping:

    @pytest.mark.parametrize("error,status", [
        (ValidationError("bad"), 400),
        (InvalidStateTransitionError("expired", "active"), 409),
        (NotFoundError("User"), 404),
        (InsufficientCreditsError("u", 2, 1), 402),
        (DuplicateOperationError("dup"), 409),
        (ConcurrencyConflictError(), 503),
        (WebhookSignatureError("bad sig"), 400),
        (GatewayError("down"), 502),
        (AuthenticationError("nope"), 401),
        (CreditFlowError("unknown"), 500),
    ])
    def test_status_for(self, error, status):
        assert status_for(error) == status
