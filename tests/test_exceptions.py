"""
Tests for exception classes.

Covers status codes, typed attributes and caller-facing messages.
"""

from http import HTTPStatus

import pytest

from gateway.exceptions import (
    BlockedError,
    CacheWriteError,
    GatewayError,
    IdempotencyConflictError,
    InputValidationError,
    InsufficientCreditsError,
    InvalidSignatureError,
    PlanRestrictedError,
    ProviderError,
    ProviderTimeoutError,
    RateLimitedError,
    StorageError,
    UnauthorizedError,
    WriteVerificationError,
)


class TestGatewayError:
    """Tests for the base class."""

    def test_defaults_to_internal_error(self):
        exc = GatewayError("boom")
        assert exc.status_code == HTTPStatus.INTERNAL_SERVER_ERROR
        assert exc.public_message == "Internal error"

    @pytest.mark.parametrize(
        "exc",
        [
            UnauthorizedError(),
            BlockedError("Account blocked"),
            InvalidSignatureError("Request expired"),
            RateLimitedError("identity", retry_after=5, limit=10),
            InsufficientCreditsError(balance=0, required=2),
            PlanRestrictedError("free", "video"),
            InputValidationError("Image", "Image is required"),
            IdempotencyConflictError("tryon-1"),
            ProviderError("fashn", "HTTP 500"),
            ProviderTimeoutError("fal", 60),
            StorageError("bucket down"),
            CacheWriteError("insert failed"),
            WriteVerificationError("row vanished"),
        ],
    )
    def test_all_are_gateway_errors(self, exc):
        assert isinstance(exc, GatewayError)


class TestStatusCodes:
    """Each error surfaces with its own HTTP status."""

    @pytest.mark.parametrize(
        ("exc", "status"),
        [
            (UnauthorizedError(), HTTPStatus.UNAUTHORIZED),
            (BlockedError("Account blocked"), HTTPStatus.FORBIDDEN),
            (InvalidSignatureError("bad"), HTTPStatus.FORBIDDEN),
            (InsufficientCreditsError(1, 2), HTTPStatus.TOO_MANY_REQUESTS),
            (PlanRestrictedError("free", "video"), HTTPStatus.FORBIDDEN),
            (InputValidationError("Image", "bad"), HTTPStatus.BAD_REQUEST),
            (IdempotencyConflictError("tryon-1"), HTTPStatus.CONFLICT),
            (ProviderError("fashn", "bad"), HTTPStatus.INTERNAL_SERVER_ERROR),
            (ProviderTimeoutError("fashn", 60), HTTPStatus.GATEWAY_TIMEOUT),
            (StorageError("down"), HTTPStatus.INTERNAL_SERVER_ERROR),
        ],
    )
    def test_status(self, exc, status):
        assert exc.status_code == status


class TestRateLimitedError:
    """Tests for RateLimitedError scopes."""

    def test_identity_scope_is_429(self):
        exc = RateLimitedError("identity", retry_after=30, limit=10, remaining=0)

        assert exc.status_code == HTTPStatus.TOO_MANY_REQUESTS
        assert "30 seconds" in exc.public_message
        assert exc.limit == 10

    def test_global_scope_is_503(self):
        exc = RateLimitedError("global", retry_after=45, limit=100)

        assert exc.status_code == HTTPStatus.SERVICE_UNAVAILABLE
        assert exc.retry_after == 45


class TestMessages:
    """Internal detail stays out of caller-facing messages."""

    def test_provider_error_hides_detail(self):
        exc = ProviderError("fashn", "HTTP 500: upstream stack trace")

        assert exc.public_message == "Generation failed"
        assert "upstream stack trace" in str(exc)

    def test_insufficient_credits_attributes(self):
        exc = InsufficientCreditsError(balance=1, required=2)

        assert exc.balance == 1
        assert exc.required == 2
        assert "Balance: 1" in str(exc)

    def test_validation_error_message_is_public(self):
        exc = InputValidationError("Person image", "Person image too small", malformed_image=True)

        assert exc.public_message == "Person image too small"
        assert exc.malformed_image is True

    def test_plan_restricted_names_plan_and_action(self):
        exc = PlanRestrictedError("free", "video")

        assert "free" in exc.public_message
        assert "video" in exc.public_message
