"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.

Every gateway error carries the HTTP status it surfaces as and a message
that is safe to show to the caller.
"""

from http import HTTPStatus


class GatewayError(Exception):
    """Base exception for all gateway errors."""

    status_code: int = HTTPStatus.INTERNAL_SERVER_ERROR
    public_message: str = "Internal error"


class UnauthorizedError(GatewayError):
    """Raised when no authenticated identity accompanies a request."""

    status_code = HTTPStatus.UNAUTHORIZED

    def __init__(self, message: str = "Unauthorized") -> None:
        self.public_message = message
        super().__init__(f"Authentication failed: {message}")


class BlockedError(GatewayError):
    """Raised when the caller's user id or IP is blocked."""

    status_code = HTTPStatus.FORBIDDEN

    def __init__(self, reason: str, score: float = 0.0) -> None:
        self.reason = reason
        self.score = score
        self.public_message = reason
        super().__init__(f"Blocked: {reason}")


class InvalidSignatureError(GatewayError):
    """Raised when a request signature is present but does not verify."""

    status_code = HTTPStatus.FORBIDDEN

    def __init__(self, reason: str) -> None:
        self.reason = reason
        self.public_message = "Invalid request signature"
        super().__init__(f"Invalid signature: {reason}")


class RateLimitedError(GatewayError):
    """
    Raised when an admission window is full.

    scope="global" maps to 503 (provider protection), scope="identity" to 429.
    """

    def __init__(
        self, scope: str, retry_after: int, limit: int, remaining: int = 0
    ) -> None:
        self.scope = scope
        self.retry_after = retry_after
        self.limit = limit
        self.remaining = remaining
        if scope == "global":
            self.status_code = HTTPStatus.SERVICE_UNAVAILABLE
            self.public_message = "Service is busy, please retry shortly"
        else:
            self.status_code = HTTPStatus.TOO_MANY_REQUESTS
            self.public_message = f"Rate limit exceeded. Try again in {retry_after} seconds."
        super().__init__(f"Rate limited ({scope}): retry after {retry_after}s")


class InsufficientCreditsError(GatewayError):
    """Raised when account has insufficient balance for the action."""

    status_code = HTTPStatus.TOO_MANY_REQUESTS

    def __init__(self, balance: int, required: int) -> None:
        self.balance = balance
        self.required = required
        self.public_message = "Insufficient credits"
        super().__init__(f"Insufficient credits. Balance: {balance}, Required: {required}")


class PlanRestrictedError(GatewayError):
    """Raised when the account plan does not include the requested action."""

    status_code = HTTPStatus.FORBIDDEN

    def __init__(self, plan: str, action: str) -> None:
        self.plan = plan
        self.action = action
        self.public_message = f"The {plan} plan does not include {action} generation"
        super().__init__(f"Plan {plan} cannot perform {action}")


class InputValidationError(GatewayError):
    """Raised when request input fails validation."""

    status_code = HTTPStatus.BAD_REQUEST

    def __init__(self, field: str, message: str, malformed_image: bool = False) -> None:
        self.field = field
        self.message = message
        self.malformed_image = malformed_image
        self.public_message = message
        super().__init__(f"Validation failed for {field}: {message}")


class IdempotencyConflictError(GatewayError):
    """Raised when a request id is reused."""

    status_code = HTTPStatus.CONFLICT

    def __init__(self, request_id: str) -> None:
        self.request_id = request_id
        self.public_message = "Request already processed"
        super().__init__(f"Idempotency conflict: request {request_id} already exists")


class ProviderError(GatewayError):
    """Raised when the generation provider fails."""

    status_code = HTTPStatus.INTERNAL_SERVER_ERROR

    def __init__(self, provider: str, message: str) -> None:
        self.provider = provider
        self.message = message
        self.public_message = "Generation failed"
        super().__init__(f"Provider {provider} error: {message}")


class ProviderTimeoutError(GatewayError):
    """Raised when a provider job does not finish within the poll budget."""

    status_code = HTTPStatus.GATEWAY_TIMEOUT

    def __init__(self, provider: str, attempts: int) -> None:
        self.provider = provider
        self.attempts = attempts
        self.public_message = "Generation timed out"
        super().__init__(f"Provider {provider} timed out after {attempts} attempts")


class StorageError(GatewayError):
    """Raised when object storage operation fails."""

    status_code = HTTPStatus.INTERNAL_SERVER_ERROR

    def __init__(self, message: str) -> None:
        self.message = message
        self.public_message = "Failed to store result"
        super().__init__(f"Storage error: {message}")


class CacheWriteError(GatewayError):
    """Raised when a cache row cannot be written. Never fails a request."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Cache write failed: {message}")


class WriteVerificationError(GatewayError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")
