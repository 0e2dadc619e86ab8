"""
Request Signature Verifier.

Clients sign each generation request with the shared secret:

    signature = hex(HMAC-SHA256(secret, f"{token}:{timestamp_ms}:{user_id}"))

and send it in X-Request-Token, X-Request-Timestamp and X-Request-Signature.

Unsigned requests soft-pass with a warning during rollout. A signature
that is present but stale, malformed, forged or replayed is rejected.
"""

import hashlib
import hmac
import time
from collections.abc import Callable, Mapping

from gateway.config import Settings, settings as default_settings
from gateway.models.domain import SignatureCheck
from gateway.observability.logging import get_logger

logger = get_logger(__name__)

TOKEN_HEADER = "X-Request-Token"
TIMESTAMP_HEADER = "X-Request-Timestamp"
SIGNATURE_HEADER = "X-Request-Signature"

SIGNATURE_HEX_LENGTH = 64


def _now_ms() -> int:
    return int(time.time() * 1000)


def sign(secret: str, token: str, timestamp_ms: int | str, user_id: str) -> str:
    """Compute the hex signature a client sends for a request."""
    message = f"{token}:{timestamp_ms}:{user_id}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


class RequestSignatureVerifier:
    """
    Verifies request signatures and rejects replayed tokens.

    Seen tokens are remembered for the freshness window; any token older
    than that is rejected as expired anyway. verify never awaits, so the
    replay check and record run as one step on the event loop.
    """

    def __init__(
        self,
        secret: str | None = None,
        settings: Settings | None = None,
        clock_ms: Callable[[], int] = _now_ms,
    ) -> None:
        self.settings = settings or default_settings
        self.secret = secret or self.settings.signing_secret
        self.max_age_ms = self.settings.signature_max_age_seconds * 1000
        self._clock_ms = clock_ms
        self.max_seen_tokens = self.settings.signature_replay_cache_size
        # token -> expiry timestamp (ms)
        self._seen_tokens: dict[str, int] = {}

    def verify(self, headers: Mapping[str, str], user_id: str) -> SignatureCheck:
        """Check the signature headers against the authenticated user id."""
        token = headers.get(TOKEN_HEADER)
        timestamp = headers.get(TIMESTAMP_HEADER)
        signature = headers.get(SIGNATURE_HEADER)

        if not token and not timestamp and not signature:
            logger.warning("request_unsigned", user_id=user_id)
            return SignatureCheck(valid=True, signed=False)

        if not token or not timestamp or not signature:
            return self._reject("Incomplete request signature", user_id)

        try:
            timestamp_ms = int(timestamp)
        except ValueError:
            return self._reject("Invalid timestamp", user_id)

        now = self._clock_ms()
        if now - timestamp_ms > self.max_age_ms:
            return self._reject("Request expired", user_id)
        if timestamp_ms > now:
            return self._reject("Invalid timestamp (future)", user_id)

        if len(signature) != SIGNATURE_HEX_LENGTH:
            return self._reject("Invalid signature format", user_id)
        try:
            provided = bytes.fromhex(signature)
        except ValueError:
            return self._reject("Invalid signature format", user_id)

        expected = bytes.fromhex(sign(self.secret, token, timestamp, user_id))
        if not hmac.compare_digest(provided, expected):
            return self._reject("Invalid signature", user_id)

        if not self._remember(token, timestamp_ms + self.max_age_ms, now):
            return self._reject("Replayed request token", user_id)

        return SignatureCheck(valid=True, signed=True)

    def _reject(self, error: str, user_id: str) -> SignatureCheck:
        logger.warning("request_signature_invalid", user_id=user_id, error=error)
        return SignatureCheck(valid=False, signed=True, error=error)

    def _remember(self, token: str, expires_at: int, now: int) -> bool:
        """Record a token; False if it was already seen and is still live."""
        existing = self._seen_tokens.get(token)
        if existing is not None and existing > now:
            return False

        if len(self._seen_tokens) >= self.max_seen_tokens:
            expired = [t for t, exp in self._seen_tokens.items() if exp <= now]
            for t in expired:
                del self._seen_tokens[t]
            if len(self._seen_tokens) >= self.max_seen_tokens:
                # Evict oldest insertions first
                for t in list(self._seen_tokens)[: max(1, self.max_seen_tokens // 10)]:
                    del self._seen_tokens[t]

        self._seen_tokens[token] = expires_at
        return True
