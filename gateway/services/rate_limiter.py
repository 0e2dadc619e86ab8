"""
Rate Limiter - Global circuit breaker plus per-identity, per-action windows.
"""

from gateway.config import Settings, settings as default_settings
from gateway.exceptions import RateLimitedError
from gateway.models.api import GenerationAction
from gateway.models.domain import Identity, WindowState
from gateway.observability.logging import get_logger
from gateway.services.counters import InMemoryWindowCounter, WindowCounter

logger = get_logger(__name__)

GLOBAL_KEY = "global"


class RateLimiter:
    """
    Two independent admission gates.

    The global gate protects the provider account from runaway load and
    rejects everyone once full. The identity gate enforces a per-action
    ceiling for each user.
    """

    def __init__(
        self, counter: WindowCounter | None = None, settings: Settings | None = None
    ) -> None:
        self.counter = counter or InMemoryWindowCounter()
        self.settings = settings or default_settings

    async def check_global(self) -> WindowState:
        return await self.counter.hit(
            GLOBAL_KEY, self.settings.global_rate_limit, self.settings.rate_limit_window_seconds
        )

    async def check_identity(self, identity: Identity, action: GenerationAction) -> WindowState:
        return await self.counter.hit(
            f"{identity.user_id}:{action.value}",
            self.settings.rate_limit_for(action.value),
            self.settings.rate_limit_window_seconds,
        )

    async def admit(self, identity: Identity, action: GenerationAction) -> None:
        """
        Run both gates, global first.

        Raises:
            RateLimitedError: scope "global" (service busy) or "identity"
        """
        state = await self.check_global()
        if not state.allowed:
            logger.warning(
                "global_rate_limit_exceeded",
                count=state.count,
                limit=state.limit,
                retry_after=state.retry_after,
            )
            raise RateLimitedError("global", state.retry_after, state.limit)

        state = await self.check_identity(identity, action)
        if not state.allowed:
            logger.warning(
                "rate_limit_exceeded",
                user_id=identity.user_id,
                action=action.value,
                limit=state.limit,
                retry_after=state.retry_after,
            )
            raise RateLimitedError("identity", state.retry_after, state.limit, state.remaining)
