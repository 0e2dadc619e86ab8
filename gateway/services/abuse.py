"""
Abuse Detector & Auto-Blocker.

Every pipeline stage reports suspicious outcomes here. A caller is
blocked when:
- an explicit, unexpired BlockEntry targets their user id or IP, or
- their recency-weighted abuse score reaches the block threshold.

Automatic BlockEntry rows are written only by try_auto_block, after an
event of a trigger type pushes the undecayed recent weight or event
count past the stricter auto-block limits.
"""

from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from typing import Any, ClassVar

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from gateway.config import Settings, settings as default_settings
from gateway.db.models import AbuseRecord, BlockEntry
from gateway.models.api import AbuseEventType, Severity
from gateway.models.domain import AbuseCheck, Identity
from gateway.observability.logging import get_logger
from gateway.observability.metrics import metrics
from gateway.services.counters import KeyedLock

logger = get_logger(__name__)

SEVERITY_WEIGHTS: dict[Severity, int] = {
    Severity.LOW: 3,
    Severity.MEDIUM: 10,
    Severity.HIGH: 30,
}

AUTO_BLOCK_TRIGGERS = frozenset(
    {
        AbuseEventType.INVALID_SIGNATURE,
        AbuseEventType.RATE_LIMIT_EXCEEDED,
        AbuseEventType.CREDIT_EXHAUSTION_ATTEMPT,
        AbuseEventType.INVALID_IMAGE,
    }
)

BLOCK_REASONS: dict[AbuseEventType, str] = {
    AbuseEventType.INVALID_SIGNATURE: "Repeated requests with forged signatures",
    AbuseEventType.RATE_LIMIT_EXCEEDED: "Repeated rate limit violations",
    AbuseEventType.CREDIT_EXHAUSTION_ATTEMPT: "Repeated requests without credits",
    AbuseEventType.INVALID_IMAGE: "Repeated malformed image uploads",
}

USER_BLOCKED_MESSAGE = "Account temporarily suspended due to suspicious activity"
IP_BLOCKED_MESSAGE = "Access denied"
CHECK_FAILED_MESSAGE = "Unable to verify account status"


def _utc_now() -> datetime:
    return datetime.now(UTC)


def decayed_score(
    events: Iterable[tuple[str, datetime]], now: datetime, half_life_hours: float
) -> float:
    """
    Sum severity weights, halving each event's weight every half-life.

    Events stamped in the future count at full weight.
    """
    half_life = half_life_hours * 3600
    score = 0.0
    for severity, created_at in events:
        age = max(0.0, (now - created_at).total_seconds())
        score += SEVERITY_WEIGHTS[Severity(severity)] * 0.5 ** (age / half_life)
    return score


class AbuseDetector:
    """Abuse scoring and blocking backed by abuse_records and block_entries."""

    # Serializes auto-block evaluation per user within this process
    _auto_block_locks: ClassVar[KeyedLock] = KeyedLock()

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.session = session
        self.settings = settings or default_settings
        self._now = clock

    async def check(self, identity: Identity) -> AbuseCheck:
        """
        Decide whether the identity may proceed.

        Fails closed: if the store cannot be read the caller is treated
        as blocked.
        """
        now = self._now()
        try:
            if await self._active_block(user_id=identity.user_id) is not None:
                return AbuseCheck(blocked=True, score=0.0, reason=USER_BLOCKED_MESSAGE)
            if identity.ip and await self._active_block(ip=identity.ip) is not None:
                return AbuseCheck(blocked=True, score=0.0, reason=IP_BLOCKED_MESSAGE)

            since = now - timedelta(hours=self.settings.abuse_score_window_hours)
            events = await self._recent_events(identity.user_id, since)
        except SQLAlchemyError as e:
            logger.error(
                "abuse_check_failed", user_id=identity.user_id, error=str(e), exc_info=True
            )
            await self.session.rollback()
            return AbuseCheck(blocked=True, score=0.0, reason=CHECK_FAILED_MESSAGE)

        score = decayed_score(events, now, self.settings.abuse_decay_half_life_hours)

        if score >= self.settings.abuse_block_score:
            logger.warning(
                "abuse_score_block", user_id=identity.user_id, score=round(score, 2)
            )
            return AbuseCheck(blocked=True, score=score, reason=USER_BLOCKED_MESSAGE)

        flagged = score >= self.settings.abuse_flag_score
        if flagged:
            logger.warning(
                "abuse_score_flagged", user_id=identity.user_id, score=round(score, 2)
            )
        return AbuseCheck(blocked=False, score=score, flagged=flagged)

    async def record(
        self,
        identity: Identity,
        event_type: AbuseEventType,
        severity: Severity,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Append an abuse record. Store errors are logged, never raised."""
        self.session.add(
            AbuseRecord(
                user_id=identity.user_id,
                ip_address=identity.ip,
                event_type=event_type.value,
                severity=severity.value,
                details=details or {},
                created_at=self._now(),
            )
        )
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            logger.error(
                "abuse_record_failed",
                user_id=identity.user_id,
                event_type=event_type.value,
                error=str(e),
            )
            await self.session.rollback()
            return

        metrics.record_abuse_event(event_type.value, severity.value)
        logger.info(
            "abuse_event_recorded",
            user_id=identity.user_id,
            ip=identity.ip,
            event_type=event_type.value,
            severity=severity.value,
        )

    async def report(
        self,
        identity: Identity,
        event_type: AbuseEventType,
        severity: Severity,
        details: dict[str, Any] | None = None,
    ) -> bool:
        """Record an event, then evaluate auto-block. Returns True if a block was created."""
        await self.record(identity, event_type, severity, details)
        return await self.try_auto_block(identity, event_type)

    async def try_auto_block(self, identity: Identity, trigger_event: AbuseEventType) -> bool:
        """
        Write an automatic BlockEntry if recent abuse crosses the auto-block limits.

        Only trigger event types are considered, and a user with an active
        block is left alone.
        """
        if trigger_event not in AUTO_BLOCK_TRIGGERS:
            return False

        async with self._auto_block_locks.hold(identity.user_id):
            now = self._now()
            try:
                if await self._active_block(user_id=identity.user_id) is not None:
                    return False

                since = now - timedelta(minutes=self.settings.auto_block_window_minutes)
                events = await self._recent_events(identity.user_id, since)
                weight = sum(SEVERITY_WEIGHTS[Severity(sev)] for sev, _ in events)
                if (
                    weight < self.settings.auto_block_score
                    and len(events) < self.settings.auto_block_event_count
                ):
                    return False

                self.session.add(
                    BlockEntry(
                        user_id=identity.user_id,
                        reason=BLOCK_REASONS[trigger_event],
                        source="auto",
                        trigger_event=trigger_event.value,
                        created_at=now,
                        expires_at=now + timedelta(hours=self.settings.auto_block_duration_hours),
                    )
                )
                await self.session.commit()
            except SQLAlchemyError as e:
                logger.error(
                    "auto_block_failed", user_id=identity.user_id, error=str(e), exc_info=True
                )
                await self.session.rollback()
                return False

        metrics.record_auto_block(trigger_event.value)
        logger.warning(
            "user_auto_blocked",
            user_id=identity.user_id,
            trigger_event=trigger_event.value,
            recent_events=len(events),
            recent_weight=weight,
        )
        return True

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _active_block(
        self, user_id: str | None = None, ip: str | None = None
    ) -> BlockEntry | None:
        now = self._now()
        stmt = select(BlockEntry).where(
            or_(BlockEntry.expires_at.is_(None), BlockEntry.expires_at > now)
        )
        if user_id is not None:
            stmt = stmt.where(BlockEntry.user_id == user_id)
        else:
            stmt = stmt.where(BlockEntry.ip_address == ip)
        result = await self.session.execute(stmt.limit(1))
        return result.scalar_one_or_none()

    async def _recent_events(self, user_id: str, since: datetime) -> list[tuple[str, datetime]]:
        stmt = select(AbuseRecord.severity, AbuseRecord.created_at).where(
            AbuseRecord.user_id == user_id,
            AbuseRecord.created_at >= since,
        )
        result = await self.session.execute(stmt)
        return [(severity, created_at) for severity, created_at in result.all()]
