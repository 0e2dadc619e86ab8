"""
Result Cache - Fingerprint-addressed store of previously generated artifacts.

CACHING STRATEGY:
- Catalog garments are keyed by their catalog id, which is stable across
  re-uploads of the same item.
- Custom garment uploads fall back to a SHA-256 of the garment image.
- Person photos (and video/3D inputs) are always keyed by content hash.

Rows store a pointer, never a URL that grants access: "storage:<path>"
for private objects, or an inline data URL. Each read of a storage
pointer mints a fresh signed URL.

Entries live 7 days. Expired rows are misses on read; sweep_expired
reclaims rows and objects but is not needed for correctness.
"""

import hashlib
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from gateway.config import Settings, settings as default_settings
from gateway.db.models import CacheEntry
from gateway.exceptions import CacheWriteError, StorageError
from gateway.models.api import GenerationAction
from gateway.models.domain import CacheHit, CacheStats
from gateway.observability.logging import get_logger
from gateway.services.image_validation import hash_image
from gateway.services.ledger import CREDIT_COSTS
from gateway.services.storage import ObjectStorage, pointer_path

logger = get_logger(__name__)

MAX_HISTORY_LIMIT = 100
DEFAULT_HISTORY_LIMIT = 50


def _utc_now() -> datetime:
    return datetime.now(UTC)


def compute_fingerprint(user_id: str, subject_key: str, source_hash: str) -> str:
    """Stable cache key over (identity, subject, source image)."""
    return hashlib.sha256(f"{user_id}|{subject_key}|{source_hash}".encode()).hexdigest()


def tryon_subject_key(dress_id: str | None, garment_image: str) -> str:
    """Catalog id when known, otherwise the garment image's content hash."""
    if dress_id:
        return f"dress:{dress_id}"
    return f"garment:{hash_image(garment_image)}"


class ResultCache:
    """Result cache backed by the result_cache table and private object storage."""

    def __init__(
        self,
        session: AsyncSession,
        storage: ObjectStorage,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.session = session
        self.storage = storage
        self.settings = settings or default_settings
        self._now = clock

    async def lookup(self, fingerprint: str) -> CacheHit | None:
        """
        Return the live entry for a fingerprint with a resolved result URL.

        Expired rows, store errors and signing failures are all misses.
        """
        now = self._now()
        try:
            result = await self.session.execute(
                select(CacheEntry).where(
                    CacheEntry.fingerprint == fingerprint,
                    CacheEntry.expires_at > now,
                )
            )
            entry = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("cache_lookup_failed", fingerprint=fingerprint[:12], error=str(e))
            await self.session.rollback()
            return None

        if entry is None:
            return None

        try:
            url = await self.resolve(entry.result_pointer)
        except StorageError as e:
            logger.warning("cache_entry_unreadable", cache_id=str(entry.id), error=str(e))
            return None

        try:
            await self.session.execute(
                update(CacheEntry)
                .where(CacheEntry.id == entry.id)
                .values(access_count=CacheEntry.access_count + 1, last_accessed_at=now)
                .execution_options(synchronize_session=False)
            )
            await self.session.commit()
        except SQLAlchemyError as e:
            logger.warning("cache_access_count_failed", cache_id=str(entry.id), error=str(e))
            await self.session.rollback()

        logger.info("cache_hit", cache_id=str(entry.id), access_count=entry.access_count + 1)
        return self._to_hit(entry, url, access_count=entry.access_count + 1)

    async def write(
        self,
        fingerprint: str,
        user_id: str,
        action: GenerationAction,
        subject_key: str,
        source_hash: str,
        pointer: str,
    ) -> str | None:
        """
        Store a pointer for a fingerprint for the retention period.

        A live row for the fingerprint is left untouched; an expired one is
        replaced and its stored object deleted. Returns the cache id
        written, or None if a live row won.

        Raises:
            CacheWriteError: the row could not be written
        """
        now = self._now()
        expires_at = now + timedelta(days=self.settings.cache_ttl_days)
        stmt = insert(CacheEntry).values(
            fingerprint=fingerprint,
            user_id=user_id,
            action=action.value,
            subject_key=subject_key,
            source_hash=source_hash,
            result_pointer=pointer,
            access_count=1,
            created_at=now,
            expires_at=expires_at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[CacheEntry.fingerprint],
            set_={
                "result_pointer": stmt.excluded.result_pointer,
                "subject_key": stmt.excluded.subject_key,
                "access_count": 1,
                "last_accessed_at": None,
                "created_at": stmt.excluded.created_at,
                "expires_at": stmt.excluded.expires_at,
            },
            where=CacheEntry.expires_at <= now,
        ).returning(CacheEntry.id)
        # Row lock keeps the pointer read here equal to the one the upsert replaces
        replaced_stmt = (
            select(CacheEntry.result_pointer)
            .where(CacheEntry.fingerprint == fingerprint, CacheEntry.expires_at <= now)
            .with_for_update()
        )

        try:
            replaced = (await self.session.execute(replaced_stmt)).scalar_one_or_none()
            result = await self.session.execute(stmt)
            cache_id = result.scalar_one_or_none()
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise CacheWriteError(str(e)) from e

        if cache_id is None:
            logger.info("cache_write_skipped_live_entry", fingerprint=fingerprint[:12])
            return None

        if replaced is not None and replaced != pointer:
            await self._delete_objects([replaced])

        logger.info("cache_written", cache_id=str(cache_id), expires_at=expires_at.isoformat())
        return str(cache_id)

    async def resolve(self, pointer: str) -> str:
        """Turn a stored pointer into something the client can fetch."""
        path = pointer_path(pointer)
        if path is None:
            return pointer
        return await self.storage.create_signed_url(path)

    async def history(
        self,
        user_id: str,
        limit: int = DEFAULT_HISTORY_LIMIT,
        offset: int = 0,
        action: GenerationAction | None = None,
    ) -> list[CacheHit]:
        """Live entries for a user, newest first, with fresh URLs."""
        limit = min(max(limit, 1), MAX_HISTORY_LIMIT)
        offset = max(offset, 0)
        query = select(CacheEntry).where(
            CacheEntry.user_id == user_id, CacheEntry.expires_at > self._now()
        )
        if action is not None:
            query = query.where(CacheEntry.action == action.value)
        result = await self.session.execute(
            query.order_by(CacheEntry.created_at.desc()).limit(limit).offset(offset)
        )

        items: list[CacheHit] = []
        for entry in result.scalars().all():
            try:
                url = await self.resolve(entry.result_pointer)
            except StorageError:
                logger.warning("history_entry_unreadable", cache_id=str(entry.id))
                continue
            items.append(self._to_hit(entry, url, access_count=entry.access_count))
        return items

    async def stats(self, user_id: str) -> CacheStats:
        """
        Entry count, hits and credits saved for a user.

        Hits exclude the write that created each entry.
        """
        result = await self.session.execute(
            select(
                CacheEntry.action,
                func.count(CacheEntry.id),
                func.coalesce(func.sum(func.greatest(CacheEntry.access_count - 1, 0)), 0),
            )
            .where(CacheEntry.user_id == user_id)
            .group_by(CacheEntry.action)
        )

        entries = hits = saved = 0
        for action, count, action_hits in result.all():
            entries += count
            hits += action_hits
            saved += action_hits * CREDIT_COSTS[GenerationAction(action)]
        return CacheStats(entries=entries, hits=hits, credits_saved=saved)

    async def invalidate_user(self, user_id: str) -> int:
        """Delete every entry and stored artifact for a user."""
        result = await self.session.execute(
            delete(CacheEntry)
            .where(CacheEntry.user_id == user_id)
            .returning(CacheEntry.result_pointer)
        )
        pointers = list(result.scalars().all())
        await self.session.commit()

        await self._delete_objects(pointers)
        logger.info("cache_invalidated", user_id=user_id, entries=len(pointers))
        return len(pointers)

    async def sweep_expired(self, batch_size: int = 500) -> int:
        """Delete up to batch_size expired rows and their objects."""
        expired_ids = (
            select(CacheEntry.id)
            .where(CacheEntry.expires_at <= self._now())
            .limit(batch_size)
            .scalar_subquery()
        )
        result = await self.session.execute(
            delete(CacheEntry)
            .where(CacheEntry.id.in_(expired_ids))
            .returning(CacheEntry.result_pointer)
        )
        pointers = list(result.scalars().all())
        await self.session.commit()

        await self._delete_objects(pointers)
        logger.info("cache_swept", entries=len(pointers))
        return len(pointers)

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _delete_objects(self, pointers: list[str]) -> None:
        paths = [p for p in (pointer_path(ptr) for ptr in pointers) if p is not None]
        if not paths:
            return
        try:
            await self.storage.delete(paths)
        except StorageError as e:
            # Rows are already gone; orphaned objects only cost storage
            logger.warning("cache_object_cleanup_failed", count=len(paths), error=str(e))

    @staticmethod
    def _to_hit(entry: CacheEntry, url: str, access_count: int) -> CacheHit:
        return CacheHit(
            cache_id=str(entry.id),
            fingerprint=entry.fingerprint,
            result=url,
            pointer=entry.result_pointer,
            access_count=access_count,
            created_at=entry.created_at,
            expires_at=entry.expires_at,
            action=entry.action,
            subject_key=entry.subject_key,
        )
