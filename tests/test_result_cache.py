"""
Tests for ResultCache and ObjectStorage.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from botocore.exceptions import ClientError
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import OperationalError

from gateway.db.models import CacheEntry
from gateway.exceptions import CacheWriteError, StorageError
from gateway.models.api import GenerationAction
from gateway.services.result_cache import ResultCache, compute_fingerprint, tryon_subject_key
from gateway.services.storage import ObjectStorage, pointer_path, to_pointer
from conftest import FIXED_NOW, make_result


def create_mock_entry(
    pointer: str = "storage:user-123/tryon-1.png",
    access_count: int = 1,
    action: str = "tryon",
) -> MagicMock:
    entry = MagicMock(spec=CacheEntry)
    entry.id = uuid4()
    entry.fingerprint = "f" * 64
    entry.user_id = "user-123"
    entry.action = action
    entry.subject_key = "dress:42"
    entry.source_hash = "a" * 64
    entry.result_pointer = pointer
    entry.access_count = access_count
    entry.created_at = FIXED_NOW - timedelta(days=1)
    entry.expires_at = FIXED_NOW + timedelta(days=6)
    return entry


@pytest.fixture
def storage() -> AsyncMock:
    storage = AsyncMock(spec=ObjectStorage)
    storage.create_signed_url = AsyncMock(
        side_effect=[f"https://bucket.example.com/signed?sig={i}" for i in range(10)]
    )
    return storage


@pytest.fixture
def cache(db_session: AsyncMock, storage: AsyncMock, test_settings, fixed_clock) -> ResultCache:
    return ResultCache(db_session, storage, test_settings, clock=fixed_clock)


class TestKeys:
    def test_catalog_garment_uses_dress_id(self) -> None:
        assert tryon_subject_key("42", "data:image/png;base64,AAAA") == "dress:42"

    def test_custom_garment_uses_content_hash(self) -> None:
        key = tryon_subject_key(None, "data:image/png;base64,AAAA")
        assert key.startswith("garment:")
        assert key == tryon_subject_key(None, "AAAA")

    def test_fingerprint_changes_with_source(self) -> None:
        assert compute_fingerprint("u", "dress:1", "a" * 64) != compute_fingerprint(
            "u", "dress:1", "b" * 64
        )


class TestLookup:
    """Tests for cache reads."""

    async def test_miss(self, cache: ResultCache) -> None:
        assert await cache.lookup("f" * 64) is None

    async def test_hit_mints_fresh_url_each_time(
        self, cache: ResultCache, db_session: AsyncMock, storage: AsyncMock
    ) -> None:
        entry = create_mock_entry()
        db_session.execute = AsyncMock(return_value=make_result(scalar=entry))

        first = await cache.lookup(entry.fingerprint)
        second = await cache.lookup(entry.fingerprint)

        assert first is not None and second is not None
        assert first.result != second.result
        assert first.pointer == "storage:user-123/tryon-1.png"
        storage.create_signed_url.assert_awaited_with("user-123/tryon-1.png")
        assert first.access_count == 2

    async def test_lookup_filters_expired_rows(
        self, cache: ResultCache, db_session: AsyncMock
    ) -> None:
        await cache.lookup("f" * 64)

        stmt = db_session.execute.await_args_list[0].args[0]
        assert "result_cache.expires_at >" in str(stmt)

    async def test_inline_pointer_returned_as_is(
        self, cache: ResultCache, db_session: AsyncMock, storage: AsyncMock
    ) -> None:
        entry = create_mock_entry(pointer="data:image/png;base64,AAAA")
        db_session.execute = AsyncMock(return_value=make_result(scalar=entry))

        hit = await cache.lookup(entry.fingerprint)

        assert hit is not None
        assert hit.result == "data:image/png;base64,AAAA"
        storage.create_signed_url.assert_not_awaited()

    async def test_signing_failure_is_a_miss(
        self, cache: ResultCache, db_session: AsyncMock, storage: AsyncMock
    ) -> None:
        db_session.execute = AsyncMock(return_value=make_result(scalar=create_mock_entry()))
        storage.create_signed_url = AsyncMock(side_effect=StorageError("sign failed"))

        assert await cache.lookup("f" * 64) is None

    async def test_store_failure_is_a_miss(
        self, cache: ResultCache, db_session: AsyncMock
    ) -> None:
        db_session.execute.side_effect = OperationalError("SELECT", {}, Exception("down"))

        assert await cache.lookup("f" * 64) is None
        db_session.rollback.assert_awaited()


class TestWrite:
    """Tests for cache writes."""

    async def test_write_returns_cache_id(self, cache: ResultCache, db_session: AsyncMock) -> None:
        cache_id = uuid4()
        db_session.execute = AsyncMock(
            side_effect=[make_result(scalar=None), make_result(scalar=cache_id)]
        )

        result = await cache.write(
            "f" * 64, "user-123", GenerationAction.TRYON, "dress:42", "a" * 64, "storage:p.png"
        )

        assert result == str(cache_id)
        db_session.commit.assert_awaited_once()

    async def test_write_only_replaces_expired_rows(
        self, cache: ResultCache, db_session: AsyncMock
    ) -> None:
        await cache.write(
            "f" * 64, "user-123", GenerationAction.TRYON, "dress:42", "a" * 64, "storage:p.png"
        )

        stmt = db_session.execute.await_args.args[0]
        sql = str(stmt.compile(dialect=postgresql.dialect()))
        assert "ON CONFLICT (fingerprint) DO UPDATE" in sql
        assert "WHERE result_cache.expires_at <=" in sql

    async def test_replacing_expired_row_deletes_its_object(
        self, cache: ResultCache, db_session: AsyncMock, storage: AsyncMock
    ) -> None:
        db_session.execute = AsyncMock(
            side_effect=[
                make_result(scalar="storage:user-123/old.png"),
                make_result(scalar=uuid4()),
            ]
        )

        await cache.write(
            "f" * 64, "user-123", GenerationAction.TRYON, "dress:42", "a" * 64, "storage:new.png"
        )

        select_stmt = db_session.execute.await_args_list[0].args[0]
        sql = str(select_stmt.compile(dialect=postgresql.dialect()))
        assert "result_cache.expires_at <=" in sql
        assert "FOR UPDATE" in sql
        storage.delete.assert_awaited_once_with(["user-123/old.png"])

    async def test_live_row_win_deletes_nothing(
        self, cache: ResultCache, db_session: AsyncMock, storage: AsyncMock
    ) -> None:
        db_session.execute = AsyncMock(return_value=make_result(scalar=None))

        await cache.write(
            "f" * 64, "user-123", GenerationAction.TRYON, "dress:42", "a" * 64, "storage:new.png"
        )

        storage.delete.assert_not_awaited()

    async def test_live_row_wins(self, cache: ResultCache, db_session: AsyncMock) -> None:
        db_session.execute = AsyncMock(return_value=make_result(scalar=None))

        result = await cache.write(
            "f" * 64, "user-123", GenerationAction.TRYON, "dress:42", "a" * 64, "storage:p.png"
        )

        assert result is None

    async def test_write_failure_raises_cache_write_error(
        self, cache: ResultCache, db_session: AsyncMock
    ) -> None:
        db_session.execute.side_effect = OperationalError("INSERT", {}, Exception("down"))

        with pytest.raises(CacheWriteError):
            await cache.write(
                "f" * 64, "user-123", GenerationAction.TRYON, "dress:42", "a" * 64, "storage:p"
            )
        db_session.rollback.assert_awaited()


class TestHistoryAndStats:
    """Tests for history listing, stats and cleanup."""

    async def test_history_skips_unreadable_entries(
        self, cache: ResultCache, db_session: AsyncMock, storage: AsyncMock
    ) -> None:
        good, bad = create_mock_entry(), create_mock_entry(pointer="storage:gone.png")
        db_session.execute = AsyncMock(return_value=make_result(rows=[good, bad]))
        storage.create_signed_url = AsyncMock(
            side_effect=["https://signed/good", StorageError("missing")]
        )

        items = await cache.history("user-123", limit=500, action=GenerationAction.TRYON)

        assert [item.result for item in items] == ["https://signed/good"]
        stmt = db_session.execute.await_args.args[0]
        assert "result_cache.action =" in str(stmt)

    async def test_stats_counts_hits_and_credits_saved(
        self, cache: ResultCache, db_session: AsyncMock
    ) -> None:
        db_session.execute = AsyncMock(
            return_value=make_result(rows=[("tryon", 3, 5), ("model3d", 1, 2)])
        )

        stats = await cache.stats("user-123")

        assert stats.entries == 4
        assert stats.hits == 7
        assert stats.credits_saved == 5 * 2 + 2 * 2

    async def test_sweep_deletes_stored_objects_only(
        self, cache: ResultCache, db_session: AsyncMock, storage: AsyncMock
    ) -> None:
        db_session.execute = AsyncMock(
            return_value=make_result(rows=["storage:u/a.png", "data:image/png;base64,AAAA"])
        )

        assert await cache.sweep_expired() == 2
        storage.delete.assert_awaited_once_with(["u/a.png"])

    async def test_invalidate_tolerates_storage_failure(
        self, cache: ResultCache, db_session: AsyncMock, storage: AsyncMock
    ) -> None:
        db_session.execute = AsyncMock(return_value=make_result(rows=["storage:u/a.png"]))
        storage.delete = AsyncMock(side_effect=StorageError("down"))

        assert await cache.invalidate_user("user-123") == 1
        db_session.commit.assert_awaited_once()


class TestObjectStorage:
    """Tests for the boto3-backed storage wrapper."""

    def test_pointers(self) -> None:
        assert pointer_path(to_pointer("u/r.glb")) == "u/r.glb"
        assert pointer_path("https://example.com/x.png") is None

    async def test_upload_and_sign(self, test_settings) -> None:
        client = MagicMock()
        client.generate_presigned_url.return_value = "https://signed"
        storage = ObjectStorage(client, test_settings)

        await storage.upload("u/r.png", b"data", "image/png")
        url = await storage.create_signed_url("u/r.png")

        client.put_object.assert_called_once_with(
            Bucket="tryon-results", Key="u/r.png", Body=b"data", ContentType="image/png"
        )
        assert url == "https://signed"
        assert client.generate_presigned_url.call_args.kwargs["ExpiresIn"] == 3600

    async def test_client_errors_become_storage_errors(self, test_settings) -> None:
        client = MagicMock()
        client.put_object.side_effect = ClientError(
            {"Error": {"Code": "500", "Message": "boom"}}, "PutObject"
        )
        storage = ObjectStorage(client, test_settings)

        with pytest.raises(StorageError):
            await storage.upload("u/r.png", b"data", "image/png")

    async def test_delete_batches_keys(self, test_settings) -> None:
        client = MagicMock()
        storage = ObjectStorage(client, test_settings)

        await storage.delete([f"u/{i}.png" for i in range(2500)])

        batches = [c.kwargs["Delete"]["Objects"] for c in client.delete_objects.call_args_list]
        assert [len(b) for b in batches] == [1000, 1000, 500]
        assert batches[2][-1] == {"Key": "u/2499.png"}
