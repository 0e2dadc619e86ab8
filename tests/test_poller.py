"""
Tests for JobPoller.
"""

from unittest.mock import AsyncMock

import pytest

from gateway.exceptions import ProviderError
from gateway.models.domain import JobStatus
from gateway.services.poller import JobPoller


class RecordingSleep:
    """Stands in for asyncio.sleep and remembers every delay."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


class TestJobPoller:
    """Tests for polling outcomes."""

    async def test_times_out_after_attempt_budget(self, sleep: RecordingSleep) -> None:
        fetch = AsyncMock(return_value=JobStatus(state="pending"))
        poller = JobPoller(fetch, interval=2.0, max_attempts=5, provider="fashn", sleep=sleep)

        result = await poller.run("job-1")

        assert result.success is False
        assert result.timed_out is True
        assert result.attempts == 5
        assert fetch.await_count == 5
        assert sum(sleep.delays) == 10

    async def test_completed_returns_output(self, sleep: RecordingSleep) -> None:
        fetch = AsyncMock(
            side_effect=[
                JobStatus(state="pending"),
                JobStatus(state="completed", output=["data:image/png;base64,AAAA"]),
            ]
        )
        poller = JobPoller(fetch, interval=2.0, max_attempts=5, sleep=sleep)

        result = await poller.run("job-1")

        assert result.success is True
        assert result.attempts == 2
        assert result.output == ["data:image/png;base64,AAAA"]
        assert sleep.delays == [2.0]

    async def test_failed_stops_immediately(self, sleep: RecordingSleep) -> None:
        fetch = AsyncMock(return_value=JobStatus(state="failed", error="NSFW content"))
        poller = JobPoller(fetch, interval=2.0, max_attempts=5, sleep=sleep)

        result = await poller.run("job-1")

        assert result.success is False
        assert result.timed_out is False
        assert result.error == "NSFW content"
        assert sleep.delays == []

    async def test_failed_without_message_gets_default(self, sleep: RecordingSleep) -> None:
        fetch = AsyncMock(return_value=JobStatus(state="failed"))

        result = await JobPoller(fetch, 1.0, 3, sleep=sleep).run("job-1")

        assert result.error == "Generation failed"

    async def test_fetch_error_propagates(self, sleep: RecordingSleep) -> None:
        fetch = AsyncMock(side_effect=ProviderError("fal", "HTTP 500"))
        poller = JobPoller(fetch, interval=2.0, max_attempts=5, sleep=sleep)

        with pytest.raises(ProviderError):
            await poller.run("job-1")

    def test_rejects_empty_budget(self) -> None:
        with pytest.raises(ValueError, match="max_attempts"):
            JobPoller(AsyncMock(), interval=1.0, max_attempts=0)
