"""
Hypothesis Property-Based Tests for ledger periods, fingerprints and abuse scores.

Tests pure logic invariants without database mocking.
"""

import calendar
from datetime import UTC, datetime, timedelta

from hypothesis import given, settings
from hypothesis import strategies as st

from gateway.models.api import Plan, Severity
from gateway.services.abuse import SEVERITY_WEIGHTS, decayed_score
from gateway.services.ledger import add_months, current_period
from gateway.services.result_cache import compute_fingerprint

# ============================================================================
# Hypothesis Strategies
# ============================================================================

moments = st.datetimes(
    min_value=datetime(2020, 1, 1),
    max_value=datetime(2035, 12, 31),
    timezones=st.just(UTC),
)
timezones = st.sampled_from(
    ["UTC", "America/New_York", "Europe/London", "Asia/Kolkata", "Pacific/Auckland", "Bad/Zone"]
)
user_ids = st.text(min_size=1, max_size=64).filter(lambda x: x.strip())
hex_hashes = st.text(alphabet="0123456789abcdef", min_size=64, max_size=64)


class TestPeriodProperties:
    """Reset period invariants."""

    @given(now=moments, tz=timezones)
    @settings(max_examples=200)
    def test_free_period_contains_now(self, now: datetime, tz: str) -> None:
        start, next_reset = current_period(Plan.FREE, now, tz, now)
        assert start <= now < next_reset

    @given(now=moments, tz=timezones)
    @settings(max_examples=200)
    def test_free_period_is_about_one_day(self, now: datetime, tz: str) -> None:
        start, next_reset = current_period(Plan.FREE, now, tz, now)
        # DST transitions make local days 23 or 25 hours long
        assert timedelta(hours=23) <= next_reset - start <= timedelta(hours=25)

    @given(anchor=moments, offset_days=st.integers(min_value=0, max_value=2000))
    @settings(max_examples=200)
    def test_paid_period_contains_now(self, anchor: datetime, offset_days: int) -> None:
        now = anchor + timedelta(days=offset_days)
        start, next_reset = current_period(Plan.PAID, anchor, "UTC", now)
        assert start <= now < next_reset
        assert start >= anchor

    @given(anchor=moments, periods=st.integers(min_value=1, max_value=36))
    def test_consecutive_paid_periods_stay_on_the_billing_day(
        self, anchor: datetime, periods: int
    ) -> None:
        now = anchor
        for n in range(periods):
            start, next_reset = current_period(Plan.PAID, anchor, "UTC", now)
            assert start == add_months(anchor, n)
            month_length = calendar.monthrange(next_reset.year, next_reset.month)[1]
            assert next_reset.day == min(anchor.day, month_length)
            now = next_reset

    @given(moment=moments, months=st.integers(min_value=0, max_value=240))
    def test_add_months_is_monotonic(self, moment: datetime, months: int) -> None:
        assert add_months(moment, months) <= add_months(moment, months + 1)

    @given(moment=moments, months=st.integers(min_value=0, max_value=240))
    def test_add_months_never_overflows_day(self, moment: datetime, months: int) -> None:
        shifted = add_months(moment, months)
        assert shifted.day <= moment.day
        assert (shifted.year * 12 + shifted.month) - (moment.year * 12 + moment.month) == months


class TestFingerprintProperties:
    """Cache key invariants."""

    @given(user_id=user_ids, subject=st.text(max_size=80), source=hex_hashes)
    def test_fingerprint_is_deterministic(self, user_id: str, subject: str, source: str) -> None:
        first = compute_fingerprint(user_id, subject, source)
        assert first == compute_fingerprint(user_id, subject, source)
        assert len(first) == 64

    @given(a=user_ids, b=user_ids, source=hex_hashes)
    def test_fingerprint_is_scoped_to_user(self, a: str, b: str, source: str) -> None:
        if a != b:
            assert compute_fingerprint(a, "dress:1", source) != compute_fingerprint(
                b, "dress:1", source
            )


class TestAbuseScoreProperties:
    """Decayed score invariants."""

    severities = st.sampled_from(["low", "medium", "high"])

    @given(
        events=st.lists(
            st.tuples(severities, st.integers(min_value=0, max_value=24 * 60)), max_size=40
        )
    )
    def test_score_bounded_by_undecayed_sum(self, events: list[tuple[str, int]]) -> None:
        now = datetime(2026, 1, 1, tzinfo=UTC)
        timed = [(severity, now - timedelta(minutes=age)) for severity, age in events]
        score = decayed_score(timed, now, half_life_hours=6)
        assert 0 <= score <= sum(SEVERITY_WEIGHTS[Severity(s)] for s, _ in events) + 1e-9

    @given(severity=severities, age_hours=st.floats(min_value=0, max_value=48))
    def test_older_events_weigh_less(self, severity: str, age_hours: float) -> None:
        now = datetime(2026, 1, 1, tzinfo=UTC)
        recent = decayed_score([(severity, now - timedelta(hours=age_hours))], now, 6)
        older = decayed_score([(severity, now - timedelta(hours=age_hours + 1))], now, 6)
        assert older < recent
