"""
Tests for outbox retry backoff.
"""

import random
from datetime import datetime, timedelta, timezone

import pytest

from orderflow.core.outbox.backoff import compute_backoff, next_eligible_at


class TestComputeBackoff:
    """Test exponential backoff with equal jitter."""

    @pytest.mark.parametrize("attempts,full", [(1, 1.0), (2, 2.0), (3, 4.0), (5, 16.0)])
    def test_delay_within_jitter_window(self, attempts, full):
        """Delay falls between half and all of base * 2^(attempts-1)."""
        rng = random.Random(1)
        for _ in range(50):
            delay = compute_backoff(attempts, base_seconds=1.0, max_seconds=300, rng=rng)
            assert full / 2 <= delay <= full

    def test_delay_capped(self):
        """Large attempt counts never exceed max_seconds."""
        delay = compute_backoff(30, base_seconds=1.0, max_seconds=60, rng=random.Random(3))
        assert 30 <= delay <= 60

    def test_jitter_spreads_retries(self):
        """Records that failed together do not all come back at once."""
        rng = random.Random(5)
        delays = {round(compute_backoff(4, rng=rng), 6) for _ in range(20)}
        assert len(delays) > 1

    def test_zero_attempts_treated_as_first(self):
        delay = compute_backoff(0, base_seconds=2.0, rng=random.Random(2))
        assert 1.0 <= delay <= 2.0


class TestNextEligibleAt:
    def test_offsets_from_now(self):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        eligible = next_eligible_at(now, 2, base_seconds=1.0, rng=random.Random(9))
        assert now + timedelta(seconds=1) <= eligible <= now + timedelta(seconds=2)
