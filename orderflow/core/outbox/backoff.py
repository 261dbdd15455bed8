"""
Retry Backoff

Exponential backoff with jitter for failed outbox records. Jitter spreads
retries of records that failed together (e.g. during a broker outage) so
they do not all return at the same instant.
"""

import random
from datetime import datetime, timedelta
from typing import Optional


def compute_backoff(
    attempts: int,
    *,
    base_seconds: float = 1.0,
    max_seconds: float = 300.0,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Delay in seconds before the next attempt.

    attempts counts failures so far (1 after the first failure). The
    exponential delay is capped at max_seconds, then half of it is kept
    fixed and the other half drawn uniformly at random.
    """
    rng = rng or random
    delay = base_seconds * (2 ** max(0, attempts - 1))
    delay = min(max_seconds, delay)
    half = delay / 2
    return half + rng.uniform(0, half)


def next_eligible_at(
    now: datetime,
    attempts: int,
    *,
    base_seconds: float = 1.0,
    max_seconds: float = 300.0,
    rng: Optional[random.Random] = None,
) -> datetime:
    """Calculate next attempt time with exponential backoff."""
    delay = compute_backoff(attempts, base_seconds=base_seconds, max_seconds=max_seconds, rng=rng)
    return now + timedelta(seconds=delay)
