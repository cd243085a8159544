"""Exponential backoff and jittered delay helpers."""
from __future__ import annotations

import random
from typing import Optional

from payment_reconciliation.config import BACKOFF_POLICY


def compute_backoff_seconds(attempt: int, *, base: Optional[int] = None, factor: Optional[int] = None, max_seconds: Optional[int] = None, jitter_pct: Optional[float] = None) -> float:
    """Compute exponential backoff delay with jitter."""
    if attempt < 1:
        attempt = 1
    base = int(base if base is not None else BACKOFF_POLICY["base_seconds"])
    factor = int(factor if factor is not None else BACKOFF_POLICY["factor"])
    max_seconds = int(max_seconds if max_seconds is not None else BACKOFF_POLICY["max_seconds"])
    jitter_pct = float(jitter_pct if jitter_pct is not None else BACKOFF_POLICY["jitter_pct"])

    delay = base * (factor ** (attempt - 1))
    delay = min(delay, max_seconds)
    if jitter_pct > 0:
        jitter_amount = delay * jitter_pct
        delay = random.uniform(delay - jitter_amount, delay + jitter_amount)
    return max(delay, 0.0)


def random_delay_ms(min_minutes: int, max_minutes: int, rng: Optional[random.Random] = None) -> int:
    """Uniform integer delay in milliseconds, inclusive of both bounds.

    Spreads job submission away from exact cron boundaries.
    """
    if min_minutes < 0 or max_minutes < min_minutes:
        raise ValueError(f"Invalid jitter range {min_minutes}-{max_minutes} minutes")
    rng = rng or random
    low = min_minutes * 60 * 1000
    high = max_minutes * 60 * 1000
    return rng.randint(low, high)


__all__ = ["compute_backoff_seconds", "random_delay_ms"]
