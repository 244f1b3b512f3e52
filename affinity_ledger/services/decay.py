"""Half-life decay used by both projections.

Two clocks use the same curve: the embedding projector decays a profile by the
time between consecutive interactions, while the mutation projector decays an
event by its age at processing time and keeps a per-type retention floor.
"""

from __future__ import annotations

import math
from datetime import datetime

from ..errors import ConfigurationError

SECONDS_PER_DAY = 86400.0
MIN_DECAY = 1e-12


def validate_half_life(value: float, name: str = "half-life") -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"Invalid {name}: {value!r}")
    if not math.isfinite(value) or value <= 0:
        raise ConfigurationError(f"Invalid {name}: {value!r} (must be > 0 days)")
    return float(value)


def elapsed_days(since: datetime, until: datetime) -> float:
    """Days between two timestamps, clamped at zero for out-of-order events."""
    return max(0.0, (until - since).total_seconds() / SECONDS_PER_DAY)


def decay_factor(last_timestamp: datetime, now: datetime, half_life_days: float) -> float:
    """Return ``0.5 ** (elapsed / half_life)`` in ``(0, 1]``.

    A zero or negative elapsed time yields exactly 1.0.  Very long gaps are
    floored at :data:`MIN_DECAY` so the result never reaches zero.
    """
    half_life = validate_half_life(half_life_days)
    elapsed = elapsed_days(last_timestamp, now)
    if elapsed == 0:
        return 1.0
    return max(MIN_DECAY, 0.5 ** (elapsed / half_life))


def recency_decay(
    occurred_at: datetime,
    now: datetime,
    half_life_days: float,
    floor: float = 0.0,
) -> float:
    """Decay with a retention floor, used for mutation recency weighting."""
    if not 0 <= floor < 1:
        raise ConfigurationError(f"Decay floor must be in [0, 1): {floor!r}")
    return max(floor, decay_factor(occurred_at, now, half_life_days))
