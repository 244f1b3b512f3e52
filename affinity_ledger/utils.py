"""Utility helpers for timestamps and vector arithmetic."""

from __future__ import annotations

import math
import uuid
from datetime import datetime, timezone
from typing import List, Sequence


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc).replace(tzinfo=None)


def normalize_timestamp(ts: datetime | str) -> datetime:
    if isinstance(ts, datetime):
        if ts.tzinfo:
            return ts.astimezone(timezone.utc).replace(tzinfo=None)
        return ts
    parsed = datetime.fromisoformat(ts.replace("Z", "+00:00"))
    if parsed.tzinfo:
        return parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def new_id() -> str:
    return uuid.uuid4().hex


def clamp(value: float, min_value: float = 0.0, max_value: float = 1.0) -> float:
    return max(min_value, min(max_value, value))


def zeros(dim: int) -> List[float]:
    return [0.0] * dim


def l2_norm(vector: Sequence[float]) -> float:
    return math.sqrt(sum(x * x for x in vector))


def l2_distance(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b):
        raise ValueError(f"Vector length mismatch: {len(a)} != {len(b)}")
    return math.sqrt(sum((x - y) ** 2 for x, y in zip(a, b)))


def normalize(vector: Sequence[float]) -> List[float]:
    norm = l2_norm(vector)
    if norm == 0:
        return list(vector)
    return [x / norm for x in vector]


def is_finite_vector(vector: Sequence[float]) -> bool:
    return all(isinstance(x, (int, float)) and math.isfinite(x) for x in vector)
