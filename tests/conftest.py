"""Shared pytest fixtures for the affinity ledger tests.

Every test gets its own in-memory SQLite database, a frozen clock that can be
advanced explicitly, and a weight table in which ``content.played`` moves every
domain at full strength so the profile arithmetic stays easy to check by hand.
"""

from __future__ import annotations

import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import List

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from affinity_ledger.config import AppConfig, BatchConfig, ProjectionConfig, TelemetryConfig
from affinity_ledger.database import Database
from affinity_ledger.services.pipeline import LedgerPipeline
from affinity_ledger.services.weights import CategoryWeightTable
from affinity_ledger.telemetry import Telemetry

T0 = datetime(2025, 3, 1, 12, 0, 0)
DIM = 4

FULL_INFLUENCE = {
    "cultural": 1.0,
    "behavioral": 1.0,
    "economic": 1.0,
    "spatial": 1.0,
    "base_intensity": 1.0,
}


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def vec(value: float, dim: int = DIM) -> List[float]:
    return [float(value)] * dim


@pytest.fixture
def config(tmp_path) -> AppConfig:
    return AppConfig(
        base_dir=tmp_path,
        database_url="sqlite:///:memory:",
        telemetry=TelemetryConfig(enable_metrics=True),
        projection=ProjectionConfig(dimensions=DIM),
        batch=BatchConfig(batch_size=50, max_attempts=3),
    ).validate()


@pytest.fixture
def database(config) -> Database:
    db = Database(config.database_url)
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(T0)


@pytest.fixture
def weights(config) -> CategoryWeightTable:
    return CategoryWeightTable.default(config.mutations).with_overrides(
        {"content.played": {"influence": FULL_INFLUENCE}}
    )


@pytest.fixture
def telemetry(config) -> Telemetry:
    return Telemetry(config.telemetry)


@pytest.fixture
def pipeline(config, database, telemetry, weights, clock) -> LedgerPipeline:
    return LedgerPipeline(config, database, telemetry, weights=weights, clock=clock)


@pytest.fixture
def add_entity(pipeline):
    def _add(entity_id: str, kind: str = "track", value: float = 1.0, name: str | None = None):
        result = pipeline.upsert_entity_profile(
            {
                "entity_id": entity_id,
                "entity_kind": kind,
                "display_name": name or entity_id,
                "cultural": vec(value),
                "behavioral": vec(value),
                "economic": vec(value),
                "spatial": vec(value),
            }
        )
        assert result.ok, result.error
        return result

    return _add


@pytest.fixture
def append(pipeline):
    def _append(user_id: str, event_type: str, metadata: dict, timestamp=T0, **extra):
        payload = {
            "user_id": user_id,
            "event_type": event_type,
            "metadata": metadata,
            "timestamp": timestamp.isoformat() if isinstance(timestamp, datetime) else timestamp,
        }
        payload.update(extra)
        result = pipeline.append_event(payload)
        assert result.ok, result.error
        return result.payload["event_id"]

    return _append
