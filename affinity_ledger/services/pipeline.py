"""High level facade over the ledger used by the HTTP API and the CLI."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from .. import utils
from ..config import AppConfig
from ..database import Database
from ..errors import (
    LeaseUnavailableError,
    LedgerError,
    MissingReferenceError,
    PersistenceError,
    ValidationError,
)
from ..repositories import EntityRepository, PreferencesRepository, ProfileRepository, RunRepository
from .coordinator import BatchCoordinator
from .embedding import EmbeddingProjector
from .validators import AppendEventPayload, EntityProfilePayload, PreferencesPayload
from .weights import CategoryWeightTable, UserInfluence

LOGGER = logging.getLogger("ledger")


@dataclass
class PipelineResult:
    ok: bool
    payload: Dict[str, Any]
    error: str | None = None
    code: str | None = None


def _failure(exc: Exception) -> PipelineResult:
    if isinstance(exc, ValidationError):
        code = "invalid"
    elif isinstance(exc, LeaseUnavailableError):
        code = "busy"
    elif isinstance(exc, MissingReferenceError):
        code = "not_found"
    else:
        code = "error"
    return PipelineResult(ok=False, payload={}, error=str(exc), code=code)


class LedgerPipeline:
    def __init__(
        self,
        config: AppConfig,
        database: Database,
        telemetry=None,
        weights: Optional[CategoryWeightTable] = None,
        clock: Callable[[], datetime] = utils.utc_now,
    ) -> None:
        self.config = config
        self.database = database
        self.telemetry = telemetry
        self.clock = clock
        self.weights = weights or CategoryWeightTable.from_config(config.mutations)
        self.coordinator = BatchCoordinator(config, database, self.weights, telemetry, clock)
        self.ledger = self.coordinator.ledger
        self.aggregation = self.coordinator.aggregation

    @contextmanager
    def _session(self):
        try:
            with self.database.session() as session:
                yield session
        except SQLAlchemyError as exc:
            LOGGER.exception("Database operation failed")
            raise PersistenceError(str(exc)) from exc

    def append_event(self, payload: dict) -> PipelineResult:
        try:
            request = AppendEventPayload.from_dict(payload)
        except ValidationError as exc:
            LOGGER.info("Rejected event: %s", exc)
            return _failure(exc)
        try:
            with self._session() as session:
                event, created = self.ledger.append(session, request)
                return PipelineResult(
                    ok=True,
                    payload={"event_id": event.id, "created": created},
                )
        except LedgerError as exc:
            return _failure(exc)

    def run_batch(self, max_events: Optional[int] = None) -> PipelineResult:
        try:
            summary = self.coordinator.run_batch(max_events)
        except LedgerError as exc:
            LOGGER.warning("Batch run not started: %s", exc)
            return _failure(exc)
        return PipelineResult(ok=True, payload=summary.to_dict())

    def get_profile(self, user_id: str) -> PipelineResult:
        with self._session() as session:
            profile = ProfileRepository(session).get(user_id)
            if profile is None:
                return PipelineResult(
                    ok=False, payload={}, error=f"No profile for user {user_id}", code="not_found"
                )
            return PipelineResult(ok=True, payload=EmbeddingProjector.serialize(profile))

    def get_preferences(self, user_id: str) -> PipelineResult:
        with self._session() as session:
            record = PreferencesRepository(session).get(user_id)
            influence = UserInfluence.from_record(record)
            return PipelineResult(
                ok=True,
                payload={"user_id": user_id, "custom": record is not None, **influence.to_dict()},
            )

    def set_preferences(self, user_id: str, payload: dict) -> PipelineResult:
        try:
            influence = UserInfluence.from_payload(PreferencesPayload.from_dict(payload))
        except ValidationError as exc:
            return _failure(exc)
        values = {
            "cultural": influence.cultural,
            "behavioral": influence.behavioral,
            "economic": influence.economic,
            "spatial": influence.spatial,
            "learning_rate": influence.learning_rate,
            "context_multipliers": influence.context_multipliers,
        }
        with self._session() as session:
            PreferencesRepository(session).upsert(user_id, values, self.clock())
        LOGGER.info("Updated influence preferences for %s", user_id)
        return PipelineResult(ok=True, payload={"user_id": user_id, **influence.to_dict()})

    def upsert_entity_profile(self, payload: dict) -> PipelineResult:
        try:
            entity = EntityProfilePayload.from_dict(payload, self.config.projection.dimensions)
        except ValidationError as exc:
            return _failure(exc)
        values = {
            "entity_id": entity.entity_id,
            "entity_kind": entity.entity_kind,
            "display_name": entity.display_name,
            "cultural": entity.cultural,
            "behavioral": entity.behavioral,
            "economic": entity.economic,
            "spatial": entity.spatial,
            "confidence": entity.confidence,
        }
        with self._session() as session:
            _, created = EntityRepository(session).upsert(values, self.clock())
        return PipelineResult(
            ok=True,
            payload={
                "entity_id": entity.entity_id,
                "entity_kind": entity.entity_kind,
                "created": created,
            },
        )

    def get_domain_strength(self, entity_id: str, category: str) -> PipelineResult:
        try:
            with self._session() as session:
                totals = self.aggregation.domain_strength(session, entity_id, category)
        except LedgerError as exc:
            return _failure(exc)
        return PipelineResult(
            ok=True,
            payload={"entity_id": entity_id, "category": category, **totals.to_dict()},
        )

    def get_mutation_breakdown(
        self,
        entity_id: str,
        category: Optional[str] = None,
        window_days: Optional[float] = None,
    ) -> PipelineResult:
        try:
            with self._session() as session:
                rows = self.aggregation.breakdown(
                    session, entity_id, self.clock(), category=category, window_days=window_days
                )
        except LedgerError as exc:
            return _failure(exc)
        return PipelineResult(ok=True, payload={"entity_id": entity_id, "breakdown": rows})

    def get_leaderboard(self, category: str, window: str, limit: int = 10) -> PipelineResult:
        try:
            with self._session() as session:
                entries = self.aggregation.leaderboard(session, category, window, limit)
        except LedgerError as exc:
            return _failure(exc)
        return PipelineResult(
            ok=True,
            payload={"category": category, "window": window, "entries": entries},
        )

    def rebuild_aggregates(self) -> PipelineResult:
        with self._session() as session:
            result = self.aggregation.rebuild_all(session, self.clock())
        return PipelineResult(ok=True, payload=result)

    def reset_failed(self) -> PipelineResult:
        with self._session() as session:
            count = self.ledger.reset_failed(session)
        return PipelineResult(ok=True, payload={"requeued": count})

    def stats(self) -> PipelineResult:
        with self._session() as session:
            payload = {
                "events": self.ledger.stats(session),
                "coordinator": self.coordinator.state.value,
            }
        return PipelineResult(ok=True, payload=payload)

    def recent_runs(self, limit: int = 20) -> PipelineResult:
        if limit <= 0:
            return _failure(ValidationError("limit must be positive"))
        with self._session() as session:
            runs = RunRepository(session).latest(limit)
            return PipelineResult(
                ok=True,
                payload={
                    "runs": [
                        {
                            "run_id": run.run_id,
                            "status": run.status,
                            "claimed": run.claimed,
                            "processed": run.processed,
                            "mutations_created": run.mutations_created,
                            "profiles_updated": run.profiles_updated,
                            "skipped": len(run.skipped or []),
                            "errors": len(run.errors or []),
                            "failed": len(run.failed or []),
                            "started_at": run.started_at.isoformat(),
                            "duration_ms": run.duration_ms,
                        }
                        for run in runs
                    ]
                },
            )
