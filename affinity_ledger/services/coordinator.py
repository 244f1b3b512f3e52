"""Batch coordinator: one processing cycle over the event ledger.

A run moves through ``IDLE -> CLAIMED -> PROJECTING -> AGGREGATING -> MARKED``
and back to ``IDLE``.  Each projector commits its own effects together with a
per-event mark (``mutations_applied_at`` / ``profile_applied_at``), and the
``processed`` flag is only set once both projectors are done with an event, so
a run that is cancelled, times out or crashes leaves a ledger the next run can
resume from without double counting.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from sqlalchemy.exc import SQLAlchemyError

from .. import models, utils
from ..config import AppConfig
from ..database import Database
from ..errors import LeaseUnavailableError, PersistenceError, ValidationError
from ..repositories import LeaseRepository, RunRepository
from .aggregation import AggregationEngine
from .embedding import SKIPPED, EmbeddingProjector, UserProjection, group_by_user
from .ledger import EventLedger
from .mutations import MutationProjector
from .weights import CategoryWeightTable

LOGGER = logging.getLogger("ledger.coordinator")

DONE = "done"
FAILED = "failed"


class RunState(str, enum.Enum):
    IDLE = "idle"
    CLAIMED = "claimed"
    PROJECTING = "projecting"
    AGGREGATING = "aggregating"
    MARKED = "marked"
    FAILED = "failed"


@dataclass
class RunSummary:
    run_id: str
    started_at: datetime
    status: str = "completed"
    claimed: int = 0
    processed: int = 0
    mutations_created: int = 0
    entities_updated: int = 0
    profiles_updated: int = 0
    skipped: List[Dict[str, str]] = field(default_factory=list)
    errors: List[Dict[str, Optional[str]]] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    finished_at: Optional[datetime] = None
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, object]:
        return {
            "run_id": self.run_id,
            "status": self.status,
            "claimed": self.claimed,
            "processed": self.processed,
            "mutations_created": self.mutations_created,
            "entities_updated": self.entities_updated,
            "profiles_updated": self.profiles_updated,
            "skipped": list(self.skipped),
            "errors": list(self.errors),
            "failed": list(self.failed),
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_ms": round(self.duration_ms, 3),
        }

    def to_model(self) -> models.BatchRun:
        return models.BatchRun(
            run_id=self.run_id,
            status=self.status,
            claimed=self.claimed,
            processed=self.processed,
            mutations_created=self.mutations_created,
            entities_updated=self.entities_updated,
            profiles_updated=self.profiles_updated,
            skipped=list(self.skipped),
            errors=list(self.errors),
            failed=list(self.failed),
            started_at=self.started_at,
            finished_at=self.finished_at or self.started_at,
            duration_ms=self.duration_ms,
        )


@dataclass(slots=True)
class EventProgress:
    mutation: Optional[str] = None
    embedding: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    @property
    def settled(self) -> bool:
        return self.mutation is not None and self.embedding is not None

    @property
    def succeeded(self) -> bool:
        return self.mutation == DONE and self.embedding == DONE


class BatchCoordinator:
    def __init__(
        self,
        config: AppConfig,
        database: Database,
        weights: CategoryWeightTable,
        telemetry=None,
        clock: Callable[[], datetime] = utils.utc_now,
        holder: Optional[str] = None,
    ) -> None:
        self.config = config
        self.database = database
        self.telemetry = telemetry
        self.clock = clock
        self.holder = holder or f"{config.extra.get('instance_id', 'ledger')}:{utils.new_id()[:8]}"
        self.ledger = EventLedger(config, telemetry, clock)
        self.mutations = MutationProjector(config, weights, telemetry)
        self.embedding = EmbeddingProjector(config, weights, telemetry)
        self.aggregation = AggregationEngine(config, telemetry)
        self.state = RunState.IDLE
        self._lock = threading.Lock()
        self._cancel = threading.Event()

    def cancel(self) -> None:
        """Ask the current run to stop after the event it is working on."""
        self._cancel.set()

    def run_batch(self, max_events: Optional[int] = None) -> RunSummary:
        limit = self.config.batch.batch_size if max_events is None else max_events
        if limit <= 0:
            raise ValidationError("max_events must be positive")
        if not self._lock.acquire(blocking=False):
            raise LeaseUnavailableError(self.config.batch.lease_name, self.holder)
        try:
            return self._run(limit)
        finally:
            self._lock.release()

    def _acquire_lease(self, now: datetime) -> None:
        batch = self.config.batch
        try:
            with self.database.session() as session:
                leases = LeaseRepository(session)
                if not leases.acquire(batch.lease_name, self.holder, now, batch.lease_ttl):
                    raise LeaseUnavailableError(batch.lease_name, leases.current_holder(batch.lease_name))
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not acquire run lease: {exc}") from exc

    def _release_lease(self) -> None:
        try:
            with self.database.session() as session:
                LeaseRepository(session).release(self.config.batch.lease_name, self.holder)
        except SQLAlchemyError:
            LOGGER.exception("Failed to release run lease %s", self.config.batch.lease_name)

    def _run(self, limit: int) -> RunSummary:
        now = self.clock()
        started = time.monotonic()
        deadline = started + self.config.batch.run_timeout.total_seconds()
        self._cancel.clear()
        self._acquire_lease(now)
        summary = RunSummary(run_id=utils.new_id(), started_at=now)
        try:
            self._cycle(summary, limit, now, deadline)
        except SQLAlchemyError as exc:
            self.state = RunState.FAILED
            LOGGER.exception("Run %s failed", summary.run_id)
            raise PersistenceError(f"Batch run failed: {exc}") from exc
        except Exception:
            self.state = RunState.FAILED
            LOGGER.exception("Run %s failed", summary.run_id)
            raise
        finally:
            self._release_lease()
        summary.finished_at = self.clock()
        summary.duration_ms = (time.monotonic() - started) * 1000.0
        self._record(summary)
        self.state = RunState.IDLE
        LOGGER.info(
            "Run %s %s: claimed=%s processed=%s mutations=%s profiles=%s skipped=%s errors=%s",
            summary.run_id,
            summary.status,
            summary.claimed,
            summary.processed,
            summary.mutations_created,
            summary.profiles_updated,
            len(summary.skipped),
            len(summary.errors),
        )
        return summary

    def _cycle(self, summary: RunSummary, limit: int, now: datetime, deadline: float) -> None:
        max_attempts = self.config.batch.max_attempts
        with self.database.session() as session:
            summary.failed.extend(self.ledger.flag_exhausted(session, max_attempts))
            claimed = self.ledger.claim(session, limit, max_attempts)
            stale = set(self.aggregation.stale_entities(session))
        summary.claimed = len(claimed)
        if not claimed:
            summary.status = "idle"
            if stale:
                LOGGER.info("Repairing strength for %s stale entities", len(stale))
                self._aggregate(stale, summary, now)
            return
        self.state = RunState.CLAIMED
        order = [event.id for event in claimed]
        progress = {event_id: EventProgress() for event_id in order}

        self.state = RunState.PROJECTING
        touched = self._project_mutations(order, progress, summary, now, deadline)
        self._project_embeddings(group_by_user(claimed), progress, summary, now, deadline)

        self.state = RunState.AGGREGATING
        aggregation_ok = self._aggregate(touched | stale, summary, now)

        self._mark(order, progress, summary, now)
        self.state = RunState.MARKED

        if any(not item.settled for item in progress.values()):
            summary.status = "aborted"
        elif summary.errors or summary.failed or not aggregation_ok:
            summary.status = "completed_with_errors"
        else:
            summary.status = "completed"

    def _should_stop(self, deadline: float) -> bool:
        return self._cancel.is_set() or time.monotonic() > deadline

    def _fail(self, summary: RunSummary, progress: EventProgress, event_id: str, reason: str) -> None:
        progress.errors.append(reason)
        summary.errors.append({"event_id": event_id, "reason": reason})

    def _project_mutations(
        self,
        order: Sequence[str],
        progress: Dict[str, EventProgress],
        summary: RunSummary,
        now: datetime,
        deadline: float,
    ) -> Set[str]:
        touched: Set[str] = set()
        for event_id in order:
            if self._should_stop(deadline):
                LOGGER.warning("Run %s stopped during mutation projection", summary.run_id)
                break
            item = progress[event_id]
            try:
                with self.database.session() as session:
                    event = session.get(models.InteractionEvent, event_id)
                    if event.mutations_applied_at is not None:
                        item.mutation = DONE
                        continue
                    outcome = self.mutations.apply(session, event, now)
            except Exception as exc:
                LOGGER.exception("Mutation projection failed for event %s", event_id)
                item.mutation = FAILED
                self._fail(summary, item, event_id, f"mutations: {exc}")
                continue
            item.mutation = DONE
            summary.mutations_created += outcome.created
            if outcome.derived:
                touched.add(outcome.entity_id)
        return touched

    def _project_user(
        self, user_id: str, event_ids: List[str], now: datetime, deadline: float
    ) -> Tuple[str, List[str], Optional[UserProjection], Optional[Exception]]:
        if self._should_stop(deadline):
            return user_id, event_ids, None, None
        try:
            with self.database.session() as session:
                events = self.ledger.load(session, event_ids)
                return user_id, event_ids, self.embedding.apply_user(session, user_id, events, now), None
        except Exception as exc:
            LOGGER.exception("Embedding projection failed for user %s", user_id)
            return user_id, event_ids, None, exc

    def _project_embeddings(
        self,
        groups: Dict[str, List[str]],
        progress: Dict[str, EventProgress],
        summary: RunSummary,
        now: datetime,
        deadline: float,
    ) -> None:
        workers = self.config.batch.embedding_workers
        jobs = list(groups.items())
        if workers > 1 and len(jobs) > 1:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ledger-embed") as pool:
                results = list(
                    pool.map(lambda job: self._project_user(job[0], job[1], now, deadline), jobs)
                )
        else:
            results = [self._project_user(user_id, ids, now, deadline) for user_id, ids in jobs]

        for user_id, event_ids, projection, error in results:
            if error is not None:
                for event_id in event_ids:
                    progress[event_id].embedding = FAILED
                    self._fail(summary, progress[event_id], event_id, f"embedding: {error}")
                continue
            if projection is None:
                continue
            if projection.profile_updated:
                summary.profiles_updated += 1
            for event_id in event_ids:
                outcome = projection.outcomes.get(event_id)
                if outcome is None:
                    continue
                progress[event_id].embedding = DONE
                if outcome.status == SKIPPED:
                    summary.skipped.append({"event_id": event_id, "reason": outcome.reason or ""})

    def _aggregate(self, touched: Set[str], summary: RunSummary, now: datetime) -> bool:
        ok = True
        for entity_id in sorted(touched):
            try:
                with self.database.session() as session:
                    self.aggregation.recompute_strength(session, entity_id, now)
                summary.entities_updated += 1
            except Exception as exc:
                ok = False
                LOGGER.exception("Strength recompute failed for entity %s", entity_id)
                summary.errors.append({"event_id": None, "reason": f"aggregation {entity_id}: {exc}"})
        try:
            with self.database.session() as session:
                self.aggregation.refresh_leaderboards(session, now)
        except Exception as exc:
            ok = False
            LOGGER.exception("Leaderboard refresh failed")
            summary.errors.append({"event_id": None, "reason": f"leaderboards: {exc}"})
        return ok

    def _mark(
        self,
        order: Sequence[str],
        progress: Dict[str, EventProgress],
        summary: RunSummary,
        now: datetime,
    ) -> None:
        max_attempts = self.config.batch.max_attempts
        with self.database.session() as session:
            for event in self.ledger.load(session, order):
                item = progress[event.id]
                if not item.settled:
                    self.ledger.release_claim(event)
                    continue
                if item.succeeded:
                    self.ledger.mark_processed(event, now)
                    summary.processed += 1
                elif self.ledger.record_failure(event, item.errors, max_attempts):
                    LOGGER.error(
                        "Event %s permanently failed after %s attempts",
                        event.id,
                        event.processing_attempts,
                    )
                    summary.failed.append(event.id)

    def _record(self, summary: RunSummary) -> None:
        if self.telemetry:
            self.telemetry.observe("run.duration_ms", summary.duration_ms)
            self.telemetry.observe("run.claimed", summary.claimed)
            self.telemetry.observe("run.processed", summary.processed)
        try:
            with self.database.session() as session:
                RunRepository(session).add(summary.to_model())
        except SQLAlchemyError:
            LOGGER.exception("Failed to store summary for run %s", summary.run_id)
