"""Append-only interaction ledger.

The ledger is the single source of truth.  Producers append validated events;
only the batch coordinator touches the processing bookkeeping columns, and no
event row is ever deleted.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Dict, List, Sequence, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import models, utils
from ..config import AppConfig
from ..errors import PersistenceError
from ..repositories import EventRepository
from .validators import AppendEventPayload

LOGGER = logging.getLogger("ledger.events")


class EventLedger:
    def __init__(
        self,
        config: AppConfig,
        telemetry=None,
        clock: Callable[[], datetime] = utils.utc_now,
    ) -> None:
        self.config = config
        self.telemetry = telemetry
        self.clock = clock

    def append(
        self, session: Session, request: AppendEventPayload
    ) -> Tuple[models.InteractionEvent, bool]:
        """Persist an event; returns ``(event, created)``.

        A repeated ``dedupe_key`` returns the stored event unchanged.
        """
        repo = EventRepository(session)
        if request.dedupe_key:
            existing = repo.get_by_dedupe_key(request.dedupe_key)
            if existing is not None:
                LOGGER.debug("Duplicate event for key %s", request.dedupe_key)
                return existing, False

        recency = request.recency_factor
        if recency is None:
            recency = (
                self.config.batch.backfill_recency_factor
                if request.source == "backfill"
                else 1.0
            )
        payload = request.payload
        event = models.InteractionEvent(
            id=utils.new_id(),
            user_id=request.user_id,
            event_type=request.event_type,
            entity_id=payload.entity_id,
            entity_kind=payload.entity_kind,
            attributed_to=payload.attributed_to,
            payload=payload.to_dict(),
            source=request.source,
            recency_factor=recency,
            dedupe_key=request.dedupe_key,
            occurred_at=request.occurred_at,
            created_at=self.clock(),
            processed=False,
            processing_attempts=0,
            errors=[],
            failed=False,
        )
        try:
            repo.add(event)
        except IntegrityError as exc:
            raise PersistenceError(f"Could not append event: {exc.orig}") from exc
        LOGGER.info(
            "Appended %s for user %s -> %s:%s",
            event.event_type,
            event.user_id,
            event.entity_kind,
            event.entity_id,
        )
        if self.telemetry:
            self.telemetry.observe("events.appended", 1)
        return event, True

    def claim(self, session: Session, limit: int, max_attempts: int) -> List[models.InteractionEvent]:
        return EventRepository(session).claim_pending(limit, max_attempts)

    def flag_exhausted(self, session: Session, max_attempts: int) -> List[str]:
        flagged = EventRepository(session).flag_exhausted(max_attempts)
        if flagged:
            LOGGER.warning("Flagged %s events as permanently failed", len(flagged))
        return flagged

    def load(self, session: Session, event_ids: Sequence[str]) -> List[models.InteractionEvent]:
        return EventRepository(session).get_many(event_ids)

    @staticmethod
    def mark_processed(event: models.InteractionEvent, now: datetime, errors: Sequence[str] = ()) -> None:
        event.processed = True
        event.processed_at = now
        if errors:
            event.errors = list(event.errors or []) + list(errors)

    @staticmethod
    def release_claim(event: models.InteractionEvent) -> None:
        """Return the attempt taken by a claim that never reached a projector outcome."""
        event.processing_attempts = max(0, (event.processing_attempts or 0) - 1)

    @staticmethod
    def record_failure(
        event: models.InteractionEvent, errors: Sequence[str], max_attempts: int
    ) -> bool:
        """Append errors; flag the event as failed once attempts run out."""
        event.errors = list(event.errors or []) + list(errors)
        if (event.processing_attempts or 0) >= max_attempts:
            event.failed = True
        return event.failed

    def stats(self, session: Session) -> Dict[str, object]:
        repo = EventRepository(session)
        counts = repo.counts()
        oldest = repo.oldest_pending()
        return counts | {"oldest_pending": oldest.isoformat() if oldest else None}

    def reset_failed(self, session: Session) -> int:
        count = EventRepository(session).reset_failed()
        LOGGER.info("Re-queued %s permanently failed events", count)
        return count

