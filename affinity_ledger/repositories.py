"""Repository layer that encapsulates persistence logic."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Sequence, Tuple

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .errors import MissingReferenceError


class BaseRepository:
    def __init__(self, session: Session):
        self.session = session


class EventRepository(BaseRepository):
    def add(self, event: models.InteractionEvent) -> models.InteractionEvent:
        self.session.add(event)
        self.session.flush()
        return event

    def get_by_dedupe_key(self, dedupe_key: str) -> models.InteractionEvent | None:
        return self.session.scalar(
            select(models.InteractionEvent).where(
                models.InteractionEvent.dedupe_key == dedupe_key
            )
        )

    def get_many(self, event_ids: Sequence[str]) -> List[models.InteractionEvent]:
        if not event_ids:
            return []
        stmt = select(models.InteractionEvent).where(
            models.InteractionEvent.id.in_(list(event_ids))
        )
        by_id = {event.id: event for event in self.session.scalars(stmt)}
        return [by_id[event_id] for event_id in event_ids if event_id in by_id]

    def flag_exhausted(self, max_attempts: int) -> List[str]:
        """Mark events that ran out of attempts as permanently failed."""
        stmt = select(models.InteractionEvent).where(
            models.InteractionEvent.processed.is_(False),
            models.InteractionEvent.failed.is_(False),
            models.InteractionEvent.processing_attempts >= max_attempts,
        )
        flagged = []
        for event in self.session.scalars(stmt):
            event.failed = True
            event.errors = list(event.errors or []) + ["max attempts exhausted"]
            flagged.append(event.id)
        self.session.flush()
        return flagged

    def claim_pending(self, limit: int, max_attempts: int) -> List[models.InteractionEvent]:
        stmt = (
            select(models.InteractionEvent)
            .where(
                models.InteractionEvent.processed.is_(False),
                models.InteractionEvent.failed.is_(False),
                models.InteractionEvent.processing_attempts < max_attempts,
            )
            .order_by(
                models.InteractionEvent.occurred_at.asc(),
                models.InteractionEvent.created_at.asc(),
                models.InteractionEvent.id.asc(),
            )
            .limit(limit)
        )
        events = list(self.session.scalars(stmt))
        for event in events:
            event.processing_attempts = (event.processing_attempts or 0) + 1
        self.session.flush()
        return events

    def counts(self) -> Dict[str, int]:
        event = models.InteractionEvent
        total = self.session.scalar(select(func.count()).select_from(event)) or 0
        processed = self.session.scalar(
            select(func.count()).select_from(event).where(event.processed.is_(True))
        ) or 0
        failed = self.session.scalar(
            select(func.count()).select_from(event).where(event.failed.is_(True))
        ) or 0
        retrying = self.session.scalar(
            select(func.count())
            .select_from(event)
            .where(
                event.processed.is_(False),
                event.failed.is_(False),
                event.processing_attempts > 0,
            )
        ) or 0
        return {
            "total": total,
            "processed": processed,
            "unprocessed": total - processed - failed,
            "failed": failed,
            "retrying": retrying,
        }

    def oldest_pending(self) -> datetime | None:
        event = models.InteractionEvent
        return self.session.scalar(
            select(func.min(event.occurred_at)).where(
                event.processed.is_(False), event.failed.is_(False)
            )
        )

    def reset_failed(self) -> int:
        result = self.session.execute(
            update(models.InteractionEvent)
            .where(models.InteractionEvent.failed.is_(True))
            .values(failed=False, processing_attempts=0)
        )
        return result.rowcount or 0


class ProfileRepository(BaseRepository):
    def get(self, user_id: str) -> models.EmbeddingProfile | None:
        return self.session.get(models.EmbeddingProfile, user_id)

    def add(self, profile: models.EmbeddingProfile) -> models.EmbeddingProfile:
        self.session.add(profile)
        self.session.flush()
        return profile


class EntityRepository(BaseRepository):
    def get(self, entity_id: str, entity_kind: str) -> models.EntityProfile | None:
        return self.session.scalar(
            select(models.EntityProfile).where(
                models.EntityProfile.entity_id == entity_id,
                models.EntityProfile.entity_kind == entity_kind,
            )
        )

    def require(self, entity_id: str, entity_kind: str) -> models.EntityProfile:
        entity = self.get(entity_id, entity_kind)
        if entity is None:
            raise MissingReferenceError(entity_id, entity_kind)
        return entity

    def upsert(self, values: dict, now: datetime) -> Tuple[models.EntityProfile, bool]:
        entity = self.get(values["entity_id"], values["entity_kind"])
        created = entity is None
        if created:
            entity = models.EntityProfile(
                entity_id=values["entity_id"], entity_kind=values["entity_kind"]
            )
            self.session.add(entity)
        for key in ("display_name", "cultural", "behavioral", "economic", "spatial", "confidence"):
            setattr(entity, key, values[key])
        entity.updated_at = now
        self.session.flush()
        return entity, created

    def describe(self, entity_ids: Iterable[str]) -> Dict[str, Tuple[str, str | None]]:
        """Return ``entity_id -> (kind, display_name)`` for known entities."""
        ids = list(set(entity_ids))
        if not ids:
            return {}
        stmt = (
            select(models.EntityProfile)
            .where(models.EntityProfile.entity_id.in_(ids))
            .order_by(models.EntityProfile.entity_kind.asc())
        )
        result: Dict[str, Tuple[str, str | None]] = {}
        for entity in self.session.scalars(stmt):
            result.setdefault(entity.entity_id, (entity.entity_kind, entity.display_name))
        return result


class PreferencesRepository(BaseRepository):
    def get(self, user_id: str) -> models.InfluencePreferences | None:
        return self.session.get(models.InfluencePreferences, user_id)

    def upsert(self, user_id: str, values: dict, now: datetime) -> models.InfluencePreferences:
        record = self.get(user_id)
        if record is None:
            record = models.InfluencePreferences(user_id=user_id)
            self.session.add(record)
        for key, value in values.items():
            setattr(record, key, value)
        record.updated_at = now
        self.session.flush()
        return record


class MutationRepository(BaseRepository):
    def existing_keys(self, event_ids: Iterable[str]) -> set[Tuple[str, str]]:
        ids = list(set(event_ids))
        if not ids:
            return set()
        stmt = select(models.DomainMutation.event_id, models.DomainMutation.category).where(
            models.DomainMutation.event_id.in_(ids)
        )
        return {(row[0], row[1]) for row in self.session.execute(stmt)}

    def insert_ignore(self, rows: Sequence[dict]) -> int:
        """Insert rows, skipping any (event_id, category) already present.

        Returns the number of rows actually written, so duplicates inside
        ``rows`` or rows raced in by another writer are not counted.
        """
        existing = self.existing_keys(row["event_id"] for row in rows)
        fresh = [row for row in rows if (row["event_id"], row["category"]) not in existing]
        if not fresh:
            return 0
        dialect = self.session.get_bind().dialect.name
        if dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        elif dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        else:
            unique: Dict[Tuple[str, str], dict] = {}
            for row in fresh:
                unique.setdefault((row["event_id"], row["category"]), row)
            self.session.add_all(models.DomainMutation(**row) for row in unique.values())
            self.session.flush()
            return len(unique)
        stmt = insert(models.DomainMutation.__table__).on_conflict_do_nothing(
            index_elements=["event_id", "category"]
        )
        result = self.session.connection().execute(stmt, fresh)
        if result.rowcount is not None and result.rowcount >= 0:
            return result.rowcount
        after = self.existing_keys(row["event_id"] for row in fresh)
        return len(after - existing)

    def totals_by_category(self, entity_id: str, since: datetime | None = None):
        mutation = models.DomainMutation
        stmt = (
            select(
                mutation.category,
                func.count(mutation.id),
                func.coalesce(func.sum(mutation.effective_delta), 0.0),
                func.max(mutation.occurred_at),
            )
            .where(mutation.entity_id == entity_id)
            .group_by(mutation.category)
            .order_by(mutation.category.asc())
        )
        if since is not None:
            stmt = stmt.where(mutation.occurred_at >= since)
        return list(self.session.execute(stmt))

    def ranking(self, category: str, since: datetime | None, limit: int):
        mutation = models.DomainMutation
        total = func.sum(mutation.effective_delta)
        stmt = (
            select(mutation.entity_id, func.count(mutation.id), total)
            .where(mutation.category == category)
            .group_by(mutation.entity_id)
            .having(total > 0)
            .order_by(total.desc(), mutation.entity_id.asc())
            .limit(limit)
        )
        if since is not None:
            stmt = stmt.where(mutation.occurred_at >= since)
        return list(self.session.execute(stmt))

    def entity_ids(self) -> List[str]:
        stmt = select(models.DomainMutation.entity_id).distinct().order_by(
            models.DomainMutation.entity_id.asc()
        )
        return list(self.session.scalars(stmt))

    def stale_entities(self) -> List[str]:
        """Entities whose cached strength rows do not account for every mutation."""
        mutation = models.DomainMutation
        strength = models.DomainStrength
        cached = (
            select(
                strength.entity_id.label("entity_id"),
                func.sum(strength.mutation_count).label("counted"),
            )
            .group_by(strength.entity_id)
            .subquery()
        )
        counted = func.coalesce(cached.c.counted, 0)
        stmt = (
            select(mutation.entity_id)
            .outerjoin(cached, cached.c.entity_id == mutation.entity_id)
            .group_by(mutation.entity_id, cached.c.counted)
            .having(func.count(mutation.id) != counted)
            .order_by(mutation.entity_id.asc())
        )
        return list(self.session.scalars(stmt))


class StrengthRepository(BaseRepository):
    def get(self, entity_id: str, category: str) -> models.DomainStrength | None:
        return self.session.scalar(
            select(models.DomainStrength).where(
                models.DomainStrength.entity_id == entity_id,
                models.DomainStrength.category == category,
            )
        )

    def upsert(
        self,
        entity_id: str,
        category: str,
        total: float,
        count: int,
        last_mutation_at: datetime | None,
        now: datetime,
    ) -> models.DomainStrength:
        record = self.get(entity_id, category)
        if record is None:
            record = models.DomainStrength(entity_id=entity_id, category=category)
            self.session.add(record)
        record.total_delta = total
        record.mutation_count = count
        record.last_mutation_at = last_mutation_at
        record.calculated_at = now
        self.session.flush()
        return record

    def delete_except(self, entity_id: str, categories: Iterable[str]) -> None:
        self.session.execute(
            delete(models.DomainStrength).where(
                models.DomainStrength.entity_id == entity_id,
                models.DomainStrength.category.not_in(list(categories)),
            )
        )


class LeaderboardRepository(BaseRepository):
    def replace(self, category: str, window: str, rows: Sequence[dict]) -> int:
        self.session.execute(
            delete(models.LeaderboardEntry).where(
                models.LeaderboardEntry.category == category,
                models.LeaderboardEntry.window == window,
            )
        )
        self.session.flush()
        for row in rows:
            self.session.add(models.LeaderboardEntry(category=category, window=window, **row))
        self.session.flush()
        return len(rows)

    def list(self, category: str, window: str, limit: int) -> List[models.LeaderboardEntry]:
        stmt = (
            select(models.LeaderboardEntry)
            .where(
                models.LeaderboardEntry.category == category,
                models.LeaderboardEntry.window == window,
            )
            .order_by(models.LeaderboardEntry.rank.asc())
            .limit(limit)
        )
        return list(self.session.scalars(stmt))


class LeaseRepository(BaseRepository):
    def acquire(self, name: str, holder: str, now: datetime, ttl: timedelta) -> bool:
        lease = self.session.get(models.RunLease, name)
        if lease is None:
            self.session.add(
                models.RunLease(name=name, holder=holder, acquired_at=now, expires_at=now + ttl)
            )
            try:
                self.session.flush()
            except IntegrityError:
                # Another process created the lease row first.
                self.session.rollback()
                return False
            return True
        result = self.session.execute(
            update(models.RunLease)
            .where(
                models.RunLease.name == name,
                or_(
                    models.RunLease.holder.is_(None),
                    models.RunLease.expires_at.is_(None),
                    models.RunLease.expires_at <= now,
                ),
            )
            .values(holder=holder, acquired_at=now, expires_at=now + ttl)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def current_holder(self, name: str) -> str | None:
        lease = self.session.get(models.RunLease, name)
        return lease.holder if lease else None

    def release(self, name: str, holder: str) -> None:
        self.session.execute(
            update(models.RunLease)
            .where(models.RunLease.name == name, models.RunLease.holder == holder)
            .values(holder=None, expires_at=None)
            .execution_options(synchronize_session=False)
        )


class RunRepository(BaseRepository):
    def add(self, run: models.BatchRun) -> models.BatchRun:
        self.session.add(run)
        self.session.flush()
        return run

    def latest(self, limit: int = 20) -> List[models.BatchRun]:
        stmt = select(models.BatchRun).order_by(models.BatchRun.started_at.desc()).limit(limit)
        return list(self.session.scalars(stmt))
