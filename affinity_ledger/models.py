"""ORM models for the affinity ledger."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base

EntityKind = Enum("track", "artist", "event", "brand", name="entity_kind")

EventSource = Enum(
    "web",
    "ios",
    "android",
    "api",
    "system",
    "admin",
    "backfill",
    name="event_source",
)


class InteractionEvent(Base):
    __tablename__ = "interaction_events"
    __table_args__ = (
        Index("ix_events_pending", "processed", "failed", "occurred_at"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False)
    entity_kind: Mapped[str] = mapped_column(EntityKind, nullable=False)
    attributed_to: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    source: Mapped[str] = mapped_column(EventSource, nullable=False, default="api")
    recency_factor: Mapped[float] = mapped_column(Float, default=1.0)
    dedupe_key: Mapped[str | None] = mapped_column(String(255), unique=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    processed: Mapped[bool] = mapped_column(Boolean, default=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime)
    processing_attempts: Mapped[int] = mapped_column(Integer, default=0)
    errors: Mapped[List[str]] = mapped_column(JSON, default=list)
    failed: Mapped[bool] = mapped_column(Boolean, default=False)
    mutations_applied_at: Mapped[datetime | None] = mapped_column(DateTime)
    profile_applied_at: Mapped[datetime | None] = mapped_column(DateTime)


class EmbeddingProfile(Base):
    __tablename__ = "embedding_profiles"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    cultural: Mapped[List[float]] = mapped_column(JSON, nullable=False)
    behavioral: Mapped[List[float]] = mapped_column(JSON, nullable=False)
    economic: Mapped[List[float]] = mapped_column(JSON, nullable=False)
    spatial: Mapped[List[float]] = mapped_column(JSON, nullable=False)
    composite: Mapped[List[float]] = mapped_column(JSON, nullable=False)
    generation: Mapped[int] = mapped_column(Integer, default=1)
    confidence: Mapped[float] = mapped_column(Float, default=0.1)
    half_life_days: Mapped[float] = mapped_column(Float, default=90.0)
    last_interaction: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    last_updated: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class EntityProfile(Base):
    __tablename__ = "entity_profiles"
    __table_args__ = (
        UniqueConstraint("entity_id", "entity_kind", name="uix_entity_kind"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    entity_kind: Mapped[str] = mapped_column(EntityKind, nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(255))
    cultural: Mapped[List[float]] = mapped_column(JSON, nullable=False)
    behavioral: Mapped[List[float]] = mapped_column(JSON, nullable=False)
    economic: Mapped[List[float]] = mapped_column(JSON, nullable=False)
    spatial: Mapped[List[float]] = mapped_column(JSON, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, default=1.0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class InfluencePreferences(Base):
    __tablename__ = "influence_preferences"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    cultural: Mapped[float] = mapped_column(Float, default=1.0)
    behavioral: Mapped[float] = mapped_column(Float, default=1.0)
    economic: Mapped[float] = mapped_column(Float, default=1.0)
    spatial: Mapped[float] = mapped_column(Float, default=1.0)
    learning_rate: Mapped[float] = mapped_column(Float, default=0.1)
    context_multipliers: Mapped[Dict[str, float]] = mapped_column(JSON, default=dict)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class DomainMutation(Base):
    __tablename__ = "domain_mutations"
    __table_args__ = (
        UniqueConstraint("event_id", "category", name="uix_mutation_event_category"),
        Index("ix_mutations_entity_category", "entity_id", "category"),
        Index("ix_mutations_category_occurred", "category", "occurred_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_id: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    category: Mapped[str] = mapped_column(String(32), nullable=False)
    key: Mapped[str | None] = mapped_column(String(255))
    base_delta: Mapped[float] = mapped_column(Float, nullable=False)
    weight: Mapped[float] = mapped_column(Float, nullable=False)
    recency_decay: Mapped[float] = mapped_column(Float, nullable=False)
    effective_delta: Mapped[float] = mapped_column(Float, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class DomainStrength(Base):
    __tablename__ = "domain_strength"
    __table_args__ = (
        UniqueConstraint("entity_id", "category", name="uix_strength_entity_category"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False)
    category: Mapped[str] = mapped_column(String(32), nullable=False)
    total_delta: Mapped[float] = mapped_column(Float, default=0.0)
    mutation_count: Mapped[int] = mapped_column(Integer, default=0)
    last_mutation_at: Mapped[datetime | None] = mapped_column(DateTime)
    calculated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class LeaderboardEntry(Base):
    __tablename__ = "leaderboard_entries"
    __table_args__ = (
        UniqueConstraint("category", "window", "rank", name="uix_leaderboard_rank"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    category: Mapped[str] = mapped_column(String(32), nullable=False)
    window: Mapped[str] = mapped_column(String(16), nullable=False)
    rank: Mapped[int] = mapped_column(Integer, nullable=False)
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False)
    entity_kind: Mapped[str | None] = mapped_column(String(16))
    display_name: Mapped[str | None] = mapped_column(String(255))
    total_delta: Mapped[float] = mapped_column(Float, nullable=False)
    mutation_count: Mapped[int] = mapped_column(Integer, nullable=False)
    refreshed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class RunLease(Base):
    __tablename__ = "run_leases"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    holder: Mapped[str | None] = mapped_column(String(64))
    acquired_at: Mapped[datetime | None] = mapped_column(DateTime)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime)


class BatchRun(Base):
    __tablename__ = "batch_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    run_id: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    claimed: Mapped[int] = mapped_column(Integer, default=0)
    processed: Mapped[int] = mapped_column(Integer, default=0)
    mutations_created: Mapped[int] = mapped_column(Integer, default=0)
    entities_updated: Mapped[int] = mapped_column(Integer, default=0)
    profiles_updated: Mapped[int] = mapped_column(Integer, default=0)
    skipped: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)
    errors: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)
    failed: Mapped[List[str]] = mapped_column(JSON, default=list)
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    finished_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    duration_ms: Mapped[float] = mapped_column(Float, default=0.0)
