"""Decayed EMA mirroring of user profiles toward the entities they touch.

For each domain ``d`` an interaction moves the user's vector toward the
entity's vector::

    decay = 0.5 ** (days since last interaction / half_life)
    alpha = learning_rate * base_intensity * recency_factor
    new   = (1 - alpha * w[d]) * old * decay + alpha * w[d] * entity

The half-life defaults to the profile's own and can be overridden per domain.
The composite vector is derived from the four domains every time they change
and is stored together with them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Sequence

from sqlalchemy.orm import Session

from .. import models, utils
from ..config import DOMAINS, AppConfig
from ..errors import MissingReferenceError
from ..repositories import EntityRepository, PreferencesRepository, ProfileRepository
from .decay import decay_factor
from .weights import CategoryWeightTable, UserInfluence, effective_domain_weights

LOGGER = logging.getLogger("ledger.embedding")

APPLIED = "applied"
SKIPPED = "skipped"
ALREADY_APPLIED = "already_applied"


class DimensionMismatch(ValueError):
    pass


def compose(
    domains: Mapping[str, Sequence[float]],
    mode: str = "concat",
    importance: Optional[Mapping[str, float]] = None,
) -> List[float]:
    if mode == "concat":
        composite: List[float] = []
        for domain in DOMAINS:
            composite.extend(domains[domain])
        return composite
    importance = importance or {}
    total = sum(importance.get(domain, 0.0) for domain in DOMAINS) or 1.0
    dim = len(domains[DOMAINS[0]])
    blended = [0.0] * dim
    for domain in DOMAINS:
        weight = importance.get(domain, 0.0) / total
        for index, value in enumerate(domains[domain]):
            blended[index] += weight * value
    return utils.normalize(blended)


@dataclass(slots=True)
class ProfileState:
    cultural: List[float]
    behavioral: List[float]
    economic: List[float]
    spatial: List[float]
    composite: List[float]
    generation: int
    confidence: float
    half_life_days: float
    last_interaction: datetime
    last_updated: datetime

    @classmethod
    def fresh(
        cls,
        dimensions: int,
        occurred_at: datetime,
        now: datetime,
        half_life_days: float,
        confidence: float = 0.1,
        composite_mode: str = "concat",
        importance: Optional[Mapping[str, float]] = None,
    ) -> "ProfileState":
        domains = {domain: utils.zeros(dimensions) for domain in DOMAINS}
        return cls(
            **domains,
            composite=compose(domains, composite_mode, importance),
            generation=1,
            confidence=confidence,
            half_life_days=half_life_days,
            last_interaction=occurred_at,
            last_updated=now,
        )

    @classmethod
    def from_model(cls, profile: models.EmbeddingProfile) -> "ProfileState":
        return cls(
            cultural=list(profile.cultural),
            behavioral=list(profile.behavioral),
            economic=list(profile.economic),
            spatial=list(profile.spatial),
            composite=list(profile.composite),
            generation=profile.generation,
            confidence=profile.confidence,
            half_life_days=profile.half_life_days,
            last_interaction=profile.last_interaction,
            last_updated=profile.last_updated,
        )

    def domain(self, name: str) -> List[float]:
        return getattr(self, name)

    def domains(self) -> Dict[str, List[float]]:
        return {domain: self.domain(domain) for domain in DOMAINS}

    def write_to(self, profile: models.EmbeddingProfile) -> None:
        for domain in DOMAINS:
            setattr(profile, domain, list(self.domain(domain)))
        profile.composite = list(self.composite)
        profile.generation = self.generation
        profile.confidence = self.confidence
        profile.half_life_days = self.half_life_days
        profile.last_interaction = self.last_interaction
        profile.last_updated = self.last_updated

    def to_dict(self) -> Dict[str, object]:
        return {
            **self.domains(),
            "composite": list(self.composite),
            "generation": self.generation,
            "confidence": self.confidence,
            "half_life_days": self.half_life_days,
            "last_interaction": self.last_interaction.isoformat(),
            "last_updated": self.last_updated.isoformat(),
        }


@dataclass(slots=True)
class ProjectionEvent:
    event_id: str
    event_type: str
    occurred_at: datetime
    recency_factor: float
    context: Optional[str] = None

    @classmethod
    def from_model(cls, event: models.InteractionEvent) -> "ProjectionEvent":
        return cls(
            event_id=event.id,
            event_type=event.event_type,
            occurred_at=event.occurred_at,
            recency_factor=event.recency_factor,
            context=(event.payload or {}).get("context"),
        )


@dataclass(slots=True)
class ProjectionResult:
    profile: ProfileState
    delta_norms: Dict[str, float]
    alpha: float
    decay: float
    domain_decay: Dict[str, float] = field(default_factory=dict)


def project(
    event: ProjectionEvent,
    profile: ProfileState,
    entity: Mapping[str, Sequence[float]],
    weights: CategoryWeightTable,
    user: Optional[UserInfluence],
    now: datetime,
    composite_mode: str = "concat",
    importance: Optional[Mapping[str, float]] = None,
    half_lives: Optional[Mapping[str, float]] = None,
) -> ProjectionResult:
    """Apply one interaction to a profile.  Pure; the input is not modified.

    ``half_lives`` overrides the profile half-life for individual domains.
    """
    user = user or UserInfluence()
    influence = weights.influence(event.event_type)
    domain_weights = effective_domain_weights(influence, user, event.context)
    decay = decay_factor(profile.last_interaction, event.occurred_at, profile.half_life_days)
    half_lives = half_lives or {}
    decays = {
        domain: decay_factor(profile.last_interaction, event.occurred_at, half_lives[domain])
        if domain in half_lives
        else decay
        for domain in DOMAINS
    }
    alpha = user.learning_rate * influence.base_intensity * event.recency_factor

    updated: Dict[str, List[float]] = {}
    norms: Dict[str, float] = {}
    for domain in DOMAINS:
        old = profile.domain(domain)
        target = entity[domain]
        if len(target) != len(old):
            raise DimensionMismatch(
                f"{domain}: entity has {len(target)} dimensions, profile has {len(old)}"
            )
        step = alpha * domain_weights[domain]
        keep = 1.0 - step
        updated[domain] = [keep * o * decays[domain] + step * t for o, t in zip(old, target)]
        norms[domain] = utils.l2_distance(updated[domain], old)

    composite = compose(updated, composite_mode, importance)
    norms["composite"] = (
        utils.l2_distance(composite, profile.composite)
        if len(composite) == len(profile.composite)
        else utils.l2_norm(composite)
    )
    state = ProfileState(
        **updated,
        composite=composite,
        generation=profile.generation + 1,
        confidence=utils.clamp(profile.confidence + alpha * (1.0 - profile.confidence)),
        half_life_days=profile.half_life_days,
        last_interaction=max(profile.last_interaction, event.occurred_at),
        last_updated=now,
    )
    return ProjectionResult(
        profile=state, delta_norms=norms, alpha=alpha, decay=decay, domain_decay=decays
    )


@dataclass(slots=True)
class EventOutcome:
    status: str
    reason: Optional[str] = None


@dataclass(slots=True)
class UserProjection:
    user_id: str
    outcomes: Dict[str, EventOutcome] = field(default_factory=dict)
    profile_updated: bool = False
    generation: Optional[int] = None


class EmbeddingProjector:
    """Loads, updates and stores one user's profile per call."""

    def __init__(self, config: AppConfig, weights: CategoryWeightTable, telemetry=None) -> None:
        self.config = config
        self.weights = weights
        self.telemetry = telemetry

    def _user_influence(self, session: Session, user_id: str) -> UserInfluence:
        return UserInfluence.from_record(PreferencesRepository(session).get(user_id))

    def apply_user(
        self,
        session: Session,
        user_id: str,
        events: Sequence[models.InteractionEvent],
        now: datetime,
    ) -> UserProjection:
        """Apply a user's events in order and persist the resulting profile.

        Events already carrying ``profile_applied_at`` are left alone.  The
        profile row and the per-event marks are flushed together so the
        caller's commit makes them durable atomically.
        """
        projection = UserProjection(user_id=user_id)
        settings = self.config.projection
        profiles = ProfileRepository(session)
        entities = EntityRepository(session)
        user = self._user_influence(session, user_id)

        record = profiles.get(user_id)
        state = ProfileState.from_model(record) if record else None
        for event in events:
            if event.profile_applied_at is not None:
                projection.outcomes[event.id] = EventOutcome(ALREADY_APPLIED)
                continue
            try:
                entity = entities.require(event.entity_id, event.entity_kind)
            except MissingReferenceError as exc:
                LOGGER.warning("Skipping event %s: %s", event.id, exc)
                projection.outcomes[event.id] = EventOutcome(SKIPPED, "missing_entity_profile")
                continue
            if state is None:
                state = ProfileState.fresh(
                    settings.dimensions,
                    occurred_at=event.occurred_at,
                    now=now,
                    half_life_days=settings.half_life_days,
                    confidence=settings.initial_confidence,
                    composite_mode=settings.composite_mode,
                    importance=settings.domain_importance,
                )
            vectors = {domain: getattr(entity, domain) for domain in DOMAINS}
            try:
                result = project(
                    ProjectionEvent.from_model(event),
                    state,
                    vectors,
                    self.weights,
                    user,
                    now,
                    composite_mode=settings.composite_mode,
                    importance=settings.domain_importance,
                    half_lives=settings.domain_half_lives,
                )
            except DimensionMismatch as exc:
                LOGGER.warning("Skipping event %s: %s", event.id, exc)
                projection.outcomes[event.id] = EventOutcome(SKIPPED, "dimension_mismatch")
                continue
            state = result.profile
            event.profile_applied_at = now
            projection.outcomes[event.id] = EventOutcome(APPLIED)
            projection.profile_updated = True
            LOGGER.debug(
                "Event %s moved user %s: %s",
                event.id,
                user_id,
                {key: round(value, 6) for key, value in result.delta_norms.items()},
            )
            if self.telemetry:
                self.telemetry.observe("embedding.delta_norm", result.delta_norms["composite"])

        if projection.profile_updated and state is not None:
            if record is None:
                record = models.EmbeddingProfile(user_id=user_id)
                state.write_to(record)
                profiles.add(record)
            else:
                state.write_to(record)
            session.flush()
            projection.generation = state.generation
        return projection

    @staticmethod
    def serialize(profile: models.EmbeddingProfile) -> Dict[str, object]:
        return {"user_id": profile.user_id, **ProfileState.from_model(profile).to_dict()}


def group_by_user(events: Sequence[models.InteractionEvent]) -> Dict[str, List[str]]:
    """Partition event ids by user, preserving claim order within each user."""
    groups: Dict[str, List[str]] = {}
    for event in events:
        groups.setdefault(event.user_id, []).append(event.id)
    return groups


