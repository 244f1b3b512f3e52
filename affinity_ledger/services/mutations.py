"""Discrete, auditable mutation ledger derived from interaction events."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from .. import models
from ..config import AppConfig
from ..repositories import MutationRepository
from .decay import recency_decay
from .validators import GenericPayload, parse_payload
from .weights import CategoryWeightTable

LOGGER = logging.getLogger("ledger.mutations")

ENGAGEMENT_DELTAS: Dict[str, float] = {
    "content.played": 1.0,
    "content.completed": 2.5,
    "content.favorited": 5.0,
    "social.followed": 10.0,
    "social.shared": 3.0,
    "social.liked": 1.0,
    "event.viewed": 0.5,
    "event.rsvped": 2.0,
    "event.voted": 3.0,
}

CULTURE_MULTIPLIERS: Dict[str, float] = {
    "event.attended": 1.0,
    "payment.completed": 0.8,
    "event.voted": 0.5,
    "social.followed": 0.4,
    "content.completed": 0.3,
    "content.played": 0.1,
    "content.skipped": -0.05,
}
DEFAULT_CULTURE_MULTIPLIER = 0.1

REACH_DELTAS: Dict[str, float] = {
    "event.attended": 10.0,
    "payment.completed": 1.5,
    "event.rsvped": 0.8,
    "event.viewed": 0.3,
}


def engagement_delta(event_type: str, payload: GenericPayload) -> float:
    base = ENGAGEMENT_DELTAS.get(event_type, 0.0)
    completion = getattr(payload, "completion_pct", None)
    if base and completion is not None:
        base *= 1.0 + 2.0 * completion * completion
    return base


def culture_delta(event_type: str, payload: GenericPayload) -> float:
    if not payload.genres:
        return 0.0
    return CULTURE_MULTIPLIERS.get(event_type, DEFAULT_CULTURE_MULTIPLIER)


def revenue_delta(event_type: str, payload: GenericPayload) -> float:
    amount = getattr(payload, "amount_cents", 0) or 0
    return amount / 100.0 if amount > 0 else 0.0


def reach_delta(event_type: str, payload: GenericPayload) -> float:
    if not payload.city:
        return 0.0
    return REACH_DELTAS.get(event_type, 0.0)


DeltaFunction = Callable[[str, GenericPayload], float]

CATEGORY_FUNCTIONS: Dict[str, DeltaFunction] = {
    "engagement": engagement_delta,
    "culture": culture_delta,
    "revenue": revenue_delta,
    "reach": reach_delta,
}


def category_key(category: str, event_type: str, payload: GenericPayload) -> Optional[str]:
    if category == "culture":
        return "genres:" + ",".join(sorted(payload.genres))
    if category == "reach":
        return f"city:{payload.city}"
    if category == "revenue":
        return f"currency:{getattr(payload, 'currency', 'usd')}"
    return event_type


@dataclass(slots=True)
class MutationDraft:
    category: str
    key: Optional[str]
    base_delta: float
    weight: float
    recency_decay: float
    effective_delta: float

    def to_row(self, event: models.InteractionEvent, now: datetime) -> dict:
        return {
            "event_id": event.id,
            "entity_id": event.attributed_to,
            "user_id": event.user_id,
            "category": self.category,
            "key": self.key,
            "base_delta": self.base_delta,
            "weight": self.weight,
            "recency_decay": self.recency_decay,
            "effective_delta": self.effective_delta,
            "occurred_at": event.occurred_at,
            "created_at": now,
        }


@dataclass(slots=True)
class MutationOutcome:
    event_id: str
    entity_id: str
    derived: int
    created: int


class MutationProjector:
    def __init__(self, config: AppConfig, weights: CategoryWeightTable, telemetry=None) -> None:
        self.config = config
        self.weights = weights
        self.telemetry = telemetry

    def derive(
        self,
        event_type: str,
        payload: GenericPayload,
        occurred_at: datetime,
        now: datetime,
    ) -> List[MutationDraft]:
        """Return one draft per category with non-zero impact."""
        setting = self.weights.decay(event_type)
        decay = recency_decay(occurred_at, now, setting.half_life_days, setting.floor)
        drafts: List[MutationDraft] = []
        for category, function in CATEGORY_FUNCTIONS.items():
            base = function(event_type, payload)
            if base == 0:
                continue
            weight = self.weights.category_weight(event_type, category)
            if weight == 0:
                continue
            drafts.append(
                MutationDraft(
                    category=category,
                    key=category_key(category, event_type, payload),
                    base_delta=base,
                    weight=weight,
                    recency_decay=decay,
                    effective_delta=base * weight * decay,
                )
            )
        return drafts

    def derive_for(self, event: models.InteractionEvent, now: datetime) -> List[MutationDraft]:
        payload = parse_payload(event.event_type, event.payload)
        return self.derive(event.event_type, payload, event.occurred_at, now)

    def apply(self, session: Session, event: models.InteractionEvent, now: datetime) -> MutationOutcome:
        """Write the event's mutations; rows that already exist are left untouched."""
        drafts = self.derive_for(event, now)
        rows = [draft.to_row(event, now) for draft in drafts]
        created = MutationRepository(session).insert_ignore(rows)
        if event.mutations_applied_at is None:
            event.mutations_applied_at = now
        session.flush()
        if created:
            LOGGER.debug(
                "Event %s produced %s mutations for %s", event.id, created, event.attributed_to
            )
        elif not drafts:
            LOGGER.debug("Event %s has no mutation impact", event.id)
        if self.telemetry and created:
            self.telemetry.observe("mutations.created", created)
        return MutationOutcome(
            event_id=event.id,
            entity_id=event.attributed_to,
            derived=len(drafts),
            created=created,
        )
