"""Per-interaction weight table and per-user influence preferences.

The table answers three questions for an event type:

* how strongly each embedding domain should move (``influence``),
* how much a mutation in each leaderboard category counts (``category_weight``),
* how quickly that mutation loses value with age (``decay``).

Defaults cover every known event type; a JSON file can override any entry.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .. import utils
from ..config import CATEGORIES, DOMAINS, MutationConfig
from ..errors import ConfigurationError
from .decay import validate_half_life
from .validators import EVENT_TYPES, PreferencesPayload

MULTIPLIER_RANGE = (0.0, 3.0)
LEARNING_RATE_RANGE = (0.01, 0.5)
DEFAULT_LEARNING_RATE = 0.1


@dataclass(frozen=True, slots=True)
class InfluenceWeights:
    cultural: float
    behavioral: float
    economic: float
    spatial: float
    base_intensity: float

    def domain(self, name: str) -> float:
        return getattr(self, name)

    def to_dict(self) -> Dict[str, float]:
        return {
            "cultural": self.cultural,
            "behavioral": self.behavioral,
            "economic": self.economic,
            "spatial": self.spatial,
            "base_intensity": self.base_intensity,
        }


@dataclass(frozen=True, slots=True)
class DecaySetting:
    half_life_days: float
    floor: float


@dataclass(frozen=True, slots=True)
class EventWeights:
    influence: InfluenceWeights
    weight: float
    decay: DecaySetting
    categories: Mapping[str, float] = field(default_factory=dict)

    def category_weight(self, category: str) -> float:
        return self.categories.get(category, self.weight)


def _influence(c: float, b: float, e: float, s: float, intensity: float) -> InfluenceWeights:
    return InfluenceWeights(c, b, e, s, intensity)


DEFAULT_INFLUENCE: Dict[str, InfluenceWeights] = {
    "content.played": _influence(0.8, 0.6, 0.2, 0.3, 0.5),
    "content.completed": _influence(0.9, 0.8, 0.3, 0.3, 0.7),
    "content.skipped": _influence(0.5, 0.7, 0.1, 0.2, 0.3),
    "content.favorited": _influence(0.95, 0.9, 0.4, 0.3, 0.9),
    "social.followed": _influence(0.85, 0.7, 0.3, 0.2, 0.7),
    "social.shared": _influence(0.7, 0.9, 0.3, 0.4, 0.8),
    "social.liked": _influence(0.75, 0.65, 0.25, 0.25, 0.6),
    "event.viewed": _influence(0.5, 0.6, 0.2, 0.6, 0.3),
    "event.rsvped": _influence(0.7, 0.8, 0.5, 0.9, 0.7),
    "event.attended": _influence(0.85, 0.75, 0.6, 1.0, 0.9),
    "event.voted": _influence(0.85, 0.8, 0.3, 0.7, 0.8),
    "payment.completed": _influence(0.5, 0.6, 1.0, 0.2, 0.95),
    "subscription.started": _influence(0.6, 0.7, 1.0, 0.1, 1.0),
}
FALLBACK_INFLUENCE = _influence(0.5, 0.5, 0.5, 0.5, 0.5)

# Tiered importance of an interaction in the mutation ledger.
DEFAULT_TIER_WEIGHTS: Dict[str, float] = {
    "subscription.started": 1000.0,
    "payment.completed": 100.0,
    "event.attended": 100.0,
    "event.voted": 100.0,
    "content.completed": 10.0,
    "content.favorited": 10.0,
    "social.followed": 10.0,
    "social.shared": 10.0,
    "event.rsvped": 10.0,
    "content.played": 1.0,
    "social.liked": 1.0,
    "event.viewed": 1.0,
    "content.skipped": 0.1,
}

DEFAULT_DECAY: Dict[str, tuple[float, float]] = {
    "content.played": (7.0, 0.1),
    "content.skipped": (7.0, 0.1),
    "event.viewed": (7.0, 0.1),
    "content.completed": (14.0, 0.2),
    "social.liked": (14.0, 0.2),
    "social.followed": (30.0, 0.3),
    "social.shared": (30.0, 0.3),
    "event.voted": (30.0, 0.3),
    "event.rsvped": (30.0, 0.3),
    "content.favorited": (60.0, 0.4),
    "payment.completed": (90.0, 0.5),
    "subscription.started": (180.0, 0.7),
    "event.attended": (365.0, 0.8),
}


def _check_unit(value: float, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"{name} must be a number")
    if not math.isfinite(value) or not 0.0 <= value <= 1.0:
        raise ConfigurationError(f"{name} must be within [0, 1], got {value!r}")
    return float(value)


def _check_weight(value: float, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"{name} must be a number")
    if not math.isfinite(value) or value < 0:
        raise ConfigurationError(f"{name} must be a non-negative number, got {value!r}")
    return float(value)


class CategoryWeightTable:
    """Read-only lookup of per-event-type weights."""

    def __init__(
        self,
        entries: Mapping[str, EventWeights],
        default: EventWeights,
    ) -> None:
        for event_type, entry in list(entries.items()) + [("default", default)]:
            self._validate(event_type, entry)
        self._entries: Dict[str, EventWeights] = dict(entries)
        self._default = default

    @staticmethod
    def _validate(event_type: str, entry: EventWeights) -> None:
        for domain in DOMAINS:
            _check_unit(entry.influence.domain(domain), f"{event_type} {domain} weight")
        _check_unit(entry.influence.base_intensity, f"{event_type} base intensity")
        _check_weight(entry.weight, f"{event_type} weight")
        for category, value in entry.categories.items():
            if category not in CATEGORIES:
                raise ConfigurationError(f"{event_type}: unknown category {category!r}")
            _check_weight(value, f"{event_type} {category} weight")
        validate_half_life(entry.decay.half_life_days, f"{event_type} mutation half-life")
        if _check_unit(entry.decay.floor, f"{event_type} decay floor") >= 1.0:
            raise ConfigurationError(f"{event_type}: decay floor must be in [0, 1)")

    @classmethod
    def default(cls, config: MutationConfig | None = None) -> "CategoryWeightTable":
        config = config or MutationConfig()
        entries = {
            event_type: EventWeights(
                influence=DEFAULT_INFLUENCE.get(event_type, FALLBACK_INFLUENCE),
                weight=DEFAULT_TIER_WEIGHTS.get(event_type, 1.0),
                decay=DecaySetting(*DEFAULT_DECAY.get(
                    event_type, (config.half_life_days, config.decay_floor)
                )),
            )
            for event_type in EVENT_TYPES
        }
        fallback = EventWeights(
            influence=FALLBACK_INFLUENCE,
            weight=1.0,
            decay=DecaySetting(config.half_life_days, config.decay_floor),
        )
        return cls(entries, fallback)

    @classmethod
    def from_config(cls, config: MutationConfig) -> "CategoryWeightTable":
        table = cls.default(config)
        if config.weights_file:
            table = table.with_overrides(_read_overrides(Path(config.weights_file)))
        return table

    def with_overrides(self, overrides: Mapping[str, Any]) -> "CategoryWeightTable":
        """Return a new table with JSON-style overrides merged per event type."""
        if not isinstance(overrides, Mapping):
            raise ConfigurationError("Weight overrides must be an object")
        entries = dict(self._entries)
        for event_type, raw in overrides.items():
            if event_type not in EVENT_TYPES:
                raise ConfigurationError(f"Weight override for unknown event type {event_type!r}")
            if not isinstance(raw, Mapping):
                raise ConfigurationError(f"Weight override for {event_type} must be an object")
            entries[event_type] = _merge_entry(entries.get(event_type, self._default), raw)
        return CategoryWeightTable(entries, self._default)

    def entry(self, event_type: str) -> EventWeights:
        return self._entries.get(event_type, self._default)

    def influence(self, event_type: str) -> InfluenceWeights:
        return self.entry(event_type).influence

    def category_weight(self, event_type: str, category: str) -> float:
        return self.entry(event_type).category_weight(category)

    def decay(self, event_type: str) -> DecaySetting:
        return self.entry(event_type).decay

    def to_dict(self) -> Dict[str, Any]:
        return {
            event_type: {
                "influence": entry.influence.to_dict(),
                "weight": entry.weight,
                "categories": dict(entry.categories),
                "half_life_days": entry.decay.half_life_days,
                "floor": entry.decay.floor,
            }
            for event_type, entry in sorted(self._entries.items())
        }


def _merge_entry(entry: EventWeights, raw: Mapping[str, Any]) -> EventWeights:
    influence = entry.influence
    if "influence" in raw:
        values = raw["influence"]
        if not isinstance(values, Mapping):
            raise ConfigurationError("'influence' override must be an object")
        unknown = set(values) - set(DOMAINS) - {"base_intensity"}
        if unknown:
            raise ConfigurationError(f"Unknown influence keys: {sorted(unknown)}")
        influence = replace(
            influence, **{key: _check_unit(value, f"influence {key}") for key, value in values.items()}
        )
    categories = dict(entry.categories)
    if "categories" in raw:
        if not isinstance(raw["categories"], Mapping):
            raise ConfigurationError("'categories' override must be an object")
        categories.update(raw["categories"])
    decay = DecaySetting(
        half_life_days=raw.get("half_life_days", entry.decay.half_life_days),
        floor=raw.get("floor", entry.decay.floor),
    )
    return EventWeights(
        influence=influence,
        weight=raw.get("weight", entry.weight),
        decay=decay,
        categories=categories,
    )


def _read_overrides(path: Path) -> Dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as handle:
            return json.load(handle)
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Weights file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Weights file {path} is not valid JSON: {exc}") from exc


@dataclass(slots=True)
class UserInfluence:
    """Per-user multipliers applied on top of the event-type influence."""

    cultural: float = 1.0
    behavioral: float = 1.0
    economic: float = 1.0
    spatial: float = 1.0
    learning_rate: float = DEFAULT_LEARNING_RATE
    context_multipliers: Dict[str, float] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: PreferencesPayload) -> "UserInfluence":
        return cls(
            cultural=payload.cultural,
            behavioral=payload.behavioral,
            economic=payload.economic,
            spatial=payload.spatial,
            learning_rate=payload.learning_rate,
            context_multipliers=dict(payload.context_multipliers),
        ).clamped()

    @classmethod
    def from_record(cls, record) -> "UserInfluence":
        if record is None:
            return cls()
        return cls(
            cultural=record.cultural,
            behavioral=record.behavioral,
            economic=record.economic,
            spatial=record.spatial,
            learning_rate=record.learning_rate,
            context_multipliers=dict(record.context_multipliers or {}),
        ).clamped()

    def clamped(self) -> "UserInfluence":
        low, high = MULTIPLIER_RANGE
        return UserInfluence(
            cultural=utils.clamp(self.cultural, low, high),
            behavioral=utils.clamp(self.behavioral, low, high),
            economic=utils.clamp(self.economic, low, high),
            spatial=utils.clamp(self.spatial, low, high),
            learning_rate=utils.clamp(self.learning_rate, *LEARNING_RATE_RANGE),
            context_multipliers={
                key: utils.clamp(value, low, high)
                for key, value in self.context_multipliers.items()
            },
        )

    def multiplier(self, domain: str) -> float:
        return getattr(self, domain)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "multipliers": {domain: self.multiplier(domain) for domain in DOMAINS},
            "learning_rate": self.learning_rate,
            "context_multipliers": dict(self.context_multipliers),
        }


def effective_domain_weights(
    influence: InfluenceWeights,
    user: Optional[UserInfluence] = None,
    context: Optional[str] = None,
) -> Dict[str, float]:
    """Blend type weights with user multipliers, clamped to ``[0, 1]``."""
    user = user or UserInfluence()
    context_factor = user.context_multipliers.get(context, 1.0) if context else 1.0
    return {
        domain: utils.clamp(influence.domain(domain) * user.multiplier(domain) * context_factor)
        for domain in DOMAINS
    }
