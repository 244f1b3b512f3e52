"""Typed payloads for interaction events, validated at append time.

Every event type in :data:`EVENT_TYPES` maps to one payload class.  Known
metadata keys become typed attributes; anything else is kept verbatim under
``extra`` so newer producers can attach fields before the projectors learn
about them.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Dict, FrozenSet, List, Optional, Tuple, Type

from .. import utils
from ..errors import ValidationError

ENTITY_KINDS: FrozenSet[str] = frozenset({"track", "artist", "event", "brand"})
SOURCES: FrozenSet[str] = frozenset(
    {"web", "ios", "android", "api", "system", "admin", "backfill"}
)
CONTEXTS: FrozenSet[str] = frozenset(
    {"discovery", "playlist", "event", "vertical_player", "general"}
)

_ALIASES = {
    "entityId": "entity_id",
    "entityKind": "entity_kind",
    "artistId": "artist_id",
    "amountCents": "amount_cents",
    "completionPct": "completion_pct",
    "durationSeconds": "duration_seconds",
    "ticketId": "ticket_id",
}


def _canonical(data: Dict[str, Any]) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for key, value in data.items():
        result[_ALIASES.get(key, key)] = value
    return result


def _optional_str(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str):
        raise ValidationError(f"Field {key!r} must be a string")
    value = value.strip()
    return value or None


def _optional_number(
    data: Dict[str, Any],
    key: str,
    minimum: float | None = None,
    maximum: float | None = None,
) -> Optional[float]:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(f"Field {key!r} must be numeric")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Field {key!r} must be numeric") from exc
    if not math.isfinite(number):
        raise ValidationError(f"Field {key!r} must be finite")
    if minimum is not None and number < minimum:
        raise ValidationError(f"Field {key!r} must be >= {minimum}")
    if maximum is not None and number > maximum:
        raise ValidationError(f"Field {key!r} must be <= {maximum}")
    return number


def _genres(data: Dict[str, Any]) -> List[str]:
    raw = data.get("genres")
    if raw is None:
        return []
    if isinstance(raw, str):
        raw = raw.split(",")
    if not isinstance(raw, (list, tuple)):
        raise ValidationError("Field 'genres' must be a list of strings")
    genres: List[str] = []
    for item in raw:
        if not isinstance(item, str):
            raise ValidationError("Field 'genres' must be a list of strings")
        genre = item.strip().lower()
        if genre and genre not in genres:
            genres.append(genre)
    return genres


@dataclass(slots=True)
class GenericPayload:
    """Shape shared by every event: the target entity plus common context."""

    entity_id: str
    entity_kind: str
    artist_id: Optional[str] = None
    genres: List[str] = field(default_factory=list)
    city: Optional[str] = None
    context: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    COMMON_FIELDS: ClassVar[Tuple[str, ...]] = (
        "entity_id",
        "entity_kind",
        "artist_id",
        "genres",
        "city",
        "context",
        "extra",
    )
    SPECIFIC_FIELDS: ClassVar[Tuple[str, ...]] = ()

    @classmethod
    def from_dict(cls, event_type: str, data: Dict[str, Any]) -> "GenericPayload":
        if not isinstance(data, dict):
            raise ValidationError("Event metadata must be an object")
        type_info = EVENT_TYPES[event_type]
        data = _canonical(data)

        entity_id = _optional_str(data, "entity_id")
        if not entity_id:
            raise ValidationError(f"{event_type} requires 'entity_id'")
        entity_kind = _optional_str(data, "entity_kind") or type_info.default_kind
        if entity_kind not in ENTITY_KINDS:
            raise ValidationError(f"Unknown entity kind {entity_kind!r}")
        if entity_kind not in type_info.entity_kinds:
            raise ValidationError(
                f"{event_type} cannot target a {entity_kind}; "
                f"expected one of {sorted(type_info.entity_kinds)}"
            )
        context = _optional_str(data, "context")
        if context is not None and context not in CONTEXTS:
            raise ValidationError(f"Unknown interaction context {context!r}")

        known = set(cls.COMMON_FIELDS) | set(cls.SPECIFIC_FIELDS)
        raw_extra = data.get("extra") or {}
        if not isinstance(raw_extra, dict):
            raise ValidationError("Field 'extra' must be an object")
        extra = dict(raw_extra)
        extra.update({key: value for key, value in data.items() if key not in known})
        return cls(
            entity_id=entity_id,
            entity_kind=entity_kind,
            artist_id=_optional_str(data, "artist_id"),
            genres=_genres(data),
            city=_optional_str(data, "city"),
            context=context,
            extra=extra,
            **cls._parse_specific(event_type, data),
        )

    @classmethod
    def _parse_specific(cls, event_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return {}

    @property
    def attributed_to(self) -> str:
        """Entity credited in the mutation ledger."""
        return self.artist_id or self.entity_id

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class ContentPayload(GenericPayload):
    duration_seconds: Optional[float] = None

    SPECIFIC_FIELDS: ClassVar[Tuple[str, ...]] = ("duration_seconds",)

    @classmethod
    def _parse_specific(cls, event_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return {"duration_seconds": _optional_number(data, "duration_seconds", minimum=0)}


@dataclass(slots=True)
class CompletionPayload(GenericPayload):
    completion_pct: Optional[float] = None
    duration_seconds: Optional[float] = None

    SPECIFIC_FIELDS: ClassVar[Tuple[str, ...]] = ("completion_pct", "duration_seconds")

    @classmethod
    def _parse_specific(cls, event_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "completion_pct": _optional_number(data, "completion_pct", 0.0, 1.0),
            "duration_seconds": _optional_number(data, "duration_seconds", minimum=0),
        }


@dataclass(slots=True)
class SocialPayload(GenericPayload):
    channel: Optional[str] = None

    SPECIFIC_FIELDS: ClassVar[Tuple[str, ...]] = ("channel",)

    @classmethod
    def _parse_specific(cls, event_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return {"channel": _optional_str(data, "channel")}


@dataclass(slots=True)
class VenuePayload(GenericPayload):
    venue: Optional[str] = None
    ticket_id: Optional[str] = None

    SPECIFIC_FIELDS: ClassVar[Tuple[str, ...]] = ("venue", "ticket_id")

    @classmethod
    def _parse_specific(cls, event_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "venue": _optional_str(data, "venue"),
            "ticket_id": _optional_str(data, "ticket_id"),
        }


@dataclass(slots=True)
class PurchasePayload(GenericPayload):
    amount_cents: int = 0
    currency: str = "usd"

    SPECIFIC_FIELDS: ClassVar[Tuple[str, ...]] = ("amount_cents", "currency")

    @classmethod
    def _parse_specific(cls, event_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
        raw = data.get("amount_cents")
        if raw is None:
            raise ValidationError(f"{event_type} requires 'amount_cents'")
        if isinstance(raw, bool) or not isinstance(raw, (int, float)) or raw != int(raw):
            raise ValidationError("Field 'amount_cents' must be a whole number")
        if raw <= 0:
            raise ValidationError("Field 'amount_cents' must be positive")
        currency = (_optional_str(data, "currency") or "usd").lower()
        return {"amount_cents": int(raw), "currency": currency}


@dataclass(frozen=True, slots=True)
class EventTypeSpec:
    payload_cls: Type[GenericPayload]
    default_kind: str
    entity_kinds: FrozenSet[str]


_MEDIA = frozenset({"track", "artist"})
_LIVE = frozenset({"event", "artist"})

EVENT_TYPES: Dict[str, EventTypeSpec] = {
    "content.played": EventTypeSpec(ContentPayload, "track", _MEDIA),
    "content.completed": EventTypeSpec(CompletionPayload, "track", _MEDIA),
    "content.skipped": EventTypeSpec(ContentPayload, "track", _MEDIA),
    "content.favorited": EventTypeSpec(ContentPayload, "track", _MEDIA),
    "social.followed": EventTypeSpec(SocialPayload, "artist", frozenset({"artist", "brand"})),
    "social.shared": EventTypeSpec(SocialPayload, "track", ENTITY_KINDS),
    "social.liked": EventTypeSpec(GenericPayload, "track", ENTITY_KINDS),
    "event.viewed": EventTypeSpec(VenuePayload, "event", _LIVE),
    "event.rsvped": EventTypeSpec(VenuePayload, "event", _LIVE),
    "event.attended": EventTypeSpec(VenuePayload, "event", _LIVE),
    "event.voted": EventTypeSpec(VenuePayload, "artist", _LIVE),
    "payment.completed": EventTypeSpec(PurchasePayload, "brand", ENTITY_KINDS),
    "subscription.started": EventTypeSpec(PurchasePayload, "artist", frozenset({"artist", "brand"})),
}


def parse_payload(event_type: str, metadata: Dict[str, Any] | None) -> GenericPayload:
    if event_type not in EVENT_TYPES:
        raise ValidationError(f"Unknown event type {event_type!r}")
    return EVENT_TYPES[event_type].payload_cls.from_dict(event_type, metadata or {})


@dataclass(slots=True)
class AppendEventPayload:
    user_id: str
    event_type: str
    payload: GenericPayload
    occurred_at: datetime
    source: str
    recency_factor: Optional[float]
    dedupe_key: Optional[str]

    @classmethod
    def from_dict(cls, data: dict) -> "AppendEventPayload":
        if not isinstance(data, dict):
            raise ValidationError("Request body must be an object")
        required = {"user_id", "event_type"}
        missing = required - data.keys()
        if missing:
            raise ValidationError(f"Missing fields: {', '.join(sorted(missing))}")
        user_id = _optional_str(data, "user_id")
        if not user_id:
            raise ValidationError("Field 'user_id' must not be empty")
        event_type = str(data["event_type"]).strip()
        payload = parse_payload(event_type, data.get("metadata"))

        raw_ts = data.get("timestamp") or data.get("occurred_at")
        if raw_ts and not isinstance(raw_ts, (str, datetime)):
            raise ValidationError(f"Field 'timestamp' must be an ISO-8601 string, got {raw_ts!r}")
        try:
            occurred_at = utils.normalize_timestamp(raw_ts) if raw_ts else utils.utc_now()
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid timestamp {raw_ts!r}") from exc

        source = (_optional_str(data, "source") or "api").lower()
        if source not in SOURCES:
            raise ValidationError(f"Unknown event source {source!r}")
        recency = _optional_number(data, "recency_factor")
        if recency is not None and not 0 < recency <= 1:
            raise ValidationError("Field 'recency_factor' must be in (0, 1]")
        return cls(
            user_id=user_id,
            event_type=event_type,
            payload=payload,
            occurred_at=occurred_at,
            source=source,
            recency_factor=recency,
            dedupe_key=_optional_str(data, "dedupe_key"),
        )


def _vector(data: Dict[str, Any], key: str, dimensions: int) -> List[float]:
    raw = data.get(key)
    if not isinstance(raw, (list, tuple)):
        raise ValidationError(f"Field {key!r} must be a list of numbers")
    if len(raw) != dimensions:
        raise ValidationError(f"Field {key!r} must have {dimensions} dimensions, got {len(raw)}")
    if any(isinstance(x, bool) for x in raw) or not utils.is_finite_vector(raw):
        raise ValidationError(f"Field {key!r} must contain finite numbers")
    return [float(x) for x in raw]


@dataclass(slots=True)
class EntityProfilePayload:
    entity_id: str
    entity_kind: str
    display_name: Optional[str]
    cultural: List[float]
    behavioral: List[float]
    economic: List[float]
    spatial: List[float]
    confidence: float

    @classmethod
    def from_dict(cls, data: dict, dimensions: int) -> "EntityProfilePayload":
        if not isinstance(data, dict):
            raise ValidationError("Entity profile must be an object")
        data = _canonical(data)
        entity_id = _optional_str(data, "entity_id")
        if not entity_id:
            raise ValidationError("Entity profile requires 'entity_id'")
        entity_kind = _optional_str(data, "entity_kind")
        if entity_kind not in ENTITY_KINDS:
            raise ValidationError(f"Unknown entity kind {entity_kind!r}")
        confidence = _optional_number(data, "confidence", 0.0, 1.0)
        return cls(
            entity_id=entity_id,
            entity_kind=entity_kind,
            display_name=_optional_str(data, "display_name"),
            cultural=_vector(data, "cultural", dimensions),
            behavioral=_vector(data, "behavioral", dimensions),
            economic=_vector(data, "economic", dimensions),
            spatial=_vector(data, "spatial", dimensions),
            confidence=1.0 if confidence is None else confidence,
        )


@dataclass(slots=True)
class PreferencesPayload:
    cultural: float
    behavioral: float
    economic: float
    spatial: float
    learning_rate: float
    context_multipliers: Dict[str, float]

    @classmethod
    def from_dict(cls, data: dict) -> "PreferencesPayload":
        if not isinstance(data, dict):
            raise ValidationError("Preferences must be an object")
        data = _canonical(data)
        multipliers = data.get("multipliers") or {}
        if not isinstance(multipliers, dict):
            raise ValidationError("Field 'multipliers' must be an object")
        merged = {**data, **multipliers}
        contexts = data.get("context_multipliers") or {}
        if not isinstance(contexts, dict):
            raise ValidationError("Field 'context_multipliers' must be an object")
        unknown = set(contexts) - CONTEXTS
        if unknown:
            raise ValidationError(f"Unknown interaction contexts: {sorted(unknown)}")

        def number(key: str, default: float) -> float:
            value = _optional_number(merged, key)
            return default if value is None else value

        return cls(
            cultural=number("cultural", 1.0),
            behavioral=number("behavioral", 1.0),
            economic=number("economic", 1.0),
            spatial=number("spatial", 1.0),
            learning_rate=number("learning_rate", 0.1),
            context_multipliers={
                key: _optional_number(contexts, key) or 0.0 for key in sorted(contexts)
            },
        )
