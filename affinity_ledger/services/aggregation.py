"""Aggregates over the mutation ledger: domain strength and leaderboards.

Both are caches.  Strength rows are a full fold over an entity's mutations and
leaderboards are rebuilt wholesale per (category, window), so either can be
dropped and recomputed from the ledger at any time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from ..config import CATEGORIES, AppConfig, parse_window
from ..errors import ValidationError
from ..repositories import (
    EntityRepository,
    LeaderboardRepository,
    MutationRepository,
    StrengthRepository,
)

LOGGER = logging.getLogger("ledger.aggregation")


@dataclass(slots=True)
class StrengthTotals:
    count: int
    total_delta: float
    last_mutation_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, object]:
        return {"count": self.count, "total_delta": self.total_delta}


class AggregationEngine:
    def __init__(self, config: AppConfig, telemetry=None) -> None:
        self.config = config
        self.telemetry = telemetry

    def _check_category(self, category: str) -> None:
        if category not in CATEGORIES:
            raise ValidationError(f"Unknown category {category!r}")

    def _check_window(self, window: str) -> Optional[timedelta]:
        if window not in self.config.mutations.windows:
            raise ValidationError(
                f"Unknown window {window!r}; expected one of {list(self.config.mutations.windows)}"
            )
        return parse_window(window)

    def recompute_strength(
        self, session: Session, entity_id: str, now: datetime
    ) -> Dict[str, StrengthTotals]:
        totals: Dict[str, StrengthTotals] = {}
        strengths = StrengthRepository(session)
        for category, count, total, last in MutationRepository(session).totals_by_category(entity_id):
            totals[category] = StrengthTotals(int(count), float(total), last)
            strengths.upsert(entity_id, category, float(total), int(count), last, now)
        strengths.delete_except(entity_id, totals.keys())
        return totals

    def refresh_leaderboards(
        self,
        session: Session,
        now: datetime,
        categories: Optional[Sequence[str]] = None,
        windows: Optional[Sequence[str]] = None,
    ) -> Dict[str, int]:
        categories = list(categories or CATEGORIES)
        windows = list(windows or self.config.mutations.windows)
        limit = self.config.mutations.leaderboard_size
        mutations = MutationRepository(session)
        entities = EntityRepository(session)
        boards = LeaderboardRepository(session)
        sizes: Dict[str, int] = {}
        for category in categories:
            for window in windows:
                lookback = parse_window(window)
                since = now - lookback if lookback else None
                ranking = mutations.ranking(category, since, limit)
                described = entities.describe(row[0] for row in ranking)
                rows = []
                for rank, (entity_id, count, total) in enumerate(ranking, start=1):
                    kind, name = described.get(entity_id, (None, None))
                    rows.append(
                        {
                            "rank": rank,
                            "entity_id": entity_id,
                            "entity_kind": kind,
                            "display_name": name,
                            "total_delta": float(total),
                            "mutation_count": int(count),
                            "refreshed_at": now,
                        }
                    )
                sizes[f"{category}:{window}"] = boards.replace(category, window, rows)
        LOGGER.debug("Refreshed leaderboards %s", sizes)
        return sizes

    def rebuild_all(self, session: Session, now: datetime) -> Dict[str, object]:
        entity_ids = MutationRepository(session).entity_ids()
        for entity_id in entity_ids:
            self.recompute_strength(session, entity_id, now)
        boards = self.refresh_leaderboards(session, now)
        LOGGER.info("Rebuilt aggregates for %s entities", len(entity_ids))
        return {"entities": len(entity_ids), "leaderboards": boards}

    def stale_entities(self, session: Session) -> List[str]:
        """Entities whose strength cache lags the mutation ledger."""
        return MutationRepository(session).stale_entities()

    def domain_strength(self, session: Session, entity_id: str, category: str) -> StrengthTotals:
        self._check_category(category)
        record = StrengthRepository(session).get(entity_id, category)
        if record is not None:
            return StrengthTotals(record.mutation_count, record.total_delta, record.last_mutation_at)
        for row_category, count, total, last in MutationRepository(session).totals_by_category(entity_id):
            if row_category == category:
                return StrengthTotals(int(count), float(total), last)
        return StrengthTotals(0, 0.0)

    def breakdown(
        self,
        session: Session,
        entity_id: str,
        now: datetime,
        category: Optional[str] = None,
        window_days: Optional[float] = None,
    ) -> List[Dict[str, object]]:
        if category is not None:
            self._check_category(category)
        if window_days is not None and window_days <= 0:
            raise ValidationError("window_days must be positive")
        since = now - timedelta(days=window_days) if window_days else None
        rows = MutationRepository(session).totals_by_category(entity_id, since)
        return [
            {
                "category": row_category,
                "count": int(count),
                "total_delta": float(total),
                "last_mutation_at": last.isoformat() if last else None,
            }
            for row_category, count, total, last in rows
            if category is None or row_category == category
        ]

    def leaderboard(
        self, session: Session, category: str, window: str, limit: int = 10
    ) -> List[Dict[str, object]]:
        self._check_category(category)
        self._check_window(window)
        if limit <= 0:
            raise ValidationError("limit must be positive")
        return [
            {
                "rank": entry.rank,
                "entity_id": entry.entity_id,
                "entity_kind": entry.entity_kind,
                "display_name": entry.display_name,
                "total_delta": entry.total_delta,
                "mutation_count": entry.mutation_count,
                "refreshed_at": entry.refreshed_at.isoformat(),
            }
            for entry in LeaderboardRepository(session).list(category, window, limit)
        ]

