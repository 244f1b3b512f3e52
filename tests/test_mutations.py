from datetime import timedelta

import pytest
from sqlalchemy import func, select

from affinity_ledger import models
from affinity_ledger.services.mutations import MutationProjector
from affinity_ledger.services.validators import parse_payload

from conftest import T0


@pytest.fixture
def projector(config, weights):
    return MutationProjector(config, weights)


def _categories(drafts):
    return {draft.category: draft for draft in drafts}


def test_play_without_context_only_counts_engagement(projector):
    drafts = projector.derive("content.played", parse_payload("content.played", {"entity_id": "t1"}), T0, T0)
    assert [draft.category for draft in drafts] == ["engagement"]
    assert drafts[0].effective_delta == 1.0
    assert drafts[0].key == "content.played"


def test_attendance_touches_culture_and_reach(projector):
    payload = parse_payload("event.attended", {"entity_id": "e1", "genres": ["techno"], "city": "Berlin"})
    drafts = _categories(projector.derive("event.attended", payload, T0, T0))
    assert set(drafts) == {"culture", "reach"}
    assert drafts["reach"].base_delta == 10.0
    assert drafts["reach"].weight == 100.0
    assert drafts["reach"].key == "city:Berlin"
    assert drafts["culture"].key == "genres:techno"


def test_purchase_revenue_uses_amount(projector):
    payload = parse_payload("payment.completed", {"entity_id": "b1", "amount_cents": 2500, "currency": "EUR"})
    drafts = _categories(projector.derive("payment.completed", payload, T0, T0))
    assert drafts["revenue"].base_delta == 25.0
    assert drafts["revenue"].effective_delta == 2500.0
    assert drafts["revenue"].key == "currency:eur"


def test_completion_boosts_engagement(projector):
    payload = parse_payload("content.completed", {"entity_id": "t1", "completion_pct": 1.0})
    drafts = _categories(projector.derive("content.completed", payload, T0, T0))
    assert drafts["engagement"].base_delta == pytest.approx(7.5)


def test_skip_with_genres_is_a_negative_culture_signal(projector):
    payload = parse_payload("content.skipped", {"entity_id": "t1", "genres": ["pop"]})
    drafts = _categories(projector.derive("content.skipped", payload, T0, T0))
    assert drafts["culture"].effective_delta == pytest.approx(-0.05 * 0.1)


def test_old_events_decay_down_to_the_floor(projector):
    payload = parse_payload("content.played", {"entity_id": "t1"})
    week_old = projector.derive("content.played", payload, T0 - timedelta(days=7), T0)[0]
    assert week_old.recency_decay == pytest.approx(0.5)
    ancient = projector.derive("content.played", payload, T0 - timedelta(days=365), T0)[0]
    assert ancient.recency_decay == pytest.approx(0.1)
    assert ancient.effective_delta == pytest.approx(0.1)


def test_zero_category_weight_drops_the_mutation(config, weights):
    muted = MutationProjector(
        config, weights.with_overrides({"content.played": {"categories": {"engagement": 0}}})
    )
    payload = parse_payload("content.played", {"entity_id": "t1"})
    assert muted.derive("content.played", payload, T0, T0) == []


def test_apply_is_idempotent_per_event_and_category(projector, append, database):
    event_id = append(
        "u1", "event.attended", {"entity_id": "e1", "artist_id": "a1", "city": "Lisbon", "genres": ["fado"]}
    )
    with database.session() as session:
        event = session.get(models.InteractionEvent, event_id)
        first = projector.apply(session, event, T0)
    with database.session() as session:
        event = session.get(models.InteractionEvent, event_id)
        second = projector.apply(session, event, T0 + timedelta(days=1))
    assert (first.created, second.created) == (2, 0)
    assert first.entity_id == "a1"
    with database.session() as session:
        count = session.scalar(select(func.count()).select_from(models.DomainMutation))
        event = session.get(models.InteractionEvent, event_id)
        assert count == 2
        assert event.mutations_applied_at == T0


def test_insert_ignore_counts_only_rows_written(projector, append, database):
    from affinity_ledger.repositories import MutationRepository

    event_id = append("u1", "content.played", {"entity_id": "t1", "genres": ["jazz"]})
    with database.session() as session:
        event = session.get(models.InteractionEvent, event_id)
        rows = [draft.to_row(event, T0) for draft in projector.derive_for(event, T0)]
        assert {row["category"] for row in rows} == {"engagement", "culture"}
        created = MutationRepository(session).insert_ignore(rows + [dict(rows[0])])
    assert created == 2
    with database.session() as session:
        assert session.scalar(select(func.count()).select_from(models.DomainMutation)) == 2
