from datetime import timedelta

import pytest
from sqlalchemy import func, select

from affinity_ledger import models
from affinity_ledger.errors import LeaseUnavailableError

from conftest import DIM, T0, vec


def _event(database, event_id):
    with database.session() as session:
        event = session.get(models.InteractionEvent, event_id)
        session.expunge(event)
        return event


def _mutation_count(database):
    with database.session() as session:
        return session.scalar(select(func.count()).select_from(models.DomainMutation))


def test_play_updates_profile_and_mutation_ledger(add_entity, append, pipeline, database):
    add_entity("T", value=1.0)
    event_id = append("U", "content.played", {"entity_id": "T", "artist_id": "A"})

    summary = pipeline.run_batch().payload
    assert summary["status"] == "completed"
    assert summary["claimed"] == 1
    assert summary["processed"] == 1
    assert summary["mutations_created"] == 1
    assert summary["profiles_updated"] == 1

    profile = pipeline.get_profile("U").payload
    assert profile["generation"] == 2
    for domain in ("cultural", "behavioral", "economic", "spatial"):
        assert profile[domain] == pytest.approx(vec(0.1))
    assert len(profile["composite"]) == 4 * DIM

    with database.session() as session:
        rows = session.scalars(select(models.DomainMutation)).all()
        assert [(row.entity_id, row.category, row.effective_delta) for row in rows] == [
            ("A", "engagement", 1.0)
        ]

    event = _event(database, event_id)
    assert event.processed is True
    assert event.processed_at == T0
    assert event.processing_attempts == 1


def test_processed_events_are_not_claimed_again(add_entity, append, pipeline, database):
    add_entity("T")
    append("U", "content.played", {"entity_id": "T", "artist_id": "A"})
    pipeline.run_batch()

    again = pipeline.run_batch().payload
    assert again["status"] == "idle"
    assert again["claimed"] == 0
    assert pipeline.get_profile("U").payload["generation"] == 2
    assert _mutation_count(database) == 1


def test_replayed_event_does_not_double_count(add_entity, append, pipeline, database):
    add_entity("T")
    event_id = append("U", "content.played", {"entity_id": "T", "artist_id": "A"})
    pipeline.run_batch()
    with database.session() as session:
        session.get(models.InteractionEvent, event_id).processed = False

    replay = pipeline.run_batch().payload
    assert replay["claimed"] == 1
    assert replay["processed"] == 1
    assert replay["mutations_created"] == 0
    assert replay["profiles_updated"] == 0
    assert pipeline.get_profile("U").payload["generation"] == 2
    assert _mutation_count(database) == 1
    assert pipeline.get_domain_strength("A", "engagement").payload["count"] == 1


def test_events_apply_in_occurrence_order(add_entity, append, pipeline):
    add_entity("t1", value=1.0)
    add_entity("t2", value=0.0)
    append("U", "content.played", {"entity_id": "t2"}, timestamp=T0 + timedelta(hours=1))
    append("U", "content.played", {"entity_id": "t1"}, timestamp=T0)
    pipeline.run_batch()

    profile = pipeline.get_profile("U").payload
    assert profile["generation"] == 3
    # t1 first; an hour of decay, then t2 pulls 10% toward zero.
    decay = 0.5 ** ((1 / 24) / 90)
    assert profile["cultural"] == pytest.approx(vec(0.9 * 0.1 * decay))
    assert profile["last_interaction"] == (T0 + timedelta(hours=1)).isoformat()


def test_empty_ledger_records_idle_run(pipeline):
    summary = pipeline.run_batch().payload
    assert summary["status"] == "idle"
    assert summary["claimed"] == 0
    runs = pipeline.recent_runs().payload["runs"]
    assert [run["status"] for run in runs] == ["idle"]


def test_missing_entity_profile_is_skipped_but_processed(append, pipeline, database):
    event_id = append("U", "content.played", {"entity_id": "unknown"})
    summary = pipeline.run_batch().payload
    assert summary["status"] == "completed"
    assert summary["skipped"] == [{"event_id": event_id, "reason": "missing_entity_profile"}]
    assert summary["mutations_created"] == 1
    assert _event(database, event_id).processed is True
    assert pipeline.get_profile("U").code == "not_found"


def test_dimension_mismatch_is_skipped(append, pipeline, database):
    with database.session() as session:
        session.add(
            models.EntityProfile(
                entity_id="wide",
                entity_kind="track",
                cultural=vec(1.0, DIM + 2),
                behavioral=vec(1.0, DIM + 2),
                economic=vec(1.0, DIM + 2),
                spatial=vec(1.0, DIM + 2),
                confidence=1.0,
                updated_at=T0,
            )
        )
    event_id = append("U", "content.played", {"entity_id": "wide"})
    summary = pipeline.run_batch().payload
    assert summary["skipped"] == [{"event_id": event_id, "reason": "dimension_mismatch"}]
    assert summary["processed"] == 1


def test_mutation_failure_leaves_event_pending_for_retry(add_entity, append, pipeline, database, monkeypatch):
    add_entity("T")
    event_id = append("U", "content.played", {"entity_id": "T"})
    coordinator = pipeline.coordinator

    def boom(session, event, now):
        raise RuntimeError("boom")

    monkeypatch.setattr(coordinator.mutations, "apply", boom)
    summary = pipeline.run_batch().payload
    assert summary["status"] == "completed_with_errors"
    assert summary["processed"] == 0
    assert summary["errors"] == [{"event_id": event_id, "reason": "mutations: boom"}]
    event = _event(database, event_id)
    assert event.processed is False
    assert event.failed is False
    assert event.profile_applied_at == T0
    assert event.errors == ["mutations: boom"]

    monkeypatch.undo()
    retry = pipeline.run_batch().payload
    assert retry["status"] == "completed"
    assert retry["processed"] == 1
    assert retry["mutations_created"] == 1
    assert retry["profiles_updated"] == 0
    assert pipeline.get_profile("U").payload["generation"] == 2
    assert _event(database, event_id).processing_attempts == 2


def test_embedding_failure_rolls_back_the_whole_user(add_entity, append, pipeline, database, monkeypatch):
    add_entity("T")
    first = append("U", "content.played", {"entity_id": "T"})
    second = append("U", "content.played", {"entity_id": "T"}, timestamp=T0 + timedelta(minutes=1))
    other = append("V", "content.played", {"entity_id": "T"})
    projector = pipeline.coordinator.embedding
    original = projector.apply_user

    def flaky(session, user_id, events, now):
        if user_id == "U":
            raise RuntimeError("vector store offline")
        return original(session, user_id, events, now)

    monkeypatch.setattr(projector, "apply_user", flaky)
    summary = pipeline.run_batch().payload
    assert summary["status"] == "completed_with_errors"
    assert summary["processed"] == 1
    assert summary["mutations_created"] == 3
    assert {error["event_id"] for error in summary["errors"]} == {first, second}
    assert _event(database, other).processed is True
    assert _event(database, first).mutations_applied_at == T0
    assert pipeline.get_profile("U").code == "not_found"


def test_events_fail_permanently_after_max_attempts(add_entity, append, pipeline, config, database, monkeypatch):
    config.batch.max_attempts = 2
    add_entity("T")
    event_id = append("U", "content.played", {"entity_id": "T"})

    def boom(session, event, now):
        raise RuntimeError("boom")

    monkeypatch.setattr(pipeline.coordinator.mutations, "apply", boom)
    first = pipeline.run_batch().payload
    assert first["failed"] == []
    second = pipeline.run_batch().payload
    assert second["failed"] == [event_id]
    third = pipeline.run_batch().payload
    assert third["status"] == "idle"

    event = _event(database, event_id)
    assert event.failed is True
    assert event.processing_attempts == 2
    assert pipeline.stats().payload["events"]["failed"] == 1


def test_cancel_stops_between_events(add_entity, append, pipeline, database, monkeypatch):
    add_entity("T")
    first = append("U", "content.played", {"entity_id": "T"})
    second = append("V", "content.played", {"entity_id": "T"}, timestamp=T0 + timedelta(minutes=1))
    coordinator = pipeline.coordinator
    original = coordinator.mutations.apply

    def cancelling(session, event, now):
        coordinator.cancel()
        return original(session, event, now)

    monkeypatch.setattr(coordinator.mutations, "apply", cancelling)
    summary = pipeline.run_batch().payload
    assert summary["status"] == "aborted"
    assert summary["processed"] == 0
    assert summary["mutations_created"] == 1
    assert _event(database, first).mutations_applied_at == T0
    assert _event(database, second).mutations_applied_at is None

    monkeypatch.undo()
    resumed = pipeline.run_batch().payload
    assert resumed["status"] == "completed"
    assert resumed["processed"] == 2
    assert resumed["mutations_created"] == 1
    assert _mutation_count(database) == 2


def test_timeout_aborts_without_side_effects(add_entity, append, pipeline, config, database):
    config.batch.run_timeout = timedelta(seconds=-1)
    add_entity("T")
    event_id = append("U", "content.played", {"entity_id": "T"})
    summary = pipeline.run_batch().payload
    assert summary["status"] == "aborted"
    assert summary["claimed"] == 1
    event = _event(database, event_id)
    assert event.processed is False
    assert event.processing_attempts == 0
    assert _mutation_count(database) == 0


def test_lease_held_elsewhere_blocks_the_run(append, pipeline, config, database, clock):
    append("U", "content.played", {"entity_id": "T"})
    with database.session() as session:
        session.add(
            models.RunLease(
                name=config.batch.lease_name,
                holder="worker-2",
                acquired_at=T0,
                expires_at=T0 + timedelta(minutes=5),
            )
        )
    result = pipeline.run_batch()
    assert not result.ok
    assert result.code == "busy"
    assert "worker-2" in result.error

    clock.advance(minutes=10)
    summary = pipeline.run_batch().payload
    assert summary["claimed"] == 1
    with database.session() as session:
        assert session.get(models.RunLease, config.batch.lease_name).holder is None


def test_overlapping_run_in_same_process_is_rejected(append, pipeline, monkeypatch):
    append("U", "content.played", {"entity_id": "T"})
    coordinator = pipeline.coordinator
    original = coordinator.mutations.apply
    seen = []

    def reentrant(session, event, now):
        with pytest.raises(LeaseUnavailableError):
            coordinator.run_batch()
        seen.append(event.id)
        return original(session, event, now)

    monkeypatch.setattr(coordinator.mutations, "apply", reentrant)
    summary = pipeline.run_batch().payload
    assert len(seen) == 1
    assert summary["processed"] == 1


def test_max_events_limits_the_claim(append, pipeline):
    for index in range(3):
        append("U", "social.liked", {"entity_id": f"t{index}"}, timestamp=T0 + timedelta(seconds=index))
    assert pipeline.run_batch(max_events=2).payload["claimed"] == 2
    assert pipeline.run_batch(max_events=2).payload["claimed"] == 1
    assert pipeline.run_batch(max_events=0).code == "invalid"


def test_aborted_runs_do_not_use_up_attempts(add_entity, append, pipeline, config, database):
    add_entity("T")
    event_id = append("U", "content.played", {"entity_id": "T"})
    config.batch.run_timeout = timedelta(seconds=-1)
    for _ in range(config.batch.max_attempts):
        assert pipeline.run_batch().payload["status"] == "aborted"

    config.batch.run_timeout = timedelta(seconds=30)
    summary = pipeline.run_batch().payload
    assert summary["status"] == "completed"
    assert summary["failed"] == []
    assert summary["processed"] == 1
    event = _event(database, event_id)
    assert event.processed is True
    assert event.failed is False
    assert event.processing_attempts == 1


def test_zero_impact_event_is_processed_without_mutations(append, pipeline, database):
    event_id = append("U", "event.attended", {"entity_id": "gig-1"})
    summary = pipeline.run_batch().payload
    assert summary["status"] == "completed"
    assert summary["processed"] == 1
    assert summary["mutations_created"] == 0
    assert _mutation_count(database) == 0
    event = _event(database, event_id)
    assert event.processed is True
    assert event.mutations_applied_at == T0


def test_failed_strength_recompute_is_repaired_by_a_later_run(add_entity, append, pipeline, database, monkeypatch):
    add_entity("T")
    append("U", "content.played", {"entity_id": "T"})
    pipeline.run_batch()
    append("U", "content.played", {"entity_id": "T"}, timestamp=T0 + timedelta(minutes=1))

    engine = pipeline.coordinator.aggregation
    original = engine.recompute_strength

    def flaky(session, entity_id, now):
        if entity_id == "T":
            raise RuntimeError("strength table locked")
        return original(session, entity_id, now)

    monkeypatch.setattr(engine, "recompute_strength", flaky)
    failed = pipeline.run_batch().payload
    assert failed["status"] == "completed_with_errors"
    assert failed["errors"] == [{"event_id": None, "reason": "aggregation T: strength table locked"}]
    assert pipeline.get_domain_strength("T", "engagement").payload["count"] == 1

    monkeypatch.undo()
    append("V", "content.played", {"entity_id": "S"})
    repaired = pipeline.run_batch().payload
    assert repaired["status"] == "completed"
    assert repaired["entities_updated"] == 2
    strength = pipeline.get_domain_strength("T", "engagement").payload
    breakdown = pipeline.get_mutation_breakdown("T", category="engagement").payload["breakdown"]
    assert strength["count"] == breakdown[0]["count"] == 2
    assert strength["total_delta"] == pytest.approx(breakdown[0]["total_delta"])


def test_idle_run_repairs_stale_strength(append, pipeline, database):
    append("U", "content.played", {"entity_id": "T"})
    pipeline.run_batch()
    with database.session() as session:
        session.query(models.DomainStrength).delete()

    summary = pipeline.run_batch().payload
    assert summary["status"] == "idle"
    assert summary["entities_updated"] == 1
    assert pipeline.get_domain_strength("T", "engagement").payload["count"] == 1
