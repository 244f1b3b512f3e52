from datetime import timedelta

from affinity_ledger import models
from affinity_ledger.services.ledger import EventLedger

from conftest import T0


def _event(database, event_id):
    with database.session() as session:
        event = session.get(models.InteractionEvent, event_id)
        session.expunge(event)
        return event


def test_append_stores_typed_payload_and_attribution(pipeline, database):
    result = pipeline.append_event(
        {
            "user_id": "u1",
            "event_type": "content.played",
            "metadata": {"entity_id": "t1", "artist_id": "a1", "genres": ["Jazz"]},
            "timestamp": T0.isoformat(),
        }
    )
    assert result.ok
    assert result.payload["created"] is True
    event = _event(database, result.payload["event_id"])
    assert event.entity_kind == "track"
    assert event.attributed_to == "a1"
    assert event.payload["genres"] == ["jazz"]
    assert event.processed is False
    assert event.processing_attempts == 0
    assert event.recency_factor == 1.0


def test_append_rejects_invalid_events(pipeline):
    result = pipeline.append_event({"user_id": "u1", "event_type": "content.played", "metadata": {}})
    assert not result.ok
    assert result.code == "invalid"
    assert pipeline.stats().payload["events"]["total"] == 0


def test_dedupe_key_returns_existing_event(append, pipeline):
    first = append("u1", "social.liked", {"entity_id": "t1"}, dedupe_key="client-1")
    again = pipeline.append_event(
        {
            "user_id": "u1",
            "event_type": "social.liked",
            "metadata": {"entity_id": "t1"},
            "dedupe_key": "client-1",
        }
    )
    assert again.payload == {"event_id": first, "created": False}
    assert pipeline.stats().payload["events"]["total"] == 1


def test_backfill_events_get_reduced_recency(append, database):
    backfilled = append("u1", "content.played", {"entity_id": "t1"}, source="backfill")
    explicit = append("u1", "content.played", {"entity_id": "t1"}, source="backfill", recency_factor=0.9)
    assert _event(database, backfilled).recency_factor == 0.5
    assert _event(database, explicit).recency_factor == 0.9


def test_claim_orders_by_occurrence_and_counts_attempts(append, database, config):
    late = append("u1", "content.played", {"entity_id": "t1"}, timestamp=T0 + timedelta(hours=1))
    early = append("u2", "content.played", {"entity_id": "t1"}, timestamp=T0 - timedelta(hours=1))
    ledger = EventLedger(config)
    with database.session() as session:
        claimed = [event.id for event in ledger.claim(session, 10, max_attempts=3)]
    assert claimed == [early, late]
    assert _event(database, early).processing_attempts == 1

    with database.session() as session:
        assert [event.id for event in ledger.claim(session, 1, max_attempts=3)] == [early]


def test_exhausted_events_are_flagged_and_can_be_requeued(append, database, config, pipeline):
    event_id = append("u1", "content.played", {"entity_id": "t1"})
    ledger = EventLedger(config)
    with database.session() as session:
        session.get(models.InteractionEvent, event_id).processing_attempts = 3
    with database.session() as session:
        assert ledger.claim(session, 10, max_attempts=3) == []
        assert ledger.flag_exhausted(session, 3) == [event_id]
    stats = pipeline.stats().payload["events"]
    assert stats["failed"] == 1
    assert stats["unprocessed"] == 0

    assert pipeline.reset_failed().payload == {"requeued": 1}
    event = _event(database, event_id)
    assert event.failed is False
    assert event.processing_attempts == 0
    assert "max attempts exhausted" in event.errors


def test_record_failure_flags_only_after_last_attempt():
    event = models.InteractionEvent(processing_attempts=1, errors=[], failed=False)
    assert EventLedger.record_failure(event, ["boom"], max_attempts=2) is False
    event.processing_attempts = 2
    assert EventLedger.record_failure(event, ["boom again"], max_attempts=2) is True
    assert event.errors == ["boom", "boom again"]
