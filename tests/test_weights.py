import json

import pytest

from affinity_ledger.config import MutationConfig
from affinity_ledger.errors import ConfigurationError
from affinity_ledger.services.validators import EVENT_TYPES, PreferencesPayload
from affinity_ledger.services.weights import (
    CategoryWeightTable,
    UserInfluence,
    effective_domain_weights,
)


def test_default_table_covers_every_event_type():
    table = CategoryWeightTable.default()
    for event_type in EVENT_TYPES:
        entry = table.entry(event_type)
        assert 0 <= entry.influence.base_intensity <= 1
        assert entry.decay.half_life_days > 0
    assert table.entry("event.attended").decay.floor == 0.8
    assert table.category_weight("subscription.started", "engagement") == 1000.0


def test_unknown_event_type_falls_back_to_default_entry():
    table = CategoryWeightTable.default(MutationConfig(half_life_days=12.0, decay_floor=0.3))
    decay = table.decay("custom.thing")
    assert decay.half_life_days == 12.0
    assert decay.floor == 0.3


def test_overrides_merge_per_event_type():
    table = CategoryWeightTable.default().with_overrides(
        {
            "content.played": {
                "influence": {"economic": 0.9},
                "categories": {"revenue": 0.0},
                "half_life_days": 3,
            }
        }
    )
    entry = table.entry("content.played")
    assert entry.influence.economic == 0.9
    assert entry.influence.cultural == 0.8
    assert entry.decay.half_life_days == 3
    assert entry.category_weight("revenue") == 0.0
    assert entry.category_weight("engagement") == entry.weight


@pytest.mark.parametrize(
    "override",
    [
        {"content.played": {"influence": {"cultural": 1.5}}},
        {"content.played": {"influence": {"vibes": 0.5}}},
        {"content.played": {"influence": {"cultural": "lots"}}},
        {"content.played": {"weight": "heavy"}},
        {"content.played": {"weight": -1}},
        {"content.played": {"half_life_days": 0}},
        {"content.played": {"floor": 1.0}},
        {"content.played": {"categories": {"fame": 1.0}}},
        {"content.teleported": {"weight": 1.0}},
    ],
)
def test_invalid_overrides_are_rejected(override):
    with pytest.raises(ConfigurationError):
        CategoryWeightTable.default().with_overrides(override)


def test_weights_file_is_loaded(tmp_path):
    path = tmp_path / "weights.json"
    path.write_text(json.dumps({"social.liked": {"weight": 7.5}}), encoding="utf-8")
    table = CategoryWeightTable.from_config(MutationConfig(weights_file=path))
    assert table.category_weight("social.liked", "engagement") == 7.5


def test_broken_weights_file_is_a_configuration_error(tmp_path):
    path = tmp_path / "weights.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        CategoryWeightTable.from_config(MutationConfig(weights_file=path))


def test_user_influence_is_clamped():
    influence = UserInfluence.from_payload(
        PreferencesPayload.from_dict(
            {"cultural": 10, "spatial": -2, "learning_rate": 0.9, "context_multipliers": {"event": 5}}
        )
    )
    assert influence.cultural == 3.0
    assert influence.spatial == 0.0
    assert influence.learning_rate == 0.5
    assert influence.context_multipliers == {"event": 3.0}


def test_effective_weights_combine_user_and_context():
    table = CategoryWeightTable.default()
    influence = table.influence("event.attended")
    user = UserInfluence(cultural=0.5, context_multipliers={"event": 2.0})
    weights = effective_domain_weights(influence, user, "event")
    assert weights["cultural"] == pytest.approx(0.85)
    assert weights["spatial"] == 1.0
    assert effective_domain_weights(influence, user, None)["cultural"] == pytest.approx(0.425)
