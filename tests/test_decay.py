from datetime import datetime, timedelta

import pytest

from affinity_ledger.errors import ConfigurationError
from affinity_ledger.services.decay import MIN_DECAY, decay_factor, recency_decay

T0 = datetime(2025, 1, 1)


def test_decay_is_one_without_elapsed_time():
    assert decay_factor(T0, T0, 90) == 1.0


def test_decay_halves_after_one_half_life():
    assert decay_factor(T0, T0 + timedelta(days=90), 90) == pytest.approx(0.5)
    assert decay_factor(T0, T0 + timedelta(days=180), 90) == pytest.approx(0.25)


def test_decay_is_strictly_decreasing_and_positive():
    values = [decay_factor(T0, T0 + timedelta(days=days), 30) for days in (1, 10, 100, 1000)]
    assert values == sorted(values, reverse=True)
    assert len(set(values)) == len(values)
    assert decay_factor(T0, T0 + timedelta(days=100000), 1) == MIN_DECAY


def test_out_of_order_events_do_not_amplify():
    assert decay_factor(T0, T0 - timedelta(days=5), 30) == 1.0


@pytest.mark.parametrize("half_life", [0, -1, float("nan"), float("inf"), "30"])
def test_invalid_half_life_is_a_configuration_error(half_life):
    with pytest.raises(ConfigurationError):
        decay_factor(T0, T0 + timedelta(days=1), half_life)


def test_recency_decay_respects_floor():
    old = T0 - timedelta(days=365)
    assert recency_decay(old, T0, 7, floor=0.1) == pytest.approx(0.1)
    assert recency_decay(T0, T0, 7, floor=0.1) == 1.0
    with pytest.raises(ConfigurationError):
        recency_decay(T0, T0, 7, floor=1.0)
