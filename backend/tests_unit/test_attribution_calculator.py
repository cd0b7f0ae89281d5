"""
Attribution Calculator Tests (Unit)
===================================

WHAT: Unit tests for the pure credit-allocation function.
WHY: Revenue must be conserved to the cent and models must be deterministic;
     a regression here silently corrupts every report built on the results.

NOTE:
These tests live outside `backend/attribution_engine/tests/` to avoid loading
the integration-test `conftest.py`, which configures a database.

REFERENCES:
- backend/attribution_engine/services/attribution_calculator.py
"""

import random
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from attribution_engine.config import AttributionConfig
from attribution_engine.exceptions import AllocationInvariantError
from attribution_engine.models import AttributionModelEnum
from attribution_engine.services import attribution_calculator
from attribution_engine.services.attribution_calculator import compute, eligible_touchpoints, result_for

CONVERSION_AT = datetime(2025, 3, 10, 12, 0, 0)


def _tp(tp_id, hours_before, channel="meta"):
    return SimpleNamespace(id=tp_id, occurred_at=CONVERSION_AT - timedelta(hours=hours_before), channel=channel)


def _conversion(revenue_cents=10000):
    return SimpleNamespace(occurred_at=CONVERSION_AT, revenue_cents=revenue_cents)


def _cents(results, model):
    return [a.revenue_cents for a in result_for(results, model).allocations]


@pytest.fixture
def config():
    return AttributionConfig()


@pytest.fixture
def journey():
    """meta (10 days) -> google (5 days) -> direct (1 day) before a $100 order."""
    return [
        _tp("tp-a", 24 * 10, "meta"),
        _tp("tp-b", 24 * 5, "google"),
        _tp("tp-c", 24 * 1, "direct"),
    ]


class TestThreeTouchpointScenario:
    """WHAT: The $100 three-touchpoint journey across every model."""

    def test_first_and_last_touch(self, journey, config):
        results = compute(journey, _conversion(), config)

        first = result_for(results, AttributionModelEnum.first_touch).allocations
        assert [(a.channel, a.revenue_cents, a.credit_fraction) for a in first] == [("meta", 10000, 1.0)]

        last = result_for(results, AttributionModelEnum.last_touch).allocations
        assert [(a.channel, a.revenue_cents) for a in last] == [("direct", 10000)]

    def test_linear_gives_leftover_cent_to_earliest(self, journey, config):
        results = compute(journey, _conversion(), config)
        assert _cents(results, AttributionModelEnum.linear) == [3334, 3333, 3333]

    def test_position_based_40_20_40(self, journey, config):
        results = compute(journey, _conversion(), config)
        assert _cents(results, AttributionModelEnum.position_based) == [4000, 2000, 4000]

    def test_time_decay_increases_with_recency(self, journey, config):
        results = compute(journey, _conversion(), config)
        credits = [a.credit_fraction for a in result_for(results, AttributionModelEnum.time_decay).allocations]
        assert credits[0] < credits[1] < credits[2]
        assert sum(credits) == pytest.approx(1.0, abs=1e-9)

    def test_time_decay_halves_per_half_life(self, config):
        touchpoints = [_tp("old", 24 * 8), _tp("new", 24 * 1)]
        results = compute(touchpoints, _conversion(), config)
        old, new = result_for(results, AttributionModelEnum.time_decay).allocations
        assert new.credit_fraction == pytest.approx(2 * old.credit_fraction)

    def test_last_non_direct_skips_direct(self, journey, config):
        results = compute(journey, _conversion(), config)
        allocations = result_for(results, AttributionModelEnum.last_non_direct).allocations
        assert [(a.channel, a.revenue_cents) for a in allocations] == [("google", 10000)]

    def test_all_core_models_present_in_fixed_order(self, journey, config):
        results = compute(journey, _conversion(), config)
        assert [r.model for r in results] == list(attribution_calculator.CORE_MODELS)
        assert all(r.attribution_window == "30d" for r in results)
        assert all(r.total_touchpoints == 3 for r in results)


class TestConservation:
    """WHAT: Allocated cents always add up to the conversion revenue."""

    @pytest.mark.parametrize("revenue_cents", [0, 1, 2, 99, 10001, 123457])
    def test_every_model_conserves_revenue(self, revenue_cents, config):
        touchpoints = [_tp(f"tp-{i}", 3 * i + 1, random.Random(i).choice(["meta", "google", "direct"])) for i in range(7)]
        results = compute(touchpoints, _conversion(revenue_cents), config)
        for result in results:
            assert result.revenue_cents == revenue_cents, result.model
            assert sum(a.credit_fraction for a in result.allocations) == pytest.approx(1.0, abs=1e-9)

    def test_position_based_two_touchpoints_split_evenly(self, config):
        touchpoints = [_tp("a", 5), _tp("b", 2)]
        results = compute(touchpoints, _conversion(101), config)
        # Equal credit: the extra cent goes to the earlier touchpoint
        assert _cents(results, AttributionModelEnum.position_based) == [51, 50]

    def test_single_touchpoint_gets_everything(self, config):
        results = compute([_tp("only", 2)], _conversion(777), config)
        for result in results:
            assert [(a.touchpoint_id, a.revenue_cents) for a in result.allocations] == [("only", 777)]

    def test_invariant_violation_raises(self, journey, config, monkeypatch):
        from fractions import Fraction

        monkeypatch.setattr(attribution_calculator, "_linear", lambda ordered: [(0, Fraction(1, 2))])
        with pytest.raises(AllocationInvariantError) as excinfo:
            compute(journey, _conversion(), config)
        assert excinfo.value.model == "linear"


class TestWindow:
    """WHAT: Lookback window boundaries and ordering."""

    def test_exactly_lookback_old_is_included(self, config):
        edge = SimpleNamespace(id="edge", occurred_at=CONVERSION_AT - timedelta(days=30), channel="meta")
        assert [tp.id for tp in eligible_touchpoints([edge], CONVERSION_AT, config)] == ["edge"]

    def test_one_millisecond_older_is_excluded(self, config):
        too_old = SimpleNamespace(
            id="old",
            occurred_at=CONVERSION_AT - timedelta(days=30, milliseconds=1),
            channel="meta",
        )
        assert eligible_touchpoints([too_old], CONVERSION_AT, config) == []

    def test_touchpoint_at_conversion_time_is_excluded(self, config):
        same_time = SimpleNamespace(id="same", occurred_at=CONVERSION_AT, channel="meta")
        later = SimpleNamespace(id="later", occurred_at=CONVERSION_AT + timedelta(seconds=1), channel="meta")
        assert compute([same_time, later], _conversion(), config) == []

    def test_lookback_is_clamped_to_90_days(self):
        assert AttributionConfig(lookback_days=365).lookback_days == 90
        assert AttributionConfig(lookback_days=0).lookback_days == 1

    def test_equal_timestamps_ordered_by_id(self, config):
        same = CONVERSION_AT - timedelta(hours=1)
        touchpoints = [
            SimpleNamespace(id="b", occurred_at=same, channel="google"),
            SimpleNamespace(id="a", occurred_at=same, channel="meta"),
        ]
        results = compute(touchpoints, _conversion(), config)
        first = result_for(results, AttributionModelEnum.first_touch).allocations[0]
        assert first.touchpoint_id == "a"


class TestDeterminism:
    def test_input_order_does_not_matter(self, journey, config):
        shuffled = list(journey)
        random.Random(7).shuffle(shuffled)
        assert compute(journey, _conversion(), config) == compute(shuffled, _conversion(), config)

    def test_all_direct_falls_back_to_last_touch(self, config):
        touchpoints = [_tp("a", 5, "direct"), _tp("b", 2, "direct")]
        results = compute(touchpoints, _conversion(), config)
        allocation = result_for(results, AttributionModelEnum.last_non_direct).allocations[0]
        assert allocation.touchpoint_id == "b"


class TestDataDriven:
    """WHAT: External weight overrides enable the data_driven model."""

    def test_omitted_without_overrides(self, journey, config):
        results = compute(journey, _conversion(), config)
        assert result_for(results, AttributionModelEnum.data_driven) is None

    def test_weights_are_normalized(self, journey, config):
        results = compute(journey, _conversion(), config, weight_overrides={"tp-a": 3, "tp-c": 1})
        allocations = result_for(results, AttributionModelEnum.data_driven).allocations
        assert [(a.touchpoint_id, a.revenue_cents) for a in allocations] == [("tp-a", 7500), ("tp-c", 2500)]

    def test_all_zero_weights_omit_model(self, journey, config):
        results = compute(journey, _conversion(), config, weight_overrides={"tp-a": 0, "unknown": 5})
        assert result_for(results, AttributionModelEnum.data_driven) is None

    def test_negative_weight_rejected(self, journey, config):
        with pytest.raises(ValueError):
            compute(journey, _conversion(), config, weight_overrides={"tp-a": -1})
