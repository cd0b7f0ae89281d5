"""
Attribution Calculator
======================

WHAT:
    Pure credit-allocation functions. Given a conversion and its candidate
    touchpoints, returns one `ModelAttribution` per model:
    - first_touch: 100% to the earliest touchpoint
    - last_touch: 100% to the latest touchpoint
    - linear: 1/N each
    - time_decay: weight 2^(-age/half_life), normalized
    - position_based: 40/20/40 (first / middle split / last)
    - last_non_direct: 100% to the latest non-direct touchpoint
    - data_driven: externally supplied weights, normalized (only when given)

WHY:
    Results are persisted and compared across recomputations, so the same
    inputs must always produce byte-identical output. No I/O, no clock, no
    global config: everything arrives as arguments.

HOW:
    Credits are exact fractions. Revenue is split in integer cents by flooring
    each share; the leftover cents go to the allocation with the largest
    credit (ties: earliest touchpoint, then lowest id). Every result is checked
    before it is returned: credits sum to 1 and cents sum to the revenue.

REFERENCES:
    - attribution_engine/config.py (AttributionConfig)
    - attribution_engine/services/conversion_pipeline.py (caller)
"""

import math
from dataclasses import dataclass
from datetime import datetime
from fractions import Fraction
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from attribution_engine.config import AttributionConfig
from attribution_engine.exceptions import AllocationInvariantError
from attribution_engine.models import AttributionModelEnum
from attribution_engine.utils.time import as_naive_utc


CREDIT_TOLERANCE = 1e-9
DIRECT_CHANNEL = "direct"

# Output order of compute()
CORE_MODELS = (
    AttributionModelEnum.first_touch,
    AttributionModelEnum.last_touch,
    AttributionModelEnum.linear,
    AttributionModelEnum.time_decay,
    AttributionModelEnum.position_based,
    AttributionModelEnum.last_non_direct,
)


@dataclass(frozen=True)
class Allocation:
    """Credit for one touchpoint under one model."""

    touchpoint_id: str
    channel: str
    credit_fraction: float
    revenue_cents: int
    position: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "touchpoint_id": self.touchpoint_id,
            "channel": self.channel,
            "credit_fraction": self.credit_fraction,
            "revenue_cents": self.revenue_cents,
            "position": self.position,
        }


@dataclass(frozen=True)
class ModelAttribution:
    """One model's allocations for one conversion."""

    model: AttributionModelEnum
    allocations: Tuple[Allocation, ...]
    attribution_window: str
    total_touchpoints: int

    @property
    def revenue_cents(self) -> int:
        return sum(a.revenue_cents for a in self.allocations)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model": self.model.value,
            "attribution_window": self.attribution_window,
            "total_touchpoints": self.total_touchpoints,
            "allocations": [a.to_dict() for a in self.allocations],
        }


def _sort_key(touchpoint) -> Tuple[datetime, str]:
    return as_naive_utc(touchpoint.occurred_at), str(touchpoint.id)


def eligible_touchpoints(touchpoints: Sequence[Any], conversion_at: datetime, config: AttributionConfig) -> List[Any]:
    """Touchpoints inside [conversion_at - lookback, conversion_at), ordered by (occurred_at, id)."""
    conversion_at = as_naive_utc(conversion_at)
    window_start = conversion_at - config.lookback
    eligible = [
        tp for tp in touchpoints
        if window_start <= as_naive_utc(tp.occurred_at) < conversion_at
    ]
    return sorted(eligible, key=_sort_key)


# =============================================================================
# CREDIT RULES
# =============================================================================
# Each rule returns (index into ordered touchpoints, credit) pairs.

def _first_touch(ordered: Sequence[Any]) -> List[Tuple[int, Fraction]]:
    return [(0, Fraction(1))]


def _last_touch(ordered: Sequence[Any]) -> List[Tuple[int, Fraction]]:
    return [(len(ordered) - 1, Fraction(1))]


def _linear(ordered: Sequence[Any]) -> List[Tuple[int, Fraction]]:
    n = len(ordered)
    return [(i, Fraction(1, n)) for i in range(n)]


def _time_decay(ordered: Sequence[Any], conversion_at: datetime, config: AttributionConfig) -> List[Tuple[int, Fraction]]:
    half_life = config.half_life.total_seconds()
    ages = [(conversion_at - as_naive_utc(tp.occurred_at)).total_seconds() for tp in ordered]
    # Relative to the freshest touchpoint: same ratios, no underflow to 0
    youngest = min(ages)
    weights = [Fraction(2.0 ** (-(age - youngest) / half_life)) for age in ages]
    total = sum(weights)
    return [(i, w / total) for i, w in enumerate(weights)]


def _position_based(ordered: Sequence[Any], config: AttributionConfig) -> List[Tuple[int, Fraction]]:
    n = len(ordered)
    if n == 1:
        return [(0, Fraction(1))]
    if n == 2:
        return [(0, Fraction(1, 2)), (1, Fraction(1, 2))]

    first = Fraction(str(config.position_first))
    last = Fraction(str(config.position_last))
    middle_each = Fraction(str(config.position_middle)) / (n - 2)
    return [(0, first)] + [(i, middle_each) for i in range(1, n - 1)] + [(n - 1, last)]


def _last_non_direct(ordered: Sequence[Any]) -> List[Tuple[int, Fraction]]:
    for i in range(len(ordered) - 1, -1, -1):
        if (ordered[i].channel or DIRECT_CHANNEL).lower() != DIRECT_CHANNEL:
            return [(i, Fraction(1))]
    # Only direct traffic: behave like last touch
    return _last_touch(ordered)


def _data_driven(ordered: Sequence[Any], weight_overrides: Mapping[str, float]) -> List[Tuple[int, Fraction]]:
    weights = []
    for i, tp in enumerate(ordered):
        raw = weight_overrides.get(str(tp.id), 0)
        weight = Fraction(str(raw))
        if weight < 0:
            raise ValueError(f"weight override for touchpoint {tp.id} is negative: {raw}")
        if weight > 0:
            weights.append((i, weight))
    total = sum(w for _, w in weights)
    if total == 0:
        return []
    return [(i, w / total) for i, w in weights]


# =============================================================================
# REVENUE SPLIT
# =============================================================================

def _split_revenue(
    model: AttributionModelEnum,
    ordered: Sequence[Any],
    credits: List[Tuple[int, Fraction]],
    revenue_cents: int,
) -> Tuple[Allocation, ...]:
    shares = [math.floor(revenue_cents * credit) for _, credit in credits]
    remainder = revenue_cents - sum(shares)

    if remainder and credits:
        # Largest credit wins the leftover cents; ties go to the earliest touchpoint
        winner = min(
            range(len(credits)),
            key=lambda k: (-credits[k][1],) + _sort_key(ordered[credits[k][0]]),
        )
        shares[winner] += remainder

    allocations = tuple(
        Allocation(
            touchpoint_id=str(ordered[index].id),
            channel=ordered[index].channel or DIRECT_CHANNEL,
            credit_fraction=float(credit),
            revenue_cents=int(shares[k]),
            position=index,
        )
        for k, (index, credit) in enumerate(credits)
    )
    _check_invariants(model, allocations, credits, revenue_cents)
    return allocations


def _check_invariants(
    model: AttributionModelEnum,
    allocations: Sequence[Allocation],
    credits: List[Tuple[int, Fraction]],
    revenue_cents: int,
) -> None:
    exact_total = sum(credit for _, credit in credits)
    float_total = math.fsum(a.credit_fraction for a in allocations)
    if exact_total != 1 or abs(float_total - 1.0) > CREDIT_TOLERANCE:
        raise AllocationInvariantError(model.value, f"credits sum to {float_total!r}, expected 1")
    if any(not 0 <= credit <= 1 for _, credit in credits):
        raise AllocationInvariantError(model.value, "credit outside [0, 1]")
    allocated = sum(a.revenue_cents for a in allocations)
    if allocated != revenue_cents:
        raise AllocationInvariantError(
            model.value,
            f"allocated {allocated} cents, conversion revenue is {revenue_cents}",
        )


# =============================================================================
# PUBLIC API
# =============================================================================

def compute(
    touchpoints: Sequence[Any],
    conversion: Any,
    config: AttributionConfig,
    weight_overrides: Optional[Mapping[str, float]] = None,
) -> List[ModelAttribution]:
    """Compute every model for one conversion.

    Parameters:
        touchpoints: Candidate touchpoints (any order; filtered to the window here).
            Needs `id`, `occurred_at`, `channel`.
        conversion: Needs `occurred_at` and `revenue_cents`.
        config: Tenant attribution config (window, half-life, position weights).
        weight_overrides: Optional touchpoint_id -> weight from an external
            model; enables `data_driven`.

    Returns:
        One ModelAttribution per model, in a fixed order. Empty list when no
        touchpoint is eligible (the conversion is unattributed).

    Raises:
        AllocationInvariantError: credits or cents do not add up.
    """
    conversion_at = as_naive_utc(conversion.occurred_at)
    revenue_cents = int(conversion.revenue_cents)
    ordered = eligible_touchpoints(touchpoints, conversion_at, config)
    if not ordered:
        return []

    rules = {
        AttributionModelEnum.first_touch: lambda: _first_touch(ordered),
        AttributionModelEnum.last_touch: lambda: _last_touch(ordered),
        AttributionModelEnum.linear: lambda: _linear(ordered),
        AttributionModelEnum.time_decay: lambda: _time_decay(ordered, conversion_at, config),
        AttributionModelEnum.position_based: lambda: _position_based(ordered, config),
        AttributionModelEnum.last_non_direct: lambda: _last_non_direct(ordered),
    }

    results = []
    for model in CORE_MODELS:
        credits = rules[model]()
        results.append(ModelAttribution(
            model=model,
            allocations=_split_revenue(model, ordered, credits, revenue_cents),
            attribution_window=config.window_label,
            total_touchpoints=len(ordered),
        ))

    if weight_overrides:
        credits = _data_driven(ordered, weight_overrides)
        if credits:
            results.append(ModelAttribution(
                model=AttributionModelEnum.data_driven,
                allocations=_split_revenue(AttributionModelEnum.data_driven, ordered, credits, revenue_cents),
                attribution_window=config.window_label,
                total_touchpoints=len(ordered),
            ))

    return results


def result_for(results: Sequence[ModelAttribution], model: AttributionModelEnum) -> Optional[ModelAttribution]:
    for result in results:
        if result.model == model:
            return result
    return None
