"""
Conversion status transitions.

WHAT:
    Single table of legal conversion status changes, checked by the store
    before any status write.

STATE TRANSITIONS:
    pending        → claim              → processing
    processing     → touchpoints fresh  → pending (ingestion lag)
    processing     → no touchpoints     → unattributed
    processing     → forwarded          → attributed
    processing     → forwarding failed  → forward_failed
    unattributed   → sweeper re-drive   → processing
    forward_failed → sweeper re-drive   → processing
    attributed     → recalculation      → processing
    pending / unattributed / forward_failed → attempts exhausted → quarantined
    quarantined is terminal

REFERENCES:
    - attribution_engine/store.py (claim_conversion, release_conversion)
    - attribution_engine/services/conversion_pipeline.py
"""

from typing import Dict, FrozenSet, Union

from attribution_engine.exceptions import InvalidTransitionError
from attribution_engine.models import ConversionStatusEnum as S


ALLOWED_TRANSITIONS: Dict[S, FrozenSet[S]] = {
    S.pending: frozenset({S.processing, S.quarantined}),
    S.processing: frozenset({S.pending, S.attributed, S.unattributed, S.forward_failed}),
    S.unattributed: frozenset({S.processing, S.quarantined}),
    S.forward_failed: frozenset({S.processing, S.quarantined}),
    S.attributed: frozenset({S.processing}),
    S.quarantined: frozenset(),
}

# Statuses a normal trigger (new order / manual re-run) may claim from
PROCESSABLE_STATUSES = (S.pending, S.unattributed, S.forward_failed)

TERMINAL_STATUSES = (S.attributed, S.quarantined)


def can_transition(current: Union[str, S], target: Union[str, S]) -> bool:
    return S(target) in ALLOWED_TRANSITIONS[S(current)]


def ensure_transition(current: Union[str, S], target: Union[str, S]) -> None:
    """Raise InvalidTransitionError unless current -> target is allowed."""
    if not can_transition(current, target):
        raise InvalidTransitionError(S(current).value, S(target).value)
