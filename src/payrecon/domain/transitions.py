"""Pure transition policy for a single payment record.

The engine owns locking, persistence and side-effect execution; this module only
decides, given the current record, one observation and the clock, what the new
canonical status is and which side-effect key (if any) it implies.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

from payrecon.domain.models import (
    FINALITY_RANK,
    Observation,
    PaymentRecord,
    PaymentStatus,
    SideEffectTag,
    is_terminal,
    partial_tag_key,
)


class TransitionKind(StrEnum):
    ADOPTED = "adopted"
    UNCHANGED = "unchanged"
    FORCED_EXPIRY = "forced_expiry"
    REGRESSION_IGNORED = "regression_ignored"
    TERMINAL_IGNORED = "terminal_ignored"
    UNKNOWN_STATUS = "unknown_status"


@dataclass(frozen=True)
class TransitionDecision:
    kind: TransitionKind
    previous_status: PaymentStatus
    target_status: PaymentStatus
    side_effect: SideEffectTag | None = None
    side_effect_key: str | None = None

    @property
    def status_changed(self) -> bool:
        return self.previous_status != self.target_status

    @property
    def adopts_observation(self) -> bool:
        return self.kind in {TransitionKind.ADOPTED, TransitionKind.UNCHANGED}


def is_forward_transition(current: PaymentStatus, new: PaymentStatus) -> bool:
    """True when ``new`` is not less final than ``current`` and ``current`` is not terminal."""
    if is_terminal(current):
        return new == current
    return FINALITY_RANK[new] >= FINALITY_RANK[current]


def side_effect_for(
    status: PaymentStatus, observation: Observation | None = None, record: PaymentRecord | None = None
) -> tuple[SideEffectTag | None, str | None]:
    match status:
        case PaymentStatus.PAID | PaymentStatus.OVERPAID:
            return SideEffectTag.MARKED_PAID, SideEffectTag.MARKED_PAID.value
        case PaymentStatus.EXPIRED:
            return SideEffectTag.ORDER_CANCELLED_EXPIRED, SideEffectTag.ORDER_CANCELLED_EXPIRED.value
        case PaymentStatus.CANCELLED:
            return SideEffectTag.ORDER_CANCELLED_MANUAL, SideEffectTag.ORDER_CANCELLED_MANUAL.value
        case PaymentStatus.PARTIAL:
            if observation is not None:
                amount = observation.paid_amount
            elif record is not None:
                amount = record.paid_amount
            else:
                return SideEffectTag.PARTIAL_NOTED, None
            return SideEffectTag.PARTIAL_NOTED, partial_tag_key(amount)
        case PaymentStatus.PENDING | PaymentStatus.CONFIRMING:
            return None, None


def decide_transition(
    record: PaymentRecord, observation: Observation, *, now: datetime
) -> TransitionDecision:
    current = record.canonical_status

    if record.is_terminal:
        return TransitionDecision(
            kind=TransitionKind.TERMINAL_IGNORED,
            previous_status=current,
            target_status=current,
        )

    if record.is_past_deadline(now, observation.observed_at):
        tag, key = side_effect_for(PaymentStatus.EXPIRED)
        return TransitionDecision(
            kind=TransitionKind.FORCED_EXPIRY,
            previous_status=current,
            target_status=PaymentStatus.EXPIRED,
            side_effect=tag,
            side_effect_key=key,
        )

    observed = observation.status
    if observed is None:
        return TransitionDecision(
            kind=TransitionKind.UNKNOWN_STATUS,
            previous_status=current,
            target_status=current,
        )

    if not is_forward_transition(current, observed):
        return TransitionDecision(
            kind=TransitionKind.REGRESSION_IGNORED,
            previous_status=current,
            target_status=current,
        )

    tag, key = side_effect_for(observed, observation)
    return TransitionDecision(
        kind=TransitionKind.ADOPTED if observed != current else TransitionKind.UNCHANGED,
        previous_status=current,
        target_status=observed,
        side_effect=tag,
        side_effect_key=key,
    )
