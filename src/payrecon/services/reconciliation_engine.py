from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum

import httpx

from payrecon.adapters.commerce import CommerceGateway
from payrecon.domain.errors import (
    ConfigurationError,
    GatewayError,
    RaceLost,
    UnknownPayment,
    UpstreamPermanent,
    UpstreamTransient,
    to_reconciliation_error,
)
from payrecon.domain.models import (
    Observation,
    ObservationSource,
    PaymentRecord,
    PaymentStatus,
    SideEffectTag,
)
from payrecon.domain.transitions import (
    TransitionDecision,
    TransitionKind,
    decide_transition,
    is_forward_transition,
)
from payrecon.logging_context import with_logging_context
from payrecon.observability import get_instrumentation
from payrecon.services.key_locks import KeyedLockRegistry
from payrecon.services.side_effects import CommerceActionExecutor, SideEffectOutcome
from payrecon.services.state_store import ORPHAN_OUTCOME, PaymentRecordStore

logger = logging.getLogger(__name__)

CommerceGatewayFactory = Callable[[str], CommerceGateway | None]

_CAS_ATTEMPTS = 5


class ApplyReason(StrEnum):
    NO_MAPPING = ORPHAN_OUTCOME
    ALREADY_APPLIED = "already_applied"
    TERMINAL_IGNORED = "terminal_ignored"
    REGRESSION_IGNORED = "regression_ignored"
    UNKNOWN_EVENT = "unknown_event"
    UNCHANGED = "unchanged"
    IN_PROGRESS = "in_progress"
    SHOP_NOT_FOUND = "shop_not_found"
    SIDE_EFFECT_FAILED = "side_effect_failed"
    ORDER_ALREADY_SETTLED = "order_already_settled"
    PROCESSING_ERROR = "processing_error"


@dataclass(frozen=True)
class ApplyOutcome:
    processed: bool
    reason: ApplyReason | None = None
    status: PaymentStatus | None = None
    tag: str | None = None

    @property
    def audit_outcome(self) -> str:
        if self.reason is not None:
            return self.reason.value
        return "applied"


class ReconciliationEngine:
    """Merges push and poll observations into one canonical status per payment.

    Each observation is decided under a per-payment lock. The commerce call for a
    side-effect tag runs with the lock released while an in-flight claim keeps
    concurrent duplicates out. A duplicate push is refused as transient while the
    claim is held so the sender redelivers it; the result is committed with a
    version check so a tag already recorded by another writer is never applied twice.
    """

    def __init__(
        self,
        store: PaymentRecordStore,
        commerce_gateway_factory: CommerceGatewayFactory,
        *,
        executor: CommerceActionExecutor | None = None,
        locks: KeyedLockRegistry | None = None,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.commerce_gateway_factory = commerce_gateway_factory
        self.executor = executor or CommerceActionExecutor()
        self.locks = locks or KeyedLockRegistry()
        self.now_fn = now_fn or (lambda: datetime.now(UTC))

    def apply(self, observation: Observation, now: datetime | None = None) -> ApplyOutcome:
        resolved_now = now or self.now_fn()
        with with_logging_context(
            payment_id=observation.payment_id,
            source=observation.source.value,
            event=observation.event or None,
        ):
            try:
                outcome = self._apply(observation, resolved_now)
            except UpstreamTransient:
                self._audit(observation, ApplyReason.PROCESSING_ERROR.value)
                get_instrumentation().counter(
                    "observations_total",
                    1,
                    attrs={"source": observation.source.value, "outcome": "transient_failure"},
                )
                raise
            # only pushes feed the orphan ledger; polls for unknown ids are rejected upstream
            orphan_poll = (
                outcome.reason is ApplyReason.NO_MAPPING
                and observation.source is ObservationSource.POLL
            )
            if not orphan_poll:
                self._audit(observation, outcome.audit_outcome)
            get_instrumentation().counter(
                "observations_total",
                1,
                attrs={"source": observation.source.value, "outcome": outcome.audit_outcome},
            )
            return outcome

    def _audit(self, observation: Observation, outcome: str, detail: str = "") -> None:
        self.store.append_observation(observation, outcome=outcome, detail=detail)

    def _apply(self, observation: Observation, now: datetime) -> ApplyOutcome:
        payment_id = observation.payment_id
        with self.locks.hold(payment_id):
            record = self.store.get(payment_id)
            if record is None:
                logger.warning(
                    "observation_without_local_record",
                    extra={"extra": {"observed_status": observation.raw_status}},
                )
                return ApplyOutcome(processed=False, reason=ApplyReason.NO_MAPPING)

            decision = decide_transition(record, observation, now=now)
            ignored = self._ignored_outcome(record, observation, decision)
            if ignored is not None:
                return ignored

            tag, key = decision.side_effect, decision.side_effect_key
            if tag is None or key is None or record.has_settled(key):
                stored = self._commit(observation, decision)
                if decision.status_changed:
                    logger.info(
                        "payment_status_updated",
                        extra={
                            "extra": {
                                "previous_status": decision.previous_status.value,
                                "status": stored.canonical_status.value,
                                "transition": decision.kind.value,
                            }
                        },
                    )
                    return ApplyOutcome(processed=True, status=stored.canonical_status)
                reason = ApplyReason.UNCHANGED if key is None else ApplyReason.ALREADY_APPLIED
                return ApplyOutcome(
                    processed=False, reason=reason, status=stored.canonical_status, tag=key
                )

            if not self.locks.try_claim(payment_id, key):
                if observation.source is ObservationSource.PUSH:
                    # a push is only acknowledged once its side effect is committed
                    logger.warning(
                        "side_effect_in_progress_push_deferred", extra={"extra": {"tag": key}}
                    )
                    raise UpstreamTransient(f"side effect {key} already in flight for {payment_id}")
                logger.info("side_effect_in_progress", extra={"extra": {"tag": key}})
                return ApplyOutcome(
                    processed=False,
                    reason=ApplyReason.IN_PROGRESS,
                    status=record.canonical_status,
                    tag=key,
                )

        try:
            # the claim holder that finished last may have committed after our read
            fresh = self.store.get(payment_id)
            if fresh is None or fresh.has_settled(key):
                return ApplyOutcome(
                    processed=False,
                    reason=ApplyReason.ALREADY_APPLIED,
                    status=(fresh or record).canonical_status,
                    tag=key,
                )
            return self._run_side_effect(fresh, observation, decision, tag, key)
        finally:
            self.locks.release_claim(payment_id, key)

    def _ignored_outcome(
        self, record: PaymentRecord, observation: Observation, decision: TransitionDecision
    ) -> ApplyOutcome | None:
        match decision.kind:
            case TransitionKind.TERMINAL_IGNORED:
                repeated = observation.status == record.canonical_status
                if not repeated:
                    logger.info(
                        "terminal_status_kept",
                        extra={
                            "extra": {
                                "status": record.canonical_status.value,
                                "observed_status": observation.raw_status
                                or (observation.status.value if observation.status else ""),
                            }
                        },
                    )
                return ApplyOutcome(
                    processed=False,
                    reason=ApplyReason.ALREADY_APPLIED if repeated else ApplyReason.TERMINAL_IGNORED,
                    status=record.canonical_status,
                )
            case TransitionKind.UNKNOWN_STATUS:
                logger.warning(
                    "unknown_event_ignored",
                    extra={
                        "extra": {"event": observation.event, "observed_status": observation.raw_status}
                    },
                )
                return ApplyOutcome(
                    processed=False, reason=ApplyReason.UNKNOWN_EVENT, status=record.canonical_status
                )
            case TransitionKind.REGRESSION_IGNORED:
                logger.info(
                    "status_regression_ignored",
                    extra={
                        "extra": {
                            "status": record.canonical_status.value,
                            "observed_status": observation.status.value if observation.status else "",
                        }
                    },
                )
                return ApplyOutcome(
                    processed=False,
                    reason=ApplyReason.REGRESSION_IGNORED,
                    status=record.canonical_status,
                )
            case _:
                return None

    def _run_side_effect(
        self,
        record: PaymentRecord,
        observation: Observation,
        decision: TransitionDecision,
        tag: SideEffectTag,
        key: str,
    ) -> ApplyOutcome:
        with with_logging_context(shop_domain=record.shop_domain):
            gateway = self.commerce_gateway_factory(record.shop_domain)
            if gateway is None:
                logger.error("shop_credentials_missing", extra={"extra": {"tag": key}})
                try:
                    stored = self._commit(observation, decision, failure=(key, "shop_not_found"))
                except RaceLost:
                    return ApplyOutcome(
                        processed=False,
                        reason=ApplyReason.ALREADY_APPLIED,
                        status=decision.target_status,
                        tag=key,
                    )
                return ApplyOutcome(
                    processed=False,
                    reason=ApplyReason.SHOP_NOT_FOUND,
                    status=stored.canonical_status,
                    tag=key,
                )
            try:
                report = self.executor.execute(
                    gateway,
                    record,
                    tag,
                    target_status=decision.target_status,
                    observation=observation if decision.adopts_observation else None,
                )
            except (GatewayError, httpx.HTTPError, ConfigurationError) as exc:
                return self._handle_side_effect_failure(observation, decision, key, exc)
            finally:
                gateway.close()

        try:
            stored = self._commit(observation, decision, applied_key=key)
        except RaceLost:
            logger.warning("side_effect_commit_race_lost", extra={"extra": {"tag": key}})
            return ApplyOutcome(
                processed=False,
                reason=ApplyReason.ALREADY_APPLIED,
                status=decision.target_status,
                tag=key,
            )
        logger.info(
            "side_effect_applied",
            extra={
                "extra": {
                    "tag": key,
                    "status": stored.canonical_status.value,
                    "outcome": report.outcome.value,
                    "secondary_failures": list(report.secondary_failures),
                }
            },
        )
        if report.outcome is not SideEffectOutcome.EXECUTED:
            return ApplyOutcome(
                processed=True,
                reason=ApplyReason.ORDER_ALREADY_SETTLED,
                status=stored.canonical_status,
                tag=key,
            )
        return ApplyOutcome(processed=True, status=stored.canonical_status, tag=key)

    def _handle_side_effect_failure(
        self,
        observation: Observation,
        decision: TransitionDecision,
        key: str,
        exc: Exception,
    ) -> ApplyOutcome:
        error = to_reconciliation_error(exc, action=f"side effect {key}")
        category = "permanent" if isinstance(error, UpstreamPermanent) else "transient"
        get_instrumentation().counter(
            "side_effects_total",
            1,
            attrs={"tag": key.split(":", 1)[0], "outcome": f"{category}_failure"},
        )
        if isinstance(error, UpstreamPermanent):
            logger.error(
                "side_effect_failed_permanently",
                extra={"extra": {"tag": key, "error_type": type(exc).__name__, "error": str(exc)}},
            )
            try:
                stored = self._commit(observation, decision, failure=(key, str(error)))
            except RaceLost:
                return ApplyOutcome(
                    processed=False,
                    reason=ApplyReason.ALREADY_APPLIED,
                    status=decision.target_status,
                    tag=key,
                )
            return ApplyOutcome(
                processed=False,
                reason=ApplyReason.SIDE_EFFECT_FAILED,
                status=stored.canonical_status,
                tag=key,
            )
        logger.warning(
            "side_effect_failed_transiently",
            extra={"extra": {"tag": key, "error_type": type(exc).__name__, "error": str(exc)}},
        )
        raise error from exc

    def _commit(
        self,
        observation: Observation,
        decision: TransitionDecision,
        *,
        applied_key: str | None = None,
        failure: tuple[str, str] | None = None,
    ) -> PaymentRecord:
        payment_id = observation.payment_id
        for _ in range(_CAS_ATTEMPTS):
            current = self.store.get(payment_id)
            if current is None:
                raise UnknownPayment(payment_id)
            settle_key = applied_key or (failure[0] if failure else None)
            if settle_key is not None and current.has_settled(settle_key):
                raise RaceLost(f"{settle_key} already settled for {payment_id}")

            target = decision.target_status
            if not is_forward_transition(current.canonical_status, target):
                target = current.canonical_status
            update: dict[str, object] = {"canonical_status": target}
            if decision.adopts_observation or decision.kind is TransitionKind.FORCED_EXPIRY:
                update["last_observed_at"] = observation.observed_at
            if decision.adopts_observation:
                if observation.paid_amount > 0:
                    update["paid_amount"] = observation.paid_amount
                if observation.tx_hash:
                    update["tx_hash"] = observation.tx_hash
            if applied_key is not None:
                update["side_effects_applied"] = {*current.side_effects_applied, applied_key}
            if failure is not None:
                update["side_effect_failures"] = {**current.side_effect_failures, failure[0]: failure[1]}

            stored = self.store.compare_and_swap(
                current.model_copy(update=update), expected_version=current.version
            )
            if stored is not None:
                return stored
            logger.info("payment_record_cas_conflict", extra={"extra": {"version": current.version}})
        raise UpstreamTransient(f"could not commit payment {payment_id} after concurrent updates")

