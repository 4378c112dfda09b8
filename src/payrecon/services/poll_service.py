from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import httpx

from payrecon.adapters.monitoring import MonitoringGateway
from payrecon.domain.errors import (
    ConfigurationError,
    GatewayError,
    UnknownPayment,
    UpstreamTransient,
    ValidationFailure,
)
from payrecon.domain.events import observation_from_poll
from payrecon.domain.models import (
    Observation,
    ObservationSource,
    PaymentRecord,
    fmt_decimal,
    parse_decimal,
)
from payrecon.observability import get_instrumentation
from payrecon.services.reconciliation_engine import ReconciliationEngine
from payrecon.services.state_store import PaymentRecordStore

logger = logging.getLogger(__name__)

TX_HASH_RE = re.compile(r"^[a-fA-F0-9]{10,128}$")


@dataclass(frozen=True)
class StatusView:
    payment_id: str
    status: str
    paid_amount: str
    expected_amount: str
    tx_hash: str | None
    is_terminal: bool
    is_paid: bool
    transactions: list[dict[str, Any]] = field(default_factory=list)
    degraded: bool = False

    @classmethod
    def from_record(
        cls,
        record: PaymentRecord,
        *,
        payment: dict[str, Any] | None = None,
        degraded: bool = False,
    ) -> StatusView:
        live = payment or {}
        paid_amount = live.get("paid_amount")
        transactions = live.get("transactions")
        return cls(
            payment_id=record.payment_id,
            status=record.canonical_status.value,
            paid_amount=(
                fmt_decimal(parse_decimal(paid_amount))
                if paid_amount not in (None, "")
                else fmt_decimal(record.paid_amount)
            ),
            expected_amount=fmt_decimal(record.expected_amount),
            tx_hash=live.get("tx_hash") or record.tx_hash or None,
            # a degraded view never claims finality
            is_terminal=False if degraded else record.is_terminal,
            is_paid=False if degraded else record.is_paid,
            transactions=list(transactions) if isinstance(transactions, list) else [],
            degraded=degraded,
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "paid_amount": self.paid_amount,
            "expected_amount": self.expected_amount,
            "tx_hash": self.tx_hash,
            "transactions": self.transactions,
            "is_terminal": self.is_terminal,
            "is_paid": self.is_paid,
        }


class PollService:
    """Page-initiated status checks; each poll is one more observation for the engine."""

    def __init__(
        self,
        store: PaymentRecordStore,
        monitoring: MonitoringGateway,
        engine: ReconciliationEngine,
        *,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.monitoring = monitoring
        self.engine = engine
        self.now_fn = now_fn or (lambda: datetime.now(UTC))

    def _require_record(self, payment_id: str) -> PaymentRecord:
        record = self.store.get(payment_id)
        if record is None:
            raise UnknownPayment(payment_id)
        return record

    def _apply_quietly(self, observation: Observation, now: datetime) -> None:
        try:
            self.engine.apply(observation, now)
        except Exception:  # noqa: BLE001
            logger.exception(
                "poll_reconciliation_failed",
                extra={"extra": {"payment_id": observation.payment_id}},
            )

    def poll(self, payment_id: str) -> StatusView:
        record = self._require_record(payment_id)
        now = self.now_fn()
        try:
            payment = self.monitoring.get_payment(payment_id)
        except (GatewayError, httpx.HTTPError, ConfigurationError) as exc:
            get_instrumentation().counter("poll_degraded_total", 1)
            logger.warning(
                "live_status_unavailable_serving_cached",
                extra={
                    "extra": {
                        "payment_id": payment_id,
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    }
                },
            )
            if record.is_terminal or not record.is_past_deadline(now):
                return StatusView.from_record(record, degraded=True)
            # the deadline alone is enough to settle an overdue record
            self._apply_quietly(
                Observation(
                    payment_id=payment_id,
                    status=None,
                    observed_at=now,
                    source=ObservationSource.POLL,
                ),
                now,
            )
            refreshed = self.store.get(payment_id) or record
            return StatusView.from_record(refreshed, degraded=not refreshed.is_terminal)

        self._apply_quietly(observation_from_poll(payment_id, payment, observed_at=now), now)
        refreshed = self.store.get(payment_id) or record
        return StatusView.from_record(refreshed, payment=payment)

    def confirm(self, payment_id: str, tx_hash: object) -> dict[str, Any]:
        record = self._require_record(payment_id)
        if not record.requires_txid or not record.confirm_endpoint:
            raise ValidationFailure("Transaction hash submission is not required for this payment")
        if not isinstance(tx_hash, str) or not tx_hash.strip():
            raise ValidationFailure("Missing or invalid tx_hash")
        cleaned = tx_hash.strip()
        if not TX_HASH_RE.match(cleaned.removeprefix("0x")):
            raise ValidationFailure("Invalid transaction hash format")
        try:
            result = self.monitoring.confirm_payment(record.confirm_endpoint, cleaned)
        except (GatewayError, httpx.HTTPError, ConfigurationError) as exc:
            logger.error(
                "tx_hash_confirm_failed",
                extra={"extra": {"payment_id": payment_id, "error_type": type(exc).__name__}},
            )
            raise UpstreamTransient(
                "Failed to submit transaction hash. Please try again.", cause=exc
            ) from exc
        logger.info("tx_hash_submitted", extra={"extra": {"payment_id": payment_id}})
        return result
