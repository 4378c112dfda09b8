from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from decimal import Decimal
from enum import StrEnum

import httpx

from payrecon.adapters.commerce import CaptureRequest, CommerceGateway
from payrecon.domain.errors import GatewayError
from payrecon.domain.models import (
    Observation,
    PaymentRecord,
    PaymentStatus,
    SideEffectTag,
    fmt_decimal,
    parse_decimal,
)
from payrecon.domain.networks import explorer_tx_url
from payrecon.observability import get_instrumentation

logger = logging.getLogger(__name__)

PAID_TAGS = ("crypto-paid", "payzcore")
EXPIRED_TAGS = ("crypto-expired", "payzcore")
CANCELLED_TAGS = ("crypto-cancelled", "payzcore")
PARTIAL_TAGS = ("crypto-partial", "payzcore")


class SideEffectOutcome(StrEnum):
    EXECUTED = "executed"
    SKIPPED_ORDER_PAID = "skipped_order_paid"
    SKIPPED_ORDER_CANCELLED = "skipped_order_cancelled"


@dataclass(frozen=True)
class SideEffectReport:
    tag: SideEffectTag
    outcome: SideEffectOutcome
    secondary_failures: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class Evidence:
    """Observation fields merged over the stored record; the observation wins when present."""

    paid_amount: Decimal
    expected_amount: Decimal
    network: str
    address: str
    tx_hash: str
    detected_at: str

    @classmethod
    def merge(cls, record: PaymentRecord, observation: Observation | None) -> Evidence:
        if observation is None:
            return cls(
                paid_amount=record.paid_amount,
                expected_amount=record.expected_amount,
                network=record.network.value,
                address=record.address,
                tx_hash=record.tx_hash,
                detected_at=record.last_observed_at.isoformat() if record.last_observed_at else "",
            )
        return cls(
            paid_amount=observation.paid_amount if observation.paid_amount > 0 else record.paid_amount,
            expected_amount=observation.expected_amount or record.expected_amount,
            network=observation.network or record.network.value,
            address=observation.address or record.address,
            tx_hash=observation.tx_hash or record.tx_hash,
            detected_at=observation.paid_at or observation.observed_at.isoformat(),
        )


def paid_note(record: PaymentRecord, evidence: Evidence, *, overpaid: bool) -> str:
    token = record.token.value
    lines = [
        "Crypto payment received",
        f"Amount: {fmt_decimal(evidence.paid_amount)} {token} ({evidence.network})",
        f"Address: {evidence.address}",
    ]
    if evidence.tx_hash:
        lines.append(f"TX: {explorer_tx_url(evidence.network, evidence.tx_hash)}")
    lines.append(f"Payment ID: {record.payment_id}")
    lines.append(f"Detected at: {evidence.detected_at}")
    if overpaid:
        lines.append(
            f"Note: Customer overpaid (expected {fmt_decimal(evidence.expected_amount)} {token})"
        )
    return "\n".join(lines)


def partial_note(record: PaymentRecord, evidence: Evidence) -> str:
    token = record.token.value
    lines = [
        "Partial crypto payment detected",
        f"Received: {fmt_decimal(evidence.paid_amount)} {token} "
        f"(expected: {fmt_decimal(evidence.expected_amount)} {token})",
        f"Network: {evidence.network}",
        f"Address: {evidence.address}",
    ]
    if evidence.tx_hash:
        lines.append(f"TX: {explorer_tx_url(evidence.network, evidence.tx_hash)}")
    lines.append(f"Payment ID: {record.payment_id}")
    lines.append("The payment window is still active. Customer may send the remaining amount.")
    return "\n".join(lines)


def expiry_reason(record: PaymentRecord) -> str:
    return (
        "Crypto payment expired. The customer did not send "
        f"{record.token.value} within the payment window. Payment ID: {record.payment_id}"
    )


def cancellation_reason(record: PaymentRecord) -> str:
    return f"Crypto payment cancelled by the merchant. Payment ID: {record.payment_id}"


def paid_tags(record: PaymentRecord, *, overpaid: bool) -> list[str]:
    tags = [*PAID_TAGS, record.token.value.lower()]
    if overpaid:
        tags.append("overpaid")
    return tags


class CommerceActionExecutor:
    """Runs the commerce calls behind one side-effect tag.

    The primary call (capture, cancel, or the partial note) propagates its failure to
    the caller; follow-up annotations only log theirs.
    """

    def execute(
        self,
        gateway: CommerceGateway,
        record: PaymentRecord,
        tag: SideEffectTag,
        *,
        target_status: PaymentStatus,
        observation: Observation | None = None,
    ) -> SideEffectReport:
        evidence = Evidence.merge(record, observation)
        match tag:
            case SideEffectTag.MARKED_PAID:
                report = self._mark_paid(
                    gateway, record, evidence, overpaid=target_status is PaymentStatus.OVERPAID
                )
            case SideEffectTag.ORDER_CANCELLED_EXPIRED:
                report = self._cancel(gateway, record, tag, expiry_reason(record), list(EXPIRED_TAGS))
            case SideEffectTag.ORDER_CANCELLED_MANUAL:
                report = self._cancel(
                    gateway, record, tag, cancellation_reason(record), list(CANCELLED_TAGS)
                )
            case SideEffectTag.PARTIAL_NOTED:
                report = self._note_partial(gateway, record, evidence)
        get_instrumentation().counter(
            "side_effects_total", 1, attrs={"tag": tag.value, "outcome": report.outcome.value}
        )
        return report

    def _secondary(
        self, record: PaymentRecord, action: str, call: Callable[..., object], *args: object
    ) -> str | None:
        try:
            call(*args)
        except (GatewayError, httpx.HTTPError) as exc:
            logger.warning(
                "commerce_followup_failed",
                extra={
                    "extra": {
                        "payment_id": record.payment_id,
                        "order_id": record.order_id,
                        "action": action,
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    }
                },
            )
            return action
        return None

    def _mark_paid(
        self,
        gateway: CommerceGateway,
        record: PaymentRecord,
        evidence: Evidence,
        *,
        overpaid: bool,
    ) -> SideEffectReport:
        try:
            order = gateway.get_order(record.order_id)
        except (GatewayError, httpx.HTTPError) as exc:
            logger.warning(
                "order_status_check_failed_proceeding",
                extra={
                    "extra": {
                        "payment_id": record.payment_id,
                        "order_id": record.order_id,
                        "error_type": type(exc).__name__,
                    }
                },
            )
        else:
            if order.is_paid:
                logger.info(
                    "order_already_paid_skipping_capture",
                    extra={"extra": {"payment_id": record.payment_id, "order_id": record.order_id}},
                )
                return SideEffectReport(
                    tag=SideEffectTag.MARKED_PAID, outcome=SideEffectOutcome.SKIPPED_ORDER_PAID
                )

        amount = evidence.paid_amount
        if amount <= 0:
            amount = parse_decimal(record.amount) if record.amount else record.expected_amount
        gateway.mark_order_as_paid(
            record.order_id,
            CaptureRequest(
                amount=amount,
                currency=record.currency,
                network=evidence.network,
                token=record.token.value,
                payment_id=record.payment_id,
                tx_hash=evidence.tx_hash,
            ),
        )
        failures = [
            failure
            for failure in (
                self._secondary(
                    record,
                    "add_order_note",
                    gateway.add_order_note,
                    record.order_id,
                    paid_note(record, evidence, overpaid=overpaid),
                ),
                self._secondary(
                    record,
                    "add_order_tags",
                    gateway.add_order_tags,
                    record.order_id,
                    paid_tags(record, overpaid=overpaid),
                ),
            )
            if failure
        ]
        logger.info(
            "order_marked_paid",
            extra={
                "extra": {
                    "payment_id": record.payment_id,
                    "order_id": record.order_id,
                    "order_name": record.order_name,
                    "amount": fmt_decimal(amount),
                    "overpaid": overpaid,
                }
            },
        )
        return SideEffectReport(
            tag=SideEffectTag.MARKED_PAID,
            outcome=SideEffectOutcome.EXECUTED,
            secondary_failures=tuple(failures),
        )

    def _cancel(
        self,
        gateway: CommerceGateway,
        record: PaymentRecord,
        tag: SideEffectTag,
        reason: str,
        tags: list[str],
    ) -> SideEffectReport:
        order = gateway.get_order(record.order_id)
        if order.is_cancelled or order.is_paid:
            outcome = (
                SideEffectOutcome.SKIPPED_ORDER_CANCELLED
                if order.is_cancelled
                else SideEffectOutcome.SKIPPED_ORDER_PAID
            )
            logger.info(
                "order_cancel_skipped",
                extra={
                    "extra": {
                        "payment_id": record.payment_id,
                        "order_id": record.order_id,
                        "outcome": outcome.value,
                    }
                },
            )
            return SideEffectReport(tag=tag, outcome=outcome)

        gateway.cancel_order(record.order_id, reason)
        failure = self._secondary(record, "add_order_tags", gateway.add_order_tags, record.order_id, tags)
        logger.info(
            "order_cancelled",
            extra={"extra": {"payment_id": record.payment_id, "order_id": record.order_id, "tag": tag.value}},
        )
        return SideEffectReport(
            tag=tag,
            outcome=SideEffectOutcome.EXECUTED,
            secondary_failures=(failure,) if failure else (),
        )

    def _note_partial(
        self, gateway: CommerceGateway, record: PaymentRecord, evidence: Evidence
    ) -> SideEffectReport:
        gateway.add_order_note(record.order_id, partial_note(record, evidence))
        failure = self._secondary(
            record, "add_order_tags", gateway.add_order_tags, record.order_id, list(PARTIAL_TAGS)
        )
        logger.info(
            "partial_payment_noted",
            extra={
                "extra": {
                    "payment_id": record.payment_id,
                    "order_id": record.order_id,
                    "paid_amount": fmt_decimal(evidence.paid_amount),
                    "expected_amount": fmt_decimal(evidence.expected_amount),
                }
            },
        )
        return SideEffectReport(
            tag=SideEffectTag.PARTIAL_NOTED,
            outcome=SideEffectOutcome.EXECUTED,
            secondary_failures=(failure,) if failure else (),
        )
