from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from payrecon.domain.models import (
    Observation,
    ObservationSource,
    PaymentStatus,
    parse_decimal,
    parse_status,
    parse_timestamp,
)


class EventKind(StrEnum):
    COMPLETED = "payment.completed"
    OVERPAID = "payment.overpaid"
    PARTIAL = "payment.partial"
    EXPIRED = "payment.expired"
    CANCELLED = "payment.cancelled"
    UNKNOWN = "unknown"


EVENT_STATUS: dict[EventKind, PaymentStatus] = {
    EventKind.COMPLETED: PaymentStatus.PAID,
    EventKind.OVERPAID: PaymentStatus.OVERPAID,
    EventKind.PARTIAL: PaymentStatus.PARTIAL,
    EventKind.EXPIRED: PaymentStatus.EXPIRED,
    EventKind.CANCELLED: PaymentStatus.CANCELLED,
}


def parse_event_kind(value: object) -> EventKind:
    if value is None:
        return EventKind.UNKNOWN
    try:
        return EventKind(str(value).strip().lower())
    except ValueError:
        return EventKind.UNKNOWN


class WebhookPayload(BaseModel):
    """Push notification body; every field but the payment id is optional."""

    model_config = ConfigDict(extra="ignore")

    event: str = ""
    payment_id: str
    network: str = ""
    address: str = ""
    expected_amount: Decimal = Decimal("0")
    paid_amount: Decimal = Decimal("0")
    tx_hash: str = ""
    status: str = ""
    paid_at: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: str | None = None

    @field_validator("payment_id")
    @classmethod
    def _payment_id_not_blank(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("payment_id must not be empty")
        return cleaned

    @field_validator("expected_amount", "paid_amount", mode="before")
    @classmethod
    def _lenient_amount(cls, value: object) -> Decimal:
        try:
            return parse_decimal(value)
        except TypeError as exc:
            raise ValueError(str(exc)) from exc

    @field_validator("event", "network", "address", "tx_hash", "status", mode="before")
    @classmethod
    def _none_as_empty(cls, value: object) -> object:
        return "" if value is None else value

    @field_validator("metadata", mode="before")
    @classmethod
    def _none_as_empty_mapping(cls, value: object) -> object:
        return {} if value is None else value

    @property
    def kind(self) -> EventKind:
        return parse_event_kind(self.event)


def observation_from_webhook(payload: WebhookPayload, *, received_at: datetime) -> Observation:
    kind = payload.kind
    match kind:
        case EventKind.UNKNOWN:
            status = None
        case _:
            status = EVENT_STATUS[kind]
    observed_at = parse_timestamp(payload.timestamp) or received_at
    expected = payload.expected_amount if payload.expected_amount > 0 else None
    return Observation(
        payment_id=payload.payment_id,
        status=status,
        observed_at=observed_at,
        source=ObservationSource.PUSH,
        raw_status=payload.status,
        event=payload.event,
        paid_amount=payload.paid_amount,
        expected_amount=expected,
        tx_hash=payload.tx_hash,
        network=payload.network,
        address=payload.address,
        paid_at=payload.paid_at,
    )


def observation_from_poll(
    payment_id: str, payment: dict[str, Any], *, observed_at: datetime
) -> Observation:
    """Build an observation from the ``payment`` object of ``GET /v1/payments/{id}``."""
    raw_status = str(payment.get("status") or "")
    expected_raw = payment.get("expected_amount")
    expected = parse_decimal(expected_raw) if expected_raw not in (None, "") else None
    return Observation(
        payment_id=payment_id,
        status=parse_status(raw_status),
        observed_at=observed_at,
        source=ObservationSource.POLL,
        raw_status=raw_status,
        paid_amount=parse_decimal(payment.get("paid_amount")),
        expected_amount=expected,
        tx_hash=str(payment.get("tx_hash") or ""),
        network=str(payment.get("network") or ""),
        address=str(payment.get("address") or ""),
        paid_at=payment.get("paid_at"),
    )
