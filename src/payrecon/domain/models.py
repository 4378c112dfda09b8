from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from enum import StrEnum

from pydantic import BaseModel, Field

from payrecon.domain.networks import Network, Token


def parse_decimal(value: object) -> Decimal:
    """Lenient amount parser: ``None``/blank become zero, ``,`` is accepted as separator."""
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise TypeError("Cannot parse decimal from bool")
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str):
        normalized = value.strip().replace(",", ".")
        if not normalized:
            return Decimal("0")
        try:
            return Decimal(normalized)
        except InvalidOperation as exc:
            raise ValueError(f"Invalid decimal amount: {value!r}") from exc
    raise TypeError(f"Cannot parse decimal from {type(value)!r}")


def fmt_decimal(value: Decimal) -> str:
    normalized = format(value, "f")
    if "." in normalized:
        normalized = normalized.rstrip("0").rstrip(".")
    return normalized or "0"


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_timestamp(raw: object) -> datetime | None:
    """Parse an RFC3339 timestamp (``Z`` suffix allowed); ``None`` when unparseable."""
    if raw is None:
        return None
    if isinstance(raw, datetime):
        return ensure_utc(raw)
    text = str(raw).strip()
    if not text:
        return None
    if text.endswith(("Z", "z")):
        text = f"{text[:-1]}+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


class PaymentStatus(StrEnum):
    PENDING = "pending"
    CONFIRMING = "confirming"
    PARTIAL = "partial"
    PAID = "paid"
    OVERPAID = "overpaid"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


# confirming outranks pending so a late "pending" never rolls a confirming payment back.
FINALITY_RANK: dict[PaymentStatus, int] = {
    PaymentStatus.PENDING: 0,
    PaymentStatus.CONFIRMING: 1,
    PaymentStatus.PARTIAL: 2,
    PaymentStatus.PAID: 3,
    PaymentStatus.OVERPAID: 3,
    PaymentStatus.EXPIRED: 3,
    PaymentStatus.CANCELLED: 3,
}
TERMINAL_STATUSES = frozenset(
    {PaymentStatus.PAID, PaymentStatus.OVERPAID, PaymentStatus.EXPIRED, PaymentStatus.CANCELLED}
)
PAID_STATUSES = frozenset({PaymentStatus.PAID, PaymentStatus.OVERPAID})


def parse_status(value: object) -> PaymentStatus | None:
    if value is None:
        return None
    try:
        return PaymentStatus(str(value).strip().lower())
    except ValueError:
        return None


def is_terminal(status: PaymentStatus) -> bool:
    return status in TERMINAL_STATUSES


class ObservationSource(StrEnum):
    PUSH = "push"
    POLL = "poll"


class SideEffectTag(StrEnum):
    MARKED_PAID = "marked_paid"
    ORDER_CANCELLED_EXPIRED = "order_cancelled_expired"
    ORDER_CANCELLED_MANUAL = "order_cancelled_manual"
    PARTIAL_NOTED = "partial_noted"


def partial_tag_key(paid_amount: Decimal) -> str:
    return f"{SideEffectTag.PARTIAL_NOTED.value}:{fmt_decimal(paid_amount)}"


@dataclass(frozen=True)
class Observation:
    payment_id: str
    status: PaymentStatus | None
    observed_at: datetime
    source: ObservationSource
    raw_status: str = ""
    event: str = ""
    paid_amount: Decimal = Decimal("0")
    expected_amount: Decimal | None = None
    tx_hash: str = ""
    network: str = ""
    address: str = ""
    paid_at: str | None = None


class PaymentRecord(BaseModel):
    payment_id: str
    shop_domain: str
    order_id: int
    order_name: str
    network: Network
    token: Token = Token.USDT
    expected_amount: Decimal
    amount: str = ""
    currency: str = "USD"
    customer_email: str = ""
    address: str = ""
    qr_code: str = ""
    notice: str = ""
    requires_txid: bool = False
    confirm_endpoint: str = ""
    canonical_status: PaymentStatus = PaymentStatus.PENDING
    paid_amount: Decimal = Decimal("0")
    tx_hash: str = ""
    last_observed_at: datetime | None = None
    expires_at: datetime
    side_effects_applied: set[str] = Field(default_factory=set)
    side_effect_failures: dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    ttl_seconds: int = 7 * 86400
    version: int = Field(default=0, exclude=True)

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.canonical_status)

    @property
    def is_paid(self) -> bool:
        return self.canonical_status in PAID_STATUSES

    def is_past_deadline(self, *instants: datetime | None) -> bool:
        deadline = ensure_utc(self.expires_at)
        return any(instant is not None and ensure_utc(instant) > deadline for instant in instants)

    def has_settled(self, tag_key: str) -> bool:
        return tag_key in self.side_effects_applied or tag_key in self.side_effect_failures
