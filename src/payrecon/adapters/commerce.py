from __future__ import annotations

from abc import ABC, abstractmethod
from decimal import Decimal

from pydantic import BaseModel, ConfigDict

PAID_FINANCIAL_STATUSES = frozenset({"paid"})
CLOSED_FINANCIAL_STATUSES = frozenset({"paid", "refunded", "voided"})


class CommerceOrder(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    name: str = ""
    email: str | None = None
    financial_status: str | None = None
    total_price: Decimal = Decimal("0")
    total_outstanding: Decimal | None = None
    currency: str = "USD"
    created_at: str | None = None
    cancelled_at: str | None = None
    note: str | None = None
    tags: str = ""
    customer_id: int | None = None

    @property
    def is_paid(self) -> bool:
        return (self.financial_status or "").lower() in PAID_FINANCIAL_STATUSES

    @property
    def is_cancelled(self) -> bool:
        return bool(self.cancelled_at)

    @property
    def is_closed_for_payment(self) -> bool:
        return (self.financial_status or "").lower() in CLOSED_FINANCIAL_STATUSES

    def tag_list(self) -> list[str]:
        return [tag for tag in (part.strip() for part in self.tags.split(",")) if tag]


class CaptureRequest(BaseModel):
    amount: Decimal
    currency: str
    network: str
    token: str
    payment_id: str
    tx_hash: str = ""


class CommerceTransaction(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int | None = None
    order_id: int | None = None
    kind: str = ""
    status: str = ""
    amount: str = ""
    currency: str = ""
    gateway: str = ""


def merge_tags(current: list[str], additions: str | list[str]) -> list[str]:
    """Union of ``current`` and ``additions`` preserving first-seen order."""
    extra = additions.split(",") if isinstance(additions, str) else additions
    merged: list[str] = []
    for tag in [*current, *extra]:
        cleaned = tag.strip()
        if cleaned and cleaned not in merged:
            merged.append(cleaned)
    return merged


def append_note(current: str | None, note: str) -> str:
    """Append ``note`` below ``current``; a note already present is kept once."""
    existing = (current or "").strip()
    if not existing:
        return note
    if note in existing.split("\n\n"):
        return existing
    return f"{existing}\n\n{note}"


class CommerceGateway(ABC):
    @abstractmethod
    def get_order(self, order_id: int) -> CommerceOrder:
        raise NotImplementedError

    @abstractmethod
    def mark_order_as_paid(self, order_id: int, capture: CaptureRequest) -> CommerceTransaction:
        raise NotImplementedError

    @abstractmethod
    def add_order_note(self, order_id: int, note: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def add_order_tags(self, order_id: int, tags: str | list[str]) -> None:
        raise NotImplementedError

    @abstractmethod
    def cancel_order(self, order_id: int, reason: str) -> None:
        raise NotImplementedError

    def close(self) -> None:
        return None
