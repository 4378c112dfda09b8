from __future__ import annotations

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from payrecon.domain.networks import Network, Token


class CreatePaymentRequest(BaseModel):
    amount: Decimal
    network: Network
    token: Token | None = None
    external_ref: str
    external_order_id: str | None = None
    address: str | None = None
    expires_in: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "amount": float(self.amount),
            "network": self.network.value,
            "external_ref": self.external_ref,
        }
        # Omitted token lets the monitoring service default to USDT.
        if self.token is not None:
            payload["token"] = self.token.value
        if self.external_order_id:
            payload["external_order_id"] = self.external_order_id
        if self.address:
            payload["address"] = self.address
        if self.expires_in is not None:
            payload["expires_in"] = self.expires_in
        if self.metadata:
            payload["metadata"] = dict(self.metadata)
        return payload


class MonitoredPayment(BaseModel):
    """The ``payment`` object returned when a monitoring request is created."""

    model_config = ConfigDict(extra="ignore")

    id: str
    address: str = ""
    amount: str = ""
    network: str = ""
    token: str | None = None
    status: str = "pending"
    expires_at: str
    external_order_id: str | None = None
    qr_code: str | None = None
    notice: str | None = None
    requires_txid: bool = False
    confirm_endpoint: str | None = None


class CreatePaymentResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    success: bool = True
    existing: bool = False
    payment: MonitoredPayment


class MonitoringGateway(ABC):
    @abstractmethod
    def create_payment(self, request: CreatePaymentRequest) -> CreatePaymentResult:
        raise NotImplementedError

    @abstractmethod
    def get_payment(self, payment_id: str) -> dict[str, Any]:
        """Return the ``payment`` object of the live status endpoint."""
        raise NotImplementedError

    @abstractmethod
    def confirm_payment(self, confirm_endpoint: str, tx_hash: str) -> dict[str, Any]:
        raise NotImplementedError

    def fetch_config(self) -> dict[str, Any]:
        return {}

    def close(self) -> None:
        return None
