from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import httpx
from pydantic import BaseModel, field_validator

from payrecon.adapters.commerce import CommerceGateway, CommerceOrder
from payrecon.adapters.monitoring import CreatePaymentRequest, MonitoringGateway
from payrecon.domain.errors import (
    ConfigurationError,
    GatewayError,
    UpstreamTransient,
    ValidationFailure,
)
from payrecon.domain.models import (
    PaymentRecord,
    PaymentStatus,
    fmt_decimal,
    parse_decimal,
    parse_status,
    parse_timestamp,
)
from payrecon.domain.networks import is_valid_network_token, parse_network, parse_token
from payrecon.services.network_config import NetworkSelection
from payrecon.services.state_store import DuplicatePaymentError, PaymentRecordStore

logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE = Decimal("0.01")


class IntakeRequest(BaseModel):
    shop_domain: str
    order_id: int
    order_name: str = ""
    amount: Decimal
    currency: str = "USD"
    email: str = ""
    network: str | None = None
    token: str | None = None
    static_address: str | None = None

    @field_validator("shop_domain")
    @classmethod
    def _shop_domain_not_blank(cls, value: str) -> str:
        cleaned = value.strip().lower()
        if not cleaned:
            raise ValueError("shop_domain must not be empty")
        return cleaned

    @field_validator("amount", mode="before")
    @classmethod
    def _lenient_amount(cls, value: object) -> Decimal:
        try:
            return parse_decimal(value)
        except TypeError as exc:
            raise ValueError(str(exc)) from exc


@dataclass(frozen=True)
class IntakeResult:
    record: PaymentRecord
    existing: bool = False


class PaymentIntakeService:
    """Creates monitoring requests for commerce orders after checking the order total."""

    def __init__(
        self,
        store: PaymentRecordStore,
        monitoring: MonitoringGateway,
        commerce_gateway_factory: Callable[[str], CommerceGateway | None],
        networks: NetworkSelection,
        *,
        expires_in_seconds: int = 3600,
        retention_seconds: int = 7 * 86400,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.monitoring = monitoring
        self.commerce_gateway_factory = commerce_gateway_factory
        self.networks = networks
        self.expires_in_seconds = expires_in_seconds
        self.retention_seconds = retention_seconds
        self.now_fn = now_fn or (lambda: datetime.now(UTC))

    def _verify_order(self, request: IntakeRequest) -> Decimal:
        gateway = self.commerce_gateway_factory(request.shop_domain)
        if gateway is None:
            raise ValidationFailure(f"Shop {request.shop_domain} is not installed")
        try:
            order: CommerceOrder = gateway.get_order(request.order_id)
        except GatewayError as exc:
            logger.error(
                "order_verification_failed",
                extra={"extra": {"order_id": request.order_id, "status_code": exc.status_code}},
            )
            if exc.status_code is not None and exc.status_code < 500:
                raise ValidationFailure(
                    "Could not verify the order with Shopify. Please try again."
                ) from exc
            raise UpstreamTransient("Could not verify the order. Please try again.", cause=exc) from exc
        except (httpx.HTTPError, ConfigurationError) as exc:
            raise UpstreamTransient("Could not verify the order. Please try again.", cause=exc) from exc
        finally:
            gateway.close()

        if order.is_closed_for_payment:
            logger.warning(
                "order_not_payable",
                extra={
                    "extra": {
                        "order_id": request.order_id,
                        "financial_status": order.financial_status,
                    }
                },
            )
            raise ValidationFailure("This order has already been paid or is no longer payable.")

        verified = order.total_outstanding if order.total_outstanding is not None else order.total_price
        if abs(verified - request.amount) > AMOUNT_TOLERANCE:
            logger.error(
                "order_amount_mismatch",
                extra={
                    "extra": {
                        "order_id": request.order_id,
                        "requested": fmt_decimal(request.amount),
                        "verified": fmt_decimal(verified),
                    }
                },
            )
            raise ValidationFailure("The payment amount does not match the order total.")
        return verified

    def create(self, request: IntakeRequest) -> IntakeResult:
        network = parse_network(request.network) or self.networks.default_network
        token = parse_token(request.token) or self.networks.default_token
        if not self.networks.is_enabled(network):
            available = ", ".join(item.value for item in self.networks.enabled_networks)
            raise ValidationFailure(f"{network.value} is not enabled. Available networks: {available}")
        if not is_valid_network_token(network, token):
            raise ValidationFailure(f"{token.value} is not supported on {network.value}.")
        if request.amount <= 0:
            raise ValidationFailure("The order amount is invalid.")

        verified_amount = self._verify_order(request)
        order_name = request.order_name or f"#{request.order_id}"
        monitoring_request = CreatePaymentRequest(
            amount=verified_amount,
            network=network,
            token=token,
            external_ref=request.email or f"shopify-customer-{request.order_id}",
            external_order_id=f"shopify-{request.shop_domain}-{request.order_id}",
            address=request.static_address or None,
            expires_in=self.expires_in_seconds,
            metadata={
                "source": "shopify",
                "shop_domain": request.shop_domain,
                "shopify_order_id": request.order_id,
                "shopify_order_name": order_name,
                "currency": request.currency or "USD",
                "token": token.value,
            },
        )
        try:
            result = self.monitoring.create_payment(monitoring_request)
        except (GatewayError, httpx.HTTPError, ConfigurationError) as exc:
            logger.error(
                "monitoring_request_create_failed",
                extra={"extra": {"order_id": request.order_id, "error_type": type(exc).__name__}},
            )
            raise UpstreamTransient(
                "Failed to create the payment monitoring request.", cause=exc
            ) from exc

        payment = result.payment
        now = self.now_fn()
        record = PaymentRecord(
            payment_id=payment.id,
            shop_domain=request.shop_domain,
            order_id=request.order_id,
            order_name=order_name,
            network=network,
            token=parse_token(payment.token) or token,
            expected_amount=parse_decimal(payment.amount) if payment.amount else verified_amount,
            amount=fmt_decimal(request.amount),
            currency=request.currency or "USD",
            customer_email=request.email,
            address=payment.address,
            qr_code=payment.qr_code or "",
            notice=payment.notice or "",
            requires_txid=payment.requires_txid,
            confirm_endpoint=payment.confirm_endpoint or "",
            canonical_status=parse_status(payment.status) or PaymentStatus.PENDING,
            expires_at=parse_timestamp(payment.expires_at)
            or now + timedelta(seconds=self.expires_in_seconds),
            created_at=now,
            ttl_seconds=self.retention_seconds,
        )
        try:
            stored = self.store.create(record)
        except DuplicatePaymentError:
            existing = self.store.get(record.payment_id)
            if existing is None:
                raise
            logger.info(
                "monitoring_request_reused", extra={"extra": {"payment_id": record.payment_id}}
            )
            return IntakeResult(record=existing, existing=True)
        return IntakeResult(record=stored, existing=result.existing)
