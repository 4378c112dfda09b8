from __future__ import annotations

from enum import Enum

import httpx


class ConfigurationError(ValueError):
    """Raised when required runtime configuration is missing or invalid."""


class GatewayError(RuntimeError):
    """Raised when an upstream HTTP call fails; keeps the upstream status and body for diagnostics."""

    def __init__(
        self,
        message: str,
        *,
        gateway: str,
        status_code: int | None = None,
        body: str | None = None,
        request_method: str | None = None,
        request_path: str | None = None,
    ) -> None:
        super().__init__(message)
        self.gateway = gateway
        self.status_code = status_code
        self.body = body
        self.request_method = request_method
        self.request_path = request_path


class ReconciliationError(RuntimeError):
    """Base class of the per-request error taxonomy."""

    http_status = 500
    retryable = False


class AuthFailure(ReconciliationError):
    http_status = 401


class UnknownPayment(ReconciliationError):
    http_status = 404

    def __init__(self, payment_id: str) -> None:
        super().__init__(f"no local record for payment {payment_id}")
        self.payment_id = payment_id


class ValidationFailure(ReconciliationError):
    http_status = 400


class UpstreamTransient(ReconciliationError):
    http_status = 500
    retryable = True

    def __init__(self, message: str, *, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class UpstreamPermanent(ReconciliationError):
    http_status = 200

    def __init__(self, message: str, *, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class RaceLost(ReconciliationError):
    """A concurrent writer already committed the same transition."""

    http_status = 200


class GatewayErrorCategory(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


def classify_gateway_error(exc: Exception) -> GatewayErrorCategory:
    if isinstance(exc, httpx.TimeoutException | httpx.TransportError):
        return GatewayErrorCategory.TRANSIENT
    if isinstance(exc, httpx.HTTPStatusError) and exc.response is not None:
        status = int(exc.response.status_code)
    elif isinstance(exc, GatewayError):
        status = int(exc.status_code) if exc.status_code is not None else None
    else:
        status = None

    if status is None:
        return GatewayErrorCategory.TRANSIENT
    if status == 429 or status >= 500:
        return GatewayErrorCategory.TRANSIENT
    if status in {401, 403}:
        return GatewayErrorCategory.TRANSIENT
    if 400 <= status < 500:
        return GatewayErrorCategory.PERMANENT
    return GatewayErrorCategory.TRANSIENT


def to_reconciliation_error(exc: Exception, *, action: str) -> ReconciliationError:
    category = classify_gateway_error(exc)
    message = f"{action} failed: {exc}"
    if category is GatewayErrorCategory.PERMANENT:
        return UpstreamPermanent(message, cause=exc)
    return UpstreamTransient(message, cause=exc)
