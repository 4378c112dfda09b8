from __future__ import annotations

import logging
from time import monotonic
from typing import Any
from uuid import uuid4

import httpx

from payrecon.adapters.monitoring import (
    CreatePaymentRequest,
    CreatePaymentResult,
    MonitoringGateway,
)
from payrecon.domain.errors import ConfigurationError, GatewayError
from payrecon.observability import get_instrumentation
from payrecon.security.redaction import sanitize_mapping, sanitize_text

logger = logging.getLogger(__name__)

GATEWAY_NAME = "payzcore"
USER_AGENT = "payrecon/0.1.0"
_ERROR_SNIPPET_LIMIT = 240


def response_snippet(response: httpx.Response, *, known_secrets: tuple[str, ...] = ()) -> str:
    text = response.text.strip().replace("\n", " ")
    return sanitize_text(text[:_ERROR_SNIPPET_LIMIT], known_secrets=known_secrets)


class PayzCoreHttpClient(MonitoringGateway):
    BASE_URL = "https://api.payzcore.com"

    def __init__(
        self,
        api_key: str | None,
        base_url: str | None = None,
        timeout: float | httpx.Timeout = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.client = httpx.Client(
            base_url=(base_url or self.BASE_URL).rstrip("/"),
            timeout=timeout,
            transport=transport,
        )

    def __enter__(self) -> PayzCoreHttpClient:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        del exc_type, exc, tb
        self.close()

    def _request(
        self,
        method: str,
        path: str,
        json: dict[str, object] | None = None,
    ) -> dict[str, Any]:
        if not self.api_key:
            raise ConfigurationError("Missing PAYZCORE_API_KEY for monitoring requests")

        normalized_method = method.upper()
        request_id = uuid4().hex
        headers = {
            "x-api-key": self.api_key,
            "User-Agent": USER_AGENT,
            "X-Request-ID": request_id,
        }
        with get_instrumentation().trace(
            "gateway_call",
            attrs={"gateway": GATEWAY_NAME, "method": normalized_method, "path": path},
        ):
            started = monotonic()
            try:
                response = self.client.request(
                    method=normalized_method, url=path, json=json, headers=headers
                )
            except httpx.HTTPError as exc:
                get_instrumentation().counter(
                    "gateway_requests_total",
                    1,
                    attrs={"gateway": GATEWAY_NAME, "method": normalized_method, "status": "error"},
                )
                logger.warning(
                    "monitoring_request_transport_error",
                    extra={
                        "extra": {
                            "method": normalized_method,
                            "path": path,
                            "request_id": request_id,
                            "error_type": type(exc).__name__,
                        }
                    },
                )
                raise

        get_instrumentation().histogram(
            "gateway_request_seconds",
            monotonic() - started,
            attrs={"gateway": GATEWAY_NAME, "method": normalized_method},
        )
        get_instrumentation().counter(
            "gateway_requests_total",
            1,
            attrs={
                "gateway": GATEWAY_NAME,
                "method": normalized_method,
                "status": str(response.status_code),
            },
        )
        if not response.is_success:
            snippet = response_snippet(response, known_secrets=(self.api_key,))
            logger.warning(
                "monitoring_request_failed",
                extra={
                    "extra": {
                        "method": normalized_method,
                        "path": path,
                        "status_code": response.status_code,
                        "request_id": request_id,
                        "request_json": sanitize_mapping(json) if json is not None else None,
                        "response": snippet,
                    }
                },
            )
            raise GatewayError(
                f"PayzCore API error status={response.status_code} "
                f"method={normalized_method} path={path} response={snippet}",
                gateway=GATEWAY_NAME,
                status_code=response.status_code,
                body=snippet,
                request_method=normalized_method,
                request_path=path,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise GatewayError(
                f"PayzCore API returned non-JSON body method={normalized_method} path={path}",
                gateway=GATEWAY_NAME,
                status_code=response.status_code,
                body=response_snippet(response),
                request_method=normalized_method,
                request_path=path,
            ) from exc
        if not isinstance(payload, dict):
            raise GatewayError(
                f"PayzCore API returned unexpected payload type method={normalized_method} path={path}",
                gateway=GATEWAY_NAME,
                status_code=response.status_code,
                request_method=normalized_method,
                request_path=path,
            )
        return payload

    def create_payment(self, request: CreatePaymentRequest) -> CreatePaymentResult:
        payload = self._request("POST", "/v1/payments", json=request.to_payload())
        return CreatePaymentResult.model_validate(payload)

    def get_payment(self, payment_id: str) -> dict[str, Any]:
        payload = self._request("GET", f"/v1/payments/{payment_id}")
        payment = payload.get("payment")
        if not isinstance(payment, dict):
            raise GatewayError(
                f"PayzCore payment lookup missing 'payment' object payment_id={payment_id}",
                gateway=GATEWAY_NAME,
                request_method="GET",
                request_path=f"/v1/payments/{payment_id}",
            )
        return payment

    def confirm_payment(self, confirm_endpoint: str, tx_hash: str) -> dict[str, Any]:
        path = confirm_endpoint if confirm_endpoint.startswith("/") else f"/{confirm_endpoint}"
        return self._request("POST", path, json={"tx_hash": tx_hash})

    def fetch_config(self) -> dict[str, Any]:
        return self._request("GET", "/v1/config")

    def close(self) -> None:
        self.client.close()
