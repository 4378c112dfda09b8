from __future__ import annotations

import logging
from time import monotonic
from typing import Any

import httpx

from payrecon.adapters.commerce import (
    CaptureRequest,
    CommerceGateway,
    CommerceOrder,
    CommerceTransaction,
    append_note,
    merge_tags,
)
from payrecon.adapters.payzcore_http import response_snippet
from payrecon.domain.errors import ConfigurationError, GatewayError
from payrecon.domain.models import fmt_decimal
from payrecon.observability import get_instrumentation
from payrecon.security.redaction import sanitize_mapping

logger = logging.getLogger(__name__)

GATEWAY_NAME = "shopify"
DEFAULT_API_VERSION = "2024-10"


def _order_from_payload(order: dict[str, Any]) -> CommerceOrder:
    customer = order.get("customer")
    customer_id = customer.get("id") if isinstance(customer, dict) else None
    return CommerceOrder.model_validate(
        {
            **order,
            "tags": order.get("tags") or "",
            "customer_id": customer_id,
        }
    )


def capture_message(capture: CaptureRequest) -> str:
    message = f"{capture.token} received on {capture.network}. PayzCore ID: {capture.payment_id}"
    if capture.tx_hash:
        message = f"{message}. TX: {capture.tx_hash}"
    return message


class ShopifyHttpClient(CommerceGateway):
    def __init__(
        self,
        shop_domain: str,
        access_token: str | None,
        api_version: str = DEFAULT_API_VERSION,
        timeout: float | httpx.Timeout = 15.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.shop_domain = shop_domain
        self.access_token = access_token
        self.client = httpx.Client(
            base_url=f"https://{shop_domain}/admin/api/{api_version}",
            timeout=timeout,
            transport=transport,
        )

    def __enter__(self) -> ShopifyHttpClient:
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
        if not self.access_token:
            raise ConfigurationError(f"Missing access token for shop {self.shop_domain}")

        normalized_method = method.upper()
        headers = {"X-Shopify-Access-Token": self.access_token}
        with get_instrumentation().trace(
            "gateway_call",
            attrs={"gateway": GATEWAY_NAME, "method": normalized_method, "path": path},
        ):
            started = monotonic()
            try:
                response = self.client.request(
                    method=normalized_method, url=path, json=json, headers=headers
                )
            except httpx.HTTPError:
                get_instrumentation().counter(
                    "gateway_requests_total",
                    1,
                    attrs={"gateway": GATEWAY_NAME, "method": normalized_method, "status": "error"},
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
            snippet = response_snippet(response, known_secrets=(self.access_token,))
            logger.warning(
                "commerce_request_failed",
                extra={
                    "extra": {
                        "shop_domain": self.shop_domain,
                        "method": normalized_method,
                        "path": path,
                        "status_code": response.status_code,
                        "request_json": sanitize_mapping(json) if json is not None else None,
                        "response": snippet,
                    }
                },
            )
            raise GatewayError(
                f"Shopify API error status={response.status_code} "
                f"method={normalized_method} path={path} response={snippet}",
                gateway=GATEWAY_NAME,
                status_code=response.status_code,
                body=snippet,
                request_method=normalized_method,
                request_path=path,
            )
        if not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise GatewayError(
                f"Shopify API returned non-JSON body method={normalized_method} path={path}",
                gateway=GATEWAY_NAME,
                status_code=response.status_code,
                request_method=normalized_method,
                request_path=path,
            ) from exc
        return payload if isinstance(payload, dict) else {}

    def get_order(self, order_id: int) -> CommerceOrder:
        payload = self._request("GET", f"/orders/{order_id}.json")
        order = payload.get("order")
        if not isinstance(order, dict):
            raise GatewayError(
                f"Shopify order lookup missing 'order' object order_id={order_id}",
                gateway=GATEWAY_NAME,
                request_method="GET",
                request_path=f"/orders/{order_id}.json",
            )
        return _order_from_payload(order)

    def mark_order_as_paid(self, order_id: int, capture: CaptureRequest) -> CommerceTransaction:
        payload = self._request(
            "POST",
            f"/orders/{order_id}/transactions.json",
            json={
                "transaction": {
                    "kind": "capture",
                    "status": "success",
                    "amount": fmt_decimal(capture.amount),
                    "currency": capture.currency,
                    "gateway": f"PayzCore {capture.token}",
                    "source": "external",
                    "message": capture_message(capture),
                }
            },
        )
        transaction = payload.get("transaction")
        return CommerceTransaction.model_validate(transaction if isinstance(transaction, dict) else {})

    def add_order_note(self, order_id: int, note: str) -> None:
        merged = append_note(self.get_order(order_id).note, note)
        self._request("PUT", f"/orders/{order_id}.json", json={"order": {"id": order_id, "note": merged}})

    def add_order_tags(self, order_id: int, tags: str | list[str]) -> None:
        current = self.get_order(order_id).tag_list()
        merged = merge_tags(current, tags)
        self._request(
            "PUT",
            f"/orders/{order_id}.json",
            json={"order": {"id": order_id, "tags": ", ".join(merged)}},
        )

    def cancel_order(self, order_id: int, reason: str) -> None:
        self._request(
            "POST",
            f"/orders/{order_id}/cancel.json",
            json={"reason": "other", "note": reason, "email": True},
        )

    def close(self) -> None:
        self.client.close()
