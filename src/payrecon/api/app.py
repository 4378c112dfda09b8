"""HTTP surface of the reconciliation service.

Endpoints:
- POST /webhooks/payzcore            Signed push notifications from the monitoring service
- GET  /payment/{payment_id}/status  Live status (degrades to the cached record)
- POST /payment/{payment_id}/confirm Forward a customer-submitted transaction hash
- POST /payments                     Create a monitoring request for a commerce order
- GET  /networks                     Enabled networks and checkout defaults

Hosting is left to an ASGI server, e.g. ``uvicorn --factory payrecon.api.app:create_app_from_env``.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from payrecon.config import Settings
from payrecon.context import AppContext, build_context
from payrecon.domain.errors import (
    AuthFailure,
    ReconciliationError,
    UnknownPayment,
    UpstreamTransient,
)
from payrecon.domain.events import WebhookPayload, observation_from_webhook
from payrecon.logging_context import with_logging_context
from payrecon.logging_utils import setup_logging
from payrecon.observability import configure_instrumentation, get_instrumentation
from payrecon.services.intake_service import IntakeRequest

logger = logging.getLogger(__name__)

PROCESSING_ERROR_BODY = {"received": True, "processed": False, "reason": "processing_error"}


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def create_app(context: AppContext) -> FastAPI:
    app = FastAPI(title="payrecon", version="0.1.0")
    app.state.context = context

    @app.exception_handler(ReconciliationError)
    async def _reconciliation_error(request: Request, exc: ReconciliationError) -> JSONResponse:
        del request
        if isinstance(exc, UnknownPayment):
            return _error(404, "Payment not found")
        return _error(exc.http_status, str(exc))

    @app.exception_handler(RequestValidationError)
    async def _request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        del request
        fields = sorted({".".join(str(part) for part in err.get("loc", ())[1:]) for err in exc.errors()})
        return _error(400, f"Invalid request: {', '.join(field for field in fields if field) or 'body'}")

    @app.post("/webhooks/payzcore")
    async def payzcore_webhook(request: Request) -> JSONResponse:
        request_id = request.headers.get("x-request-id") or uuid4().hex
        raw_body = await request.body()
        with with_logging_context(request_id=request_id):
            verifier = context.verifier
            if verifier is None:
                logger.error("webhook_secret_not_configured")
                return JSONResponse(status_code=500, content=PROCESSING_ERROR_BODY)

            verification = verifier.verify(raw_body, request.headers)
            if not verification.ok:
                reason = verification.reason.value if verification.reason else "UNKNOWN"
                get_instrumentation().counter("webhook_rejected_total", 1, attrs={"reason": reason})
                logger.warning("webhook_rejected", extra={"extra": {"reason": reason}})
                raise AuthFailure(f"Webhook verification failed: {reason}")

            try:
                payload = WebhookPayload.model_validate(json.loads(raw_body))
            except ValueError:
                logger.warning("webhook_body_malformed", extra={"extra": {"size": len(raw_body)}})
                return _error(400, "Malformed webhook body")

            observation = observation_from_webhook(payload, received_at=datetime.now(UTC))
            logger.info(
                "webhook_received",
                extra={"extra": {"payment_id": payload.payment_id, "event": payload.event}},
            )
            try:
                outcome = await run_in_threadpool(context.engine.apply, observation)
            except UpstreamTransient as exc:
                logger.warning(
                    "webhook_processing_deferred",
                    extra={"extra": {"payment_id": payload.payment_id, "error": str(exc)}},
                )
                return JSONResponse(status_code=500, content=PROCESSING_ERROR_BODY)
            except Exception:  # noqa: BLE001
                logger.exception(
                    "webhook_processing_failed", extra={"extra": {"payment_id": payload.payment_id}}
                )
                return JSONResponse(status_code=500, content=PROCESSING_ERROR_BODY)

        content: dict[str, object] = {"received": True, "processed": outcome.processed}
        if outcome.reason is not None:
            content["reason"] = outcome.reason.value
        return JSONResponse(status_code=200, content=content)

    @app.get("/payment/{payment_id}/status")
    def payment_status(payment_id: str) -> dict[str, object]:
        with with_logging_context(payment_id=payment_id, source="poll"):
            return context.poll_service.poll(payment_id).to_payload()

    @app.post("/payment/{payment_id}/confirm")
    async def confirm_payment(payment_id: str, request: Request) -> dict[str, object]:
        try:
            body = await request.json()
        except ValueError:
            body = None
        tx_hash = body.get("tx_hash") if isinstance(body, dict) else None
        return await run_in_threadpool(context.poll_service.confirm, payment_id, tx_hash)

    @app.get("/networks")
    def enabled_networks() -> dict[str, object]:
        selection = context.networks
        return {
            "networks": selection.labels(),
            "default_network": selection.default_network.value,
            "default_token": selection.default_token.value,
        }

    @app.post("/payments")
    def create_payment(request: IntakeRequest) -> dict[str, object]:
        with with_logging_context(shop_domain=request.shop_domain):
            result = context.intake_service.create(request)
        record = result.record
        return {
            "payment_id": record.payment_id,
            "status": record.canonical_status.value,
            "address": record.address,
            "expected_amount": str(record.expected_amount),
            "network": record.network.value,
            "token": record.token.value,
            "qr_code": record.qr_code,
            "notice": record.notice,
            "requires_txid": record.requires_txid,
            "expires_at": record.expires_at.isoformat(),
            "existing": result.existing,
        }

    return app


def create_app_from_env() -> FastAPI:
    settings = Settings()
    setup_logging(settings.log_level)
    configure_instrumentation(
        enabled=settings.observability_enabled,
        metrics_exporter=settings.observability_metrics_exporter,
        otlp_endpoint=settings.observability_otlp_endpoint,
        prometheus_port=settings.observability_prometheus_port,
    )
    settings.require_credentials()
    return create_app(build_context(settings))
