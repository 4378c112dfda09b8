from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

import httpx

from payrecon.adapters.commerce import CommerceGateway
from payrecon.adapters.monitoring import MonitoringGateway
from payrecon.adapters.payzcore_http import PayzCoreHttpClient
from payrecon.adapters.shopify_http import ShopifyHttpClient
from payrecon.adapters.signature import SignatureVerifier
from payrecon.config import Settings
from payrecon.services.intake_service import PaymentIntakeService
from payrecon.services.network_config import (
    NetworkSelection,
    resolve_enabled_networks,
    selection_from_settings,
)
from payrecon.services.poll_service import PollService
from payrecon.services.reconciliation_engine import CommerceGatewayFactory, ReconciliationEngine
from payrecon.services.state_store import PaymentRecordStore

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    store: PaymentRecordStore
    monitoring: MonitoringGateway
    commerce_gateway_factory: CommerceGatewayFactory
    verifier: SignatureVerifier | None
    networks: NetworkSelection
    engine: ReconciliationEngine
    poll_service: PollService
    intake_service: PaymentIntakeService

    def close(self) -> None:
        self.monitoring.close()


def shopify_gateway_factory(
    store: PaymentRecordStore,
    settings: Settings,
    *,
    transport: httpx.BaseTransport | None = None,
) -> CommerceGatewayFactory:
    def _factory(shop_domain: str) -> CommerceGateway | None:
        shop = store.get_shop(shop_domain)
        if shop is None:
            return None
        return ShopifyHttpClient(
            shop_domain=shop.shop_domain,
            access_token=shop.access_token,
            api_version=settings.shopify_api_version,
            timeout=settings.commerce_timeout_seconds,
            transport=transport,
        )

    return _factory


def build_context(
    settings: Settings,
    *,
    monitoring: MonitoringGateway | None = None,
    commerce_gateway_factory: CommerceGatewayFactory | None = None,
    store: PaymentRecordStore | None = None,
    now_fn: Callable[[], datetime] | None = None,
    resolve_networks: bool = True,
) -> AppContext:
    resolved_store = store or PaymentRecordStore(settings.state_db_path)
    resolved_monitoring = monitoring or PayzCoreHttpClient(
        api_key=settings.api_key_value(),
        base_url=settings.payzcore_api_url,
        timeout=settings.monitoring_timeout_seconds,
    )
    factory = commerce_gateway_factory or shopify_gateway_factory(resolved_store, settings)
    secret = settings.webhook_secret_value()
    verifier: SignatureVerifier | None = None
    if secret:
        verifier = SignatureVerifier(secret=secret, replay_window_seconds=settings.replay_window_seconds)
        if now_fn is not None:
            verifier.now_fn = now_fn
    else:
        logger.warning("webhook_secret_missing_push_notifications_rejected")

    networks = (
        resolve_enabled_networks(settings, resolved_monitoring)
        if resolve_networks
        else selection_from_settings(settings)
    )

    engine = ReconciliationEngine(resolved_store, factory, now_fn=now_fn)
    return AppContext(
        settings=settings,
        store=resolved_store,
        monitoring=resolved_monitoring,
        commerce_gateway_factory=factory,
        verifier=verifier,
        networks=networks,
        engine=engine,
        poll_service=PollService(resolved_store, resolved_monitoring, engine, now_fn=now_fn),
        intake_service=PaymentIntakeService(
            resolved_store,
            resolved_monitoring,
            factory,
            networks,
            expires_in_seconds=settings.payment_expires_in_seconds,
            retention_seconds=settings.payment_retention_seconds,
            now_fn=now_fn,
        ),
    )
