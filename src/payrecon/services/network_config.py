from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from payrecon.adapters.monitoring import MonitoringGateway
from payrecon.config import Settings
from payrecon.domain.errors import ConfigurationError, GatewayError
from payrecon.domain.networks import (
    NETWORK_LABELS,
    Network,
    Token,
    is_valid_network_token,
    parse_network,
    parse_token,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NetworkSelection:
    enabled_networks: tuple[Network, ...]
    default_network: Network
    default_token: Token
    source: str = "env"

    def is_enabled(self, network: Network) -> bool:
        return network in self.enabled_networks

    def labels(self) -> dict[str, str]:
        return {network.value: NETWORK_LABELS[network] for network in self.enabled_networks}


def selection_from_settings(settings: Settings) -> NetworkSelection:
    if settings.enabled_networks:
        networks = tuple(settings.enabled_networks)
        return NetworkSelection(
            enabled_networks=networks,
            default_network=networks[0],
            default_token=settings.default_token,
        )
    return NetworkSelection(
        enabled_networks=(settings.default_network,),
        default_network=settings.default_network,
        default_token=settings.default_token,
        source="default",
    )


def resolve_enabled_networks(settings: Settings, monitoring: MonitoringGateway) -> NetworkSelection:
    """Adopt the monitoring service's network list when none is configured locally.

    Lookup failures keep the local defaults.
    """
    selection = selection_from_settings(settings)
    if settings.enabled_networks:
        return selection

    try:
        payload = monitoring.fetch_config()
    except (GatewayError, httpx.HTTPError, ConfigurationError) as exc:
        logger.warning(
            "network_config_fetch_failed_using_defaults",
            extra={"extra": {"error_type": type(exc).__name__, "error": str(exc)}},
        )
        return selection

    networks: list[Network] = []
    raw_networks = payload.get("networks")
    if isinstance(raw_networks, list):
        for item in raw_networks:
            raw = item.get("network") if isinstance(item, dict) else item
            network = parse_network(raw)
            if network is not None and network not in networks:
                networks.append(network)

    default_token = parse_token(payload.get("default_token")) or selection.default_token
    enabled = tuple(networks) or selection.enabled_networks
    default_network = enabled[0]
    if not is_valid_network_token(default_network, default_token):
        logger.warning(
            "network_config_token_unsupported_on_default_network",
            extra={"extra": {"network": default_network.value, "token": default_token.value}},
        )
        default_token = Token.USDT

    resolved = NetworkSelection(
        enabled_networks=enabled,
        default_network=default_network,
        default_token=default_token,
        source="monitoring" if networks else selection.source,
    )
    logger.info(
        "network_config_resolved",
        extra={
            "extra": {
                "networks": [network.value for network in resolved.enabled_networks],
                "default_token": resolved.default_token.value,
                "source": resolved.source,
            }
        },
    )
    return resolved
