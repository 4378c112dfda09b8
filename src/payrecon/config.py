from __future__ import annotations

import json
from typing import Annotated

from pydantic import AliasChoices, Field, SecretStr, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from payrecon.domain.errors import ConfigurationError
from payrecon.domain.networks import (
    Network,
    Token,
    is_valid_network_token,
    parse_network,
    parse_token,
)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    payzcore_api_key: SecretStr | None = Field(default=None, alias="PAYZCORE_API_KEY")
    payzcore_webhook_secret: SecretStr | None = Field(
        default=None, alias="PAYZCORE_WEBHOOK_SECRET"
    )
    payzcore_api_url: str = Field(default="https://api.payzcore.com", alias="PAYZCORE_API_URL")
    shopify_api_version: str = Field(default="2024-10", alias="SHOPIFY_API_VERSION")

    state_db_path: str = Field(default="payrecon_state.db", alias="STATE_DB_PATH")
    payment_retention_seconds: int = Field(default=7 * 86400, alias="PAYMENT_RETENTION_SECONDS")
    payment_expires_in_seconds: int = Field(default=3600, alias="PAYMENT_EXPIRES_IN_SECONDS")
    replay_window_seconds: int = Field(default=300, alias="REPLAY_WINDOW_SECONDS")
    monitoring_timeout_seconds: float = Field(default=30.0, alias="MONITORING_TIMEOUT_SECONDS")
    commerce_timeout_seconds: float = Field(default=15.0, alias="COMMERCE_TIMEOUT_SECONDS")

    default_network: Network = Field(
        default=Network.TRC20,
        validation_alias=AliasChoices("DEFAULT_NETWORK", "DEFAULT_CHAIN", "default_network"),
    )
    default_token: Token = Field(default=Token.USDT, alias="DEFAULT_TOKEN")
    enabled_networks: Annotated[list[Network] | None, NoDecode] = Field(
        default=None,
        validation_alias=AliasChoices("ENABLED_NETWORKS", "ENABLED_CHAINS", "enabled_networks"),
    )

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    observability_enabled: bool = Field(default=False, alias="OBSERVABILITY_ENABLED")
    observability_metrics_exporter: str = Field(
        default="none", alias="OBSERVABILITY_METRICS_EXPORTER"
    )
    observability_otlp_endpoint: str | None = Field(
        default=None, alias="OBSERVABILITY_OTLP_ENDPOINT"
    )
    observability_prometheus_port: int = Field(default=9464, alias="OBSERVABILITY_PROMETHEUS_PORT")

    @field_validator("payzcore_api_url")
    def normalize_api_url(cls, value: str) -> str:
        cleaned = value.strip().rstrip("/")
        if not cleaned:
            raise ValueError("PAYZCORE_API_URL must not be empty")
        return cleaned

    @field_validator("default_network", mode="before")
    def parse_default_network(cls, value: object) -> Network:
        network = parse_network(value)
        if network is None:
            allowed = ", ".join(item.value for item in Network)
            raise ValueError(f"DEFAULT_NETWORK must be one of: {allowed} (got: {value})")
        return network

    @field_validator("default_token", mode="before")
    def parse_default_token(cls, value: object) -> Token:
        token = parse_token(value)
        if token is None:
            allowed = ", ".join(item.value for item in Token)
            raise ValueError(f"DEFAULT_TOKEN must be one of: {allowed} (got: {value})")
        return token

    @field_validator("default_token")
    def validate_network_token(cls, value: Token, info: ValidationInfo) -> Token:
        network = info.data.get("default_network")
        if isinstance(network, Network) and not is_valid_network_token(network, value):
            raise ValueError(
                f"{value.value} is not supported on {network.value}. "
                "Use USDT or switch to an EVM network."
            )
        return value

    @field_validator("enabled_networks", mode="before")
    def parse_enabled_networks(cls, value: object) -> list[Network] | None:
        if value is None:
            return None
        items: list[object]
        if isinstance(value, str):
            raw = value.strip()
            if not raw:
                return None
            if raw.startswith("["):
                parsed = json.loads(raw)
                if not isinstance(parsed, list):
                    raise ValueError("ENABLED_NETWORKS JSON value must be a list")
                items = parsed
            else:
                items = raw.split(",")
        elif isinstance(value, list | tuple):
            items = list(value)
        else:
            raise ValueError("ENABLED_NETWORKS must be a CSV string or list")

        networks: list[Network] = []
        for item in items:
            network = parse_network(item)
            if network is not None and network not in networks:
                networks.append(network)
        if not networks:
            allowed = ", ".join(item.value for item in Network)
            raise ValueError(f"ENABLED_NETWORKS must contain at least one valid network: {allowed}")
        return networks

    @field_validator(
        "payment_retention_seconds",
        "payment_expires_in_seconds",
        "replay_window_seconds",
    )
    def validate_positive_seconds(cls, value: int, info: ValidationInfo) -> int:
        if value <= 0:
            raise ValueError(f"{info.field_name} must be > 0")
        return value

    @field_validator("monitoring_timeout_seconds", "commerce_timeout_seconds")
    def validate_timeout(cls, value: float, info: ValidationInfo) -> float:
        if value <= 0:
            raise ValueError(f"{info.field_name} must be > 0")
        return value

    @field_validator("observability_metrics_exporter")
    def validate_metrics_exporter(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"none", "otlp", "prometheus"}:
            raise ValueError("OBSERVABILITY_METRICS_EXPORTER must be one of: none, otlp, prometheus")
        return normalized

    def require_credentials(self) -> None:
        missing = [
            name
            for name, secret in (
                ("PAYZCORE_API_KEY", self.payzcore_api_key),
                ("PAYZCORE_WEBHOOK_SECRET", self.payzcore_webhook_secret),
            )
            if secret is None or not secret.get_secret_value().strip()
        ]
        if missing:
            raise ConfigurationError(f"Missing required environment variable(s): {', '.join(missing)}")

    def api_key_value(self) -> str | None:
        if self.payzcore_api_key is None:
            return None
        return self.payzcore_api_key.get_secret_value() or None

    def webhook_secret_value(self) -> str | None:
        if self.payzcore_webhook_secret is None:
            return None
        return self.payzcore_webhook_secret.get_secret_value() or None
