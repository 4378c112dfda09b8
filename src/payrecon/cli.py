from __future__ import annotations

import argparse
import json
import logging
import os
from collections.abc import Sequence

from pydantic import ValidationError

from payrecon.config import Settings
from payrecon.context import build_context
from payrecon.domain.errors import ConfigurationError, UnknownPayment
from payrecon.logging_context import with_logging_context
from payrecon.logging_utils import setup_logging
from payrecon.observability import configure_instrumentation
from payrecon.services.state_store import PaymentRecordStore

logger = logging.getLogger(__name__)


def _load_settings(env_file: str | None, db_override: str | None) -> Settings:
    overrides: dict[str, object] = {}
    if db_override:
        overrides["STATE_DB_PATH"] = db_override
    if env_file:
        return Settings(_env_file=env_file, **overrides)
    return Settings(**overrides)


def _print(payload: object) -> None:
    print(json.dumps(payload, sort_keys=True, default=str))


def run_show(settings: Settings, payment_id: str) -> int:
    store = PaymentRecordStore(settings.state_db_path)
    record = store.get(payment_id)
    if record is None:
        _print({"payment_id": payment_id, "error": "not_found"})
        return 1
    _print(
        {
            "record": record.model_dump(mode="json"),
            "version": record.version,
            "observations": [entry.__dict__ for entry in store.list_observations(payment_id)],
        }
    )
    return 0


def run_poll(settings: Settings, payment_id: str) -> int:
    if settings.api_key_value() is None:
        raise ConfigurationError("Missing required environment variable(s): PAYZCORE_API_KEY")
    context = build_context(settings, resolve_networks=False)
    try:
        with with_logging_context(payment_id=payment_id, source="poll"):
            view = context.poll_service.poll(payment_id)
    except UnknownPayment:
        _print({"payment_id": payment_id, "error": "not_found"})
        return 1
    finally:
        context.close()
    _print({"payment_id": payment_id, "degraded": view.degraded, **view.to_payload()})
    return 0


def run_prune(settings: Settings) -> int:
    store = PaymentRecordStore(settings.state_db_path)
    removed = store.prune_expired(log_retention_seconds=settings.payment_retention_seconds)
    _print({"removed": removed})
    return 0


def run_register_shop(settings: Settings, shop_domain: str, token_env: str, scope: str) -> int:
    access_token = os.getenv(token_env, "").strip()
    if not access_token:
        _print({"shop_domain": shop_domain, "error": f"{token_env} is not set"})
        return 1
    store = PaymentRecordStore(settings.state_db_path)
    store.save_shop(shop_domain.strip().lower(), access_token, scope=scope)
    _print({"shop_domain": shop_domain.strip().lower(), "registered": True})
    return 0


def run_unregister_shop(settings: Settings, shop_domain: str) -> int:
    store = PaymentRecordStore(settings.state_db_path)
    removed = store.delete_shop(shop_domain.strip().lower())
    _print({"shop_domain": shop_domain.strip().lower(), "removed": removed})
    return 0 if removed else 1


def run_orphans(settings: Settings, limit: int) -> int:
    store = PaymentRecordStore(settings.state_db_path)
    orphans = store.list_orphans(limit=limit)
    _print({"count": len(orphans), "orphans": [entry.__dict__ for entry in orphans]})
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="payrecon")
    parser.add_argument("--env-file", default=None, help="Optional dotenv file with settings")
    parser.add_argument(
        "--db",
        default=None,
        help="State sqlite DB path (defaults to env STATE_DB_PATH)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    show_parser = subparsers.add_parser("show", help="Print the stored record and its audit log")
    show_parser.add_argument("payment_id")

    poll_parser = subparsers.add_parser("poll", help="Fetch live status and reconcile once")
    poll_parser.add_argument("payment_id")

    subparsers.add_parser("prune", help="Delete records past the retention window")

    shop_parser = subparsers.add_parser("register-shop", help="Store a shop access token")
    shop_parser.add_argument("shop_domain")
    shop_parser.add_argument(
        "--token-env",
        required=True,
        help="Name of the environment variable holding the access token",
    )
    shop_parser.add_argument("--scope", default="", help="Granted access scopes")

    unregister_parser = subparsers.add_parser(
        "unregister-shop", help="Forget a shop and its access token"
    )
    unregister_parser.add_argument("shop_domain")

    orphans_parser = subparsers.add_parser(
        "orphans", help="List push notifications for unknown payments"
    )
    orphans_parser.add_argument("--limit", type=int, default=100)

    args = parser.parse_args(argv)
    try:
        settings = _load_settings(args.env_file, args.db)
    except ValidationError as exc:
        _print({"error": "invalid_configuration", "detail": str(exc)})
        return 1
    setup_logging(settings.log_level)
    configure_instrumentation(
        enabled=settings.observability_enabled,
        metrics_exporter=settings.observability_metrics_exporter,
        otlp_endpoint=settings.observability_otlp_endpoint,
        prometheus_port=settings.observability_prometheus_port,
    )
    logger.info(
        "cli_command_started",
        extra={"extra": {"command": args.command, "db_path": settings.state_db_path}},
    )

    try:
        if args.command == "show":
            return run_show(settings, args.payment_id)
        if args.command == "poll":
            return run_poll(settings, args.payment_id)
        if args.command == "prune":
            return run_prune(settings)
        if args.command == "register-shop":
            return run_register_shop(settings, args.shop_domain, args.token_env, args.scope)
        if args.command == "unregister-shop":
            return run_unregister_shop(settings, args.shop_domain)
        if args.command == "orphans":
            return run_orphans(settings, args.limit)
    except ConfigurationError as exc:
        logger.error("cli_configuration_error", extra={"extra": {"error": str(exc)}})
        _print({"error": "configuration_error", "detail": str(exc)})
        return 1
    parser.error(f"unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
