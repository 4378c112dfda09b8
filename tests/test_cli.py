from __future__ import annotations

import json
from datetime import timedelta

import pytest

from payrecon import cli
from payrecon.config import Settings
from payrecon.context import build_context
from payrecon.domain.models import ObservationSource, PaymentStatus
from payrecon.services.state_store import PaymentRecordStore


@pytest.fixture
def db_path(tmp_path) -> str:
    return str(tmp_path / "cli.sqlite")


def _run(capsys, *argv: str) -> tuple[int, dict]:
    code = cli.main(list(argv))
    out = capsys.readouterr().out.strip().splitlines()
    return code, json.loads(out[-1])


def test_register_shop_reads_token_from_env(monkeypatch, capsys, db_path) -> None:
    monkeypatch.setenv("DEMO_SHOP_TOKEN", "shpat_secret")

    code, payload = _run(
        capsys,
        "--db", db_path,
        "register-shop", "Demo.myshopify.com",
        "--token-env", "DEMO_SHOP_TOKEN",
        "--scope", "write_orders",
    )

    assert code == 0
    assert payload == {"registered": True, "shop_domain": "demo.myshopify.com"}
    shop = PaymentRecordStore(db_path).get_shop("demo.myshopify.com")
    assert shop is not None
    assert shop.access_token == "shpat_secret"
    assert shop.scope == "write_orders"


def test_register_shop_without_token_fails(monkeypatch, capsys, db_path) -> None:
    monkeypatch.delenv("MISSING_SHOP_TOKEN", raising=False)

    code, payload = _run(
        capsys, "--db", db_path, "register-shop", "demo.myshopify.com", "--token-env", "MISSING_SHOP_TOKEN"
    )

    assert code == 1
    assert payload["error"] == "MISSING_SHOP_TOKEN is not set"
    assert PaymentRecordStore(db_path).get_shop("demo.myshopify.com") is None


def test_unregister_shop(capsys, db_path) -> None:
    PaymentRecordStore(db_path).save_shop("demo.myshopify.com", "shpat_secret")

    assert _run(capsys, "--db", db_path, "unregister-shop", "demo.myshopify.com")[0] == 0
    assert _run(capsys, "--db", db_path, "unregister-shop", "demo.myshopify.com")[0] == 1


def test_show_unknown_payment(capsys, db_path) -> None:
    code, payload = _run(capsys, "--db", db_path, "show", "pay_missing")

    assert code == 1
    assert payload == {"error": "not_found", "payment_id": "pay_missing"}


def test_show_prints_record_and_log(capsys, db_path, make_record, make_observation) -> None:
    store = PaymentRecordStore(db_path)
    store.create(make_record())
    store.append_observation(make_observation(PaymentStatus.PENDING), outcome="applied")

    code, payload = _run(capsys, "--db", db_path, "show", "pay_1")

    assert code == 0
    assert payload["record"]["payment_id"] == "pay_1"
    assert payload["record"]["canonical_status"] == "pending"
    assert payload["version"] == 0
    assert [entry["outcome"] for entry in payload["observations"]] == ["applied"]


def test_prune_removes_records_past_retention(capsys, db_path, clock, make_record) -> None:
    store = PaymentRecordStore(db_path)
    store.create(make_record(payment_id="pay_old", created_at=clock() - timedelta(days=10)))
    store.create(make_record(payment_id="pay_new"))

    code, payload = _run(capsys, "--db", db_path, "prune")

    assert code == 0
    assert payload == {"removed": 1}
    assert store.get("pay_new") is not None


def test_orphans_lists_unmatched_pushes(capsys, db_path, make_observation) -> None:
    store = PaymentRecordStore(db_path)
    store.append_observation(
        make_observation(PaymentStatus.PAID, payment_id="pay_ghost", source=ObservationSource.PUSH),
        outcome="no_mapping",
    )

    code, payload = _run(capsys, "--db", db_path, "orphans", "--limit", "5")

    assert code == 0
    assert payload["count"] == 1
    assert payload["orphans"][0]["payment_id"] == "pay_ghost"


def test_poll_requires_api_key(capsys, db_path) -> None:
    code, payload = _run(capsys, "--db", db_path, "poll", "pay_1")

    assert code == 1
    assert payload["error"] == "configuration_error"
    assert "PAYZCORE_API_KEY" in payload["detail"]


def test_poll_reconciles_once(
    monkeypatch, capsys, db_path, monitoring, commerce, commerce_factory, make_record
) -> None:
    monkeypatch.setenv("PAYZCORE_API_KEY", "pk_test")
    store = PaymentRecordStore(db_path)
    store.create(make_record())
    monitoring.payments["pay_1"] = {"status": "paid", "paid_amount": "100", "tx_hash": "abc123"}

    def _context(settings: Settings, *, resolve_networks: bool = True):
        return build_context(
            settings,
            monitoring=monitoring,
            commerce_gateway_factory=commerce_factory,
            store=store,
            resolve_networks=resolve_networks,
        )

    monkeypatch.setattr(cli, "build_context", _context)

    code, payload = _run(capsys, "--db", db_path, "poll", "pay_1")

    assert code == 0
    assert payload["status"] == "paid"
    assert payload["is_paid"] is True
    assert payload["degraded"] is False
    assert len(commerce.captures) == 1


def test_invalid_configuration_is_reported(monkeypatch, capsys, db_path) -> None:
    monkeypatch.setenv("OBSERVABILITY_METRICS_EXPORTER", "statsd")

    code, payload = _run(capsys, "--db", db_path, "orphans")

    assert code == 1
    assert payload["error"] == "invalid_configuration"
