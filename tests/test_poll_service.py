from __future__ import annotations

import pytest

from payrecon.domain.errors import GatewayError, UnknownPayment, UpstreamTransient, ValidationFailure
from payrecon.domain.models import PaymentStatus
from payrecon.services.poll_service import PollService


@pytest.fixture
def poll_service(store, monitoring, engine, clock) -> PollService:
    return PollService(store, monitoring, engine, now_fn=clock)


def test_poll_feeds_live_status_through_engine(
    store, monitoring, commerce, make_record, poll_service
) -> None:
    store.create(make_record())
    monitoring.payments["pay_1"] = {
        "status": "paid",
        "paid_amount": "100",
        "expected_amount": "100",
        "tx_hash": "abc123def456",
        "transactions": [{"tx_hash": "abc123def456", "amount": "100", "confirmed": True}],
    }

    view = poll_service.poll("pay_1")

    assert view.to_payload() == {
        "status": "paid",
        "paid_amount": "100",
        "expected_amount": "100",
        "tx_hash": "abc123def456",
        "transactions": [{"tx_hash": "abc123def456", "amount": "100", "confirmed": True}],
        "is_terminal": True,
        "is_paid": True,
    }
    assert len(commerce.captures) == 1
    assert [entry.source for entry in store.list_observations("pay_1")] == ["poll"]


def test_poll_of_unknown_payment_raises(poll_service) -> None:
    with pytest.raises(UnknownPayment):
        poll_service.poll("pay_missing")


def test_gateway_failure_serves_cached_status_without_finality(
    store, monitoring, make_record, poll_service, instrumentation
) -> None:
    store.create(make_record(canonical_status=PaymentStatus.PAID))
    monitoring.fail_with = GatewayError("unavailable", gateway="payzcore", status_code=503)

    view = poll_service.poll("pay_1")

    assert view.degraded is True
    assert view.status == "paid"
    assert view.is_terminal is False
    assert view.is_paid is False
    assert instrumentation.total("poll_degraded_total") == 1


def test_gateway_failure_on_overdue_record_forces_expiry(
    store, monitoring, commerce, clock, make_record, poll_service
) -> None:
    store.create(make_record())
    monitoring.fail_with = GatewayError("unavailable", gateway="payzcore", status_code=502)
    clock.advance(hours=2)

    view = poll_service.poll("pay_1")

    assert view.status == "expired"
    assert view.is_terminal is True
    assert view.degraded is False
    assert len(commerce.cancellations) == 1


def test_engine_failure_during_poll_is_logged_not_raised(
    store, monitoring, commerce, make_record, poll_service
) -> None:
    store.create(make_record())
    monitoring.payments["pay_1"] = {"status": "paid", "paid_amount": "100"}
    commerce.failures["mark_order_as_paid"] = GatewayError("busy", gateway="shopify", status_code=503)

    view = poll_service.poll("pay_1")

    assert view.status == "pending"
    assert view.is_paid is False


def test_live_poll_clock_past_deadline_expires(store, monitoring, clock, make_record, poll_service) -> None:
    store.create(make_record())
    monitoring.payments["pay_1"] = {"status": "pending", "paid_amount": "0"}
    clock.advance(hours=1, seconds=1)

    assert poll_service.poll("pay_1").status == "expired"


@pytest.fixture
def txid_record(store, make_record):
    return store.create(
        make_record(requires_txid=True, confirm_endpoint="/v1/payments/pay_1/confirm")
    )


def test_confirm_forwards_stripped_hash(monitoring, txid_record, poll_service) -> None:
    result = poll_service.confirm("pay_1", "  0xABCDEF0123456789  ")

    assert result["status"] == "confirming"
    assert monitoring.confirmed == [("/v1/payments/pay_1/confirm", "0xABCDEF0123456789")]


@pytest.mark.parametrize(
    ("tx_hash", "message"),
    [
        (None, "Missing or invalid tx_hash"),
        ("   ", "Missing or invalid tx_hash"),
        (12345, "Missing or invalid tx_hash"),
        ("0x123", "Invalid transaction hash format"),
        ("not-a-hash-at-all", "Invalid transaction hash format"),
    ],
)
def test_confirm_validates_hash(txid_record, poll_service, tx_hash, message) -> None:
    with pytest.raises(ValidationFailure, match=message):
        poll_service.confirm("pay_1", tx_hash)


def test_confirm_requires_txid_flag(store, make_record, poll_service) -> None:
    store.create(make_record())

    with pytest.raises(ValidationFailure, match="not required"):
        poll_service.confirm("pay_1", "abcdef0123456789")


def test_confirm_upstream_failure_is_transient(monitoring, txid_record, poll_service) -> None:
    monitoring.fail_with = GatewayError("down", gateway="payzcore", status_code=500)

    with pytest.raises(UpstreamTransient, match="Failed to submit transaction hash"):
        poll_service.confirm("pay_1", "abcdef0123456789")


def test_poll_keeps_stored_tx_hash_when_live_has_none(
    store, make_record, poll_service, monitoring
) -> None:
    store.create(make_record(tx_hash="feedface00"))
    monitoring.payments["pay_1"] = {"status": "confirming"}

    view = poll_service.poll("pay_1")

    assert view.tx_hash == "feedface00"
    assert view.transactions == []
    assert view.status == "confirming"
