from __future__ import annotations

import os
import threading
from collections import Counter
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any

import pytest

from payrecon.adapters.commerce import (
    CaptureRequest,
    CommerceGateway,
    CommerceOrder,
    CommerceTransaction,
    append_note,
    merge_tags,
)
from payrecon.adapters.monitoring import (
    CreatePaymentRequest,
    CreatePaymentResult,
    MonitoredPayment,
    MonitoringGateway,
)
from payrecon.config import Settings
from payrecon.domain.errors import GatewayError
from payrecon.domain.models import (
    Observation,
    ObservationSource,
    PaymentRecord,
    PaymentStatus,
)
from payrecon.domain.networks import Network, Token
from payrecon import observability
from payrecon.services.reconciliation_engine import ReconciliationEngine
from payrecon.services.state_store import PaymentRecordStore

SHOP = "demo.myshopify.com"


@pytest.fixture(autouse=True)
def isolate_settings_from_host_env(monkeypatch: pytest.MonkeyPatch):
    original_env_file = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    settings_env_keys: set[str] = {"HTTPX_LOG_LEVEL", "HTTPCORE_LOG_LEVEL"}
    for field in Settings.model_fields.values():
        if isinstance(field.alias, str):
            settings_env_keys.add(field.alias)
        validation_alias = getattr(field, "validation_alias", None)
        choices = getattr(validation_alias, "choices", ())
        for choice in choices:
            if isinstance(choice, str):
                settings_env_keys.add(choice)

    for key in list(os.environ):
        if key in settings_env_keys:
            monkeypatch.delenv(key, raising=False)

    yield

    Settings.model_config["env_file"] = original_env_file


@pytest.fixture(autouse=True)
def isolate_default_state_db_per_test(
    isolate_settings_from_host_env: None,
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    del isolate_settings_from_host_env
    monkeypatch.setenv("STATE_DB_PATH", str(tmp_path / "payrecon-test.sqlite"))


class RecordingInstrumentation(observability.Instrumentation):
    """Counts metric emissions per (name, sorted attrs)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.counters: Counter[tuple[str, tuple[tuple[str, str], ...]]] = Counter()

    def counter(self, name: str, value: int = 1, *, attrs: dict[str, Any] | None = None) -> None:
        labels = tuple(sorted((str(k), str(v)) for k, v in (attrs or {}).items()))
        with self._lock:
            self.counters[(name, labels)] += value

    def total(self, name: str, **attrs: str) -> int:
        wanted = {(k, str(v)) for k, v in attrs.items()}
        with self._lock:
            return sum(
                count
                for (metric, labels), count in self.counters.items()
                if metric == name and wanted.issubset(set(labels))
            )


@pytest.fixture
def instrumentation(monkeypatch: pytest.MonkeyPatch) -> RecordingInstrumentation:
    recorder = RecordingInstrumentation()
    monkeypatch.setattr(observability, "_INSTRUMENTATION", recorder)
    return recorder


class FrozenClock:
    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta: float) -> datetime:
        self.current = self.current + timedelta(**delta)
        return self.current


class FakeCommerceGateway(CommerceGateway):
    """In-memory commerce backend; ``failures`` maps a method name to the error it raises."""

    def __init__(self) -> None:
        self.orders: dict[int, CommerceOrder] = {}
        self.calls: list[str] = []
        self.captures: list[tuple[int, CaptureRequest]] = []
        self.notes: list[tuple[int, str]] = []
        self.tag_updates: list[tuple[int, list[str]]] = []
        self.cancellations: list[tuple[int, str]] = []
        self.failures: dict[str, Exception] = {}
        self.before_capture: Callable[[], None] | None = None
        self.closed = 0

    def _enter(self, method: str) -> None:
        self.calls.append(method)
        failure = self.failures.get(method)
        if failure is not None:
            raise failure

    def _order(self, order_id: int) -> CommerceOrder:
        return self.orders.setdefault(
            order_id,
            CommerceOrder(
                id=order_id,
                name=f"#{order_id}",
                financial_status="pending",
                total_price=Decimal("100"),
            ),
        )

    def get_order(self, order_id: int) -> CommerceOrder:
        self._enter("get_order")
        return self._order(order_id)

    def mark_order_as_paid(self, order_id: int, capture: CaptureRequest) -> CommerceTransaction:
        self._enter("mark_order_as_paid")
        if self.before_capture is not None:
            self.before_capture()
        self.captures.append((order_id, capture))
        self.orders[order_id] = self._order(order_id).model_copy(update={"financial_status": "paid"})
        return CommerceTransaction(id=len(self.captures), order_id=order_id, kind="capture", status="success")

    def add_order_note(self, order_id: int, note: str) -> None:
        self._enter("add_order_note")
        self.notes.append((order_id, note))
        order = self._order(order_id)
        self.orders[order_id] = order.model_copy(update={"note": append_note(order.note, note)})

    def add_order_tags(self, order_id: int, tags: str | list[str]) -> None:
        self._enter("add_order_tags")
        order = self._order(order_id)
        merged = merge_tags(order.tag_list(), tags)
        self.orders[order_id] = order.model_copy(update={"tags": ", ".join(merged)})
        self.tag_updates.append((order_id, list(tags) if isinstance(tags, list) else [tags]))

    def cancel_order(self, order_id: int, reason: str) -> None:
        self._enter("cancel_order")
        self.cancellations.append((order_id, reason))
        self.orders[order_id] = self._order(order_id).model_copy(
            update={"cancelled_at": datetime.now(UTC).isoformat()}
        )

    def close(self) -> None:
        self.closed += 1


class FakeMonitoringGateway(MonitoringGateway):
    def __init__(self) -> None:
        self.payments: dict[str, dict[str, Any]] = {}
        self.created: list[CreatePaymentRequest] = []
        self.confirmed: list[tuple[str, str]] = []
        self.config: dict[str, Any] = {}
        self.fail_with: Exception | None = None
        self.fixed_payment_id: str | None = None
        self.requires_txid = False

    def _maybe_fail(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def create_payment(self, request: CreatePaymentRequest) -> CreatePaymentResult:
        self._maybe_fail()
        self.created.append(request)
        payment_id = self.fixed_payment_id or f"pay_{len(self.created)}"
        payment = {
            "id": payment_id,
            "address": "TQn9Y2khEsLJW1ChVWFMSMeRDow5KcbLSE",
            "amount": str(request.amount),
            "network": request.network.value,
            "token": request.token.value if request.token else "USDT",
            "status": "pending",
            "expires_at": (datetime.now(UTC) + timedelta(hours=1)).isoformat(),
            "external_order_id": request.external_order_id,
            "qr_code": "data:image/png;base64,AAAA",
            "requires_txid": self.requires_txid,
            "confirm_endpoint": f"/v1/payments/{payment_id}/confirm" if self.requires_txid else None,
        }
        self.payments[payment_id] = {**payment, "paid_amount": "0", "transactions": []}
        return CreatePaymentResult(payment=MonitoredPayment.model_validate(payment))

    def get_payment(self, payment_id: str) -> dict[str, Any]:
        self._maybe_fail()
        payment = self.payments.get(payment_id)
        if payment is None:
            raise GatewayError("not found", gateway="payzcore", status_code=404)
        return payment

    def confirm_payment(self, confirm_endpoint: str, tx_hash: str) -> dict[str, Any]:
        self._maybe_fail()
        self.confirmed.append((confirm_endpoint, tx_hash))
        return {"success": True, "status": "confirming"}

    def fetch_config(self) -> dict[str, Any]:
        self._maybe_fail()
        return self.config


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime.now(UTC).replace(microsecond=0))


@pytest.fixture
def store(tmp_path: Path) -> PaymentRecordStore:
    return PaymentRecordStore(str(tmp_path / "state.db"))


@pytest.fixture
def commerce() -> FakeCommerceGateway:
    return FakeCommerceGateway()


@pytest.fixture
def monitoring() -> FakeMonitoringGateway:
    return FakeMonitoringGateway()


@pytest.fixture
def commerce_factory(commerce: FakeCommerceGateway) -> Callable[[str], CommerceGateway | None]:
    def _factory(shop_domain: str) -> CommerceGateway | None:
        return commerce if shop_domain == SHOP else None

    return _factory


@pytest.fixture
def engine(store, commerce_factory, clock) -> ReconciliationEngine:
    return ReconciliationEngine(store, commerce_factory, now_fn=clock)


@pytest.fixture
def make_record(clock: FrozenClock):
    def _make(**overrides: Any) -> PaymentRecord:
        base: dict[str, Any] = {
            "payment_id": "pay_1",
            "shop_domain": SHOP,
            "order_id": 1001,
            "order_name": "#1001",
            "network": Network.TRC20,
            "token": Token.USDT,
            "expected_amount": Decimal("100"),
            "amount": "100",
            "address": "TQn9Y2khEsLJW1ChVWFMSMeRDow5KcbLSE",
            "expires_at": clock() + timedelta(hours=1),
            "created_at": clock(),
        }
        base.update(overrides)
        return PaymentRecord(**base)

    return _make


@pytest.fixture
def make_observation(clock: FrozenClock):
    def _make(
        status: PaymentStatus | None,
        *,
        payment_id: str = "pay_1",
        source: ObservationSource = ObservationSource.PUSH,
        paid_amount: str = "0",
        tx_hash: str = "",
        observed_at: datetime | None = None,
        event: str = "",
    ) -> Observation:
        return Observation(
            payment_id=payment_id,
            status=status,
            observed_at=observed_at or clock(),
            source=source,
            raw_status=status.value if status else "",
            event=event,
            paid_amount=Decimal(paid_amount),
            expected_amount=Decimal("100"),
            tx_hash=tx_hash,
            network="TRC20",
            address="TQn9Y2khEsLJW1ChVWFMSMeRDow5KcbLSE",
        )

    return _make
