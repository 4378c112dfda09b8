from __future__ import annotations

import json
import logging
import sys

from payrecon.logging_context import get_logging_context, with_logging_context
from payrecon.logging_utils import JsonFormatter, setup_logging


def _record(msg: str, *, level: int = logging.INFO, exc_info=None) -> logging.LogRecord:
    return logging.LogRecord(
        name="payrecon.test",
        level=level,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )


def test_json_formatter_includes_exception_details() -> None:
    formatter = JsonFormatter()

    try:
        raise ValueError("boom")
    except ValueError:
        rendered = formatter.format(_record("apply failed", level=logging.ERROR, exc_info=sys.exc_info()))

    payload = json.loads(rendered)
    assert payload["message"] == "apply failed"
    assert payload["error_type"] == "ValueError"
    assert payload["error_message"] == "boom"
    assert "ValueError: boom" in payload["traceback"]


def test_setup_logging_uses_log_level_env(monkeypatch) -> None:
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")

    setup_logging()

    assert logging.getLogger().level == logging.DEBUG


def test_setup_logging_quiets_http_loggers_for_info() -> None:
    setup_logging("INFO")

    assert logging.getLogger("httpx").level == logging.WARNING
    assert logging.getLogger("httpcore").level == logging.WARNING


def test_setup_logging_debug_enables_http_debug() -> None:
    setup_logging("DEBUG")

    assert logging.getLogger("httpx").level == logging.DEBUG
    assert logging.getLogger("httpcore").level == logging.DEBUG


def test_setup_logging_respects_http_env_overrides(monkeypatch) -> None:
    monkeypatch.setenv("HTTPX_LOG_LEVEL", "ERROR")
    monkeypatch.setenv("HTTPCORE_LOG_LEVEL", "CRITICAL")

    setup_logging("INFO")

    assert logging.getLogger("httpx").level == logging.ERROR
    assert logging.getLogger("httpcore").level == logging.CRITICAL


def test_unknown_level_falls_back_to_info() -> None:
    setup_logging("chatty")

    assert logging.getLogger().level == logging.INFO


def test_json_formatter_includes_context_fields() -> None:
    formatter = JsonFormatter()

    with with_logging_context(request_id="req-1", payment_id="pay_1", source="push"):
        payload = json.loads(formatter.format(_record("webhook_received")))

    assert payload["request_id"] == "req-1"
    assert payload["payment_id"] == "pay_1"
    assert payload["source"] == "push"
    assert payload["shop_domain"] is None
    assert get_logging_context() == {}


def test_explicit_extras_win_over_context() -> None:
    formatter = JsonFormatter()
    record = _record("side_effect_executed")
    record.extra = {"payment_id": "pay_explicit", "tag": "marked_paid"}

    with with_logging_context(payment_id="pay_context"):
        payload = json.loads(formatter.format(record))

    assert payload["payment_id"] == "pay_explicit"
    assert payload["tag"] == "marked_paid"


def test_json_formatter_redacts_secrets_in_extras_and_message() -> None:
    formatter = JsonFormatter()
    record = _record("X-API-KEY: pk_live_1234567890")
    record.extra = {"api_key": "pk_live_1234567890", "token": "USDT"}

    rendered = formatter.format(record)

    assert "pk_live_1234567890" not in rendered
    assert json.loads(rendered)["token"] == "USDT"
