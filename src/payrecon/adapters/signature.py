from __future__ import annotations

import hashlib
import hmac
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

from payrecon.domain.models import parse_timestamp

SIGNATURE_HEADERS = ("x-signature", "x-payzcore-signature")
TIMESTAMP_HEADERS = ("x-timestamp", "x-payzcore-timestamp")
DEFAULT_REPLAY_WINDOW_SECONDS = 300

_HEX_SIGNATURE_RE = re.compile(r"^[0-9a-fA-F]{64}$")


class RejectReason(StrEnum):
    MISSING_HEADER = "MISSING_HEADER"
    STALE_TIMESTAMP = "STALE_TIMESTAMP"
    BAD_SIGNATURE_FORMAT = "BAD_SIGNATURE_FORMAT"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"


@dataclass(frozen=True)
class VerificationResult:
    ok: bool
    reason: RejectReason | None = None

    @classmethod
    def accepted(cls) -> VerificationResult:
        return cls(ok=True)

    @classmethod
    def rejected(cls, reason: RejectReason) -> VerificationResult:
        return cls(ok=False, reason=reason)


def _as_bytes(value: bytes | str) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def compute_signature(secret: str, timestamp: str, body: bytes | str) -> str:
    message = _as_bytes(timestamp) + b"." + _as_bytes(body)
    return hmac.new(_as_bytes(secret), message, hashlib.sha256).hexdigest()


def build_signature_headers(secret: str, timestamp: str, body: bytes | str) -> dict[str, str]:
    return {
        "X-Signature": compute_signature(secret=secret, timestamp=timestamp, body=body),
        "X-Timestamp": timestamp,
    }


def _lookup_header(headers: Mapping[str, str], names: tuple[str, ...]) -> str | None:
    lowered = {str(key).lower(): value for key, value in headers.items()}
    for name in names:
        value = lowered.get(name)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


@dataclass
class SignatureVerifier:
    """Authenticates push notifications and rejects replays outside the freshness window."""

    secret: str
    replay_window_seconds: int = DEFAULT_REPLAY_WINDOW_SECONDS
    now_fn: Callable[[], datetime] = field(default_factory=lambda: (lambda: datetime.now(UTC)))

    def verify(self, raw_body: bytes | str, headers: Mapping[str, str]) -> VerificationResult:
        signature = _lookup_header(headers, SIGNATURE_HEADERS)
        timestamp = _lookup_header(headers, TIMESTAMP_HEADERS)
        if signature is None or timestamp is None:
            return VerificationResult.rejected(RejectReason.MISSING_HEADER)

        sent_at = parse_timestamp(timestamp)
        if sent_at is None:
            return VerificationResult.rejected(RejectReason.STALE_TIMESTAMP)
        skew = abs((self.now_fn() - sent_at).total_seconds())
        if skew > self.replay_window_seconds:
            return VerificationResult.rejected(RejectReason.STALE_TIMESTAMP)

        if not _HEX_SIGNATURE_RE.match(signature):
            return VerificationResult.rejected(RejectReason.BAD_SIGNATURE_FORMAT)

        expected = compute_signature(secret=self.secret, timestamp=timestamp, body=raw_body)
        if not hmac.compare_digest(expected, signature.lower()):
            return VerificationResult.rejected(RejectReason.INVALID_SIGNATURE)
        return VerificationResult.accepted()
