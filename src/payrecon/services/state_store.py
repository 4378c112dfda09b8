from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from payrecon.domain.models import Observation, PaymentRecord, ensure_utc
from payrecon.persistence.sqlite import create_sqlite_connection, ensure_payment_schema

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_SECONDS = 7 * 86400
ORPHAN_OUTCOME = "no_mapping"


def _now_epoch() -> int:
    return int(datetime.now(UTC).timestamp())


def _retention_deadline_epoch(record: PaymentRecord) -> int:
    created = int(ensure_utc(record.created_at).timestamp())
    return created + max(1, int(record.ttl_seconds))


@dataclass(frozen=True)
class ShopCredentials:
    shop_domain: str
    access_token: str
    scope: str
    installed_at: datetime


@dataclass(frozen=True)
class ObservationLogEntry:
    id: int
    payment_id: str
    source: str
    event: str
    observed_status: str
    outcome: str
    detail: str
    observed_at: str


class DuplicatePaymentError(ValueError):
    """Raised when a record already exists for the payment id."""


class PaymentRecordStore:
    """SQLite-backed reconciliation state; a new connection is opened per operation."""

    def __init__(self, db_path: str = "payrecon_state.db") -> None:
        self.db_path = db_path
        self.db_path_abs = str(Path(db_path).expanduser().resolve())
        with self._connect() as conn:
            ensure_payment_schema(conn)
        logger.info("state_store_startup", extra={"extra": {"db_path": self.db_path_abs}})

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = create_sqlite_connection(self.db_path)
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> PaymentRecord:
        record = PaymentRecord.model_validate_json(str(row["payload_json"]))
        return record.model_copy(update={"version": int(row["version"])})

    def create(self, record: PaymentRecord) -> PaymentRecord:
        now = datetime.now(UTC).isoformat()
        with self._connect() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO payment_records(
                        payment_id, shop_domain, order_id, canonical_status, payload_json,
                        version, created_at_epoch, expires_at_epoch, updated_at
                    ) VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?)
                    """,
                    (
                        record.payment_id,
                        record.shop_domain,
                        record.order_id,
                        record.canonical_status.value,
                        record.model_dump_json(),
                        int(ensure_utc(record.created_at).timestamp()),
                        _retention_deadline_epoch(record),
                        now,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicatePaymentError(
                    f"payment record already exists for {record.payment_id}"
                ) from exc
        logger.info(
            "payment_record_created",
            extra={
                "extra": {
                    "payment_id": record.payment_id,
                    "shop_domain": record.shop_domain,
                    "order_id": record.order_id,
                }
            },
        )
        return record.model_copy(update={"version": 0})

    def get(self, payment_id: str, *, now_epoch: int | None = None) -> PaymentRecord | None:
        resolved_now = now_epoch if now_epoch is not None else _now_epoch()
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT payload_json, version FROM payment_records
                WHERE payment_id = ? AND expires_at_epoch > ?
                """,
                (payment_id, resolved_now),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_record(row)

    def compare_and_swap(self, record: PaymentRecord, *, expected_version: int) -> PaymentRecord | None:
        """Persist ``record`` only if the stored version still equals ``expected_version``.

        Returns the stored record with its new version, or ``None`` when another writer
        committed first.
        """
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE payment_records
                SET canonical_status = ?, payload_json = ?, version = version + 1, updated_at = ?
                WHERE payment_id = ? AND version = ?
                """,
                (
                    record.canonical_status.value,
                    record.model_dump_json(),
                    datetime.now(UTC).isoformat(),
                    record.payment_id,
                    expected_version,
                ),
            )
            if cur.rowcount != 1:
                return None
        return record.model_copy(update={"version": expected_version + 1})

    def append_observation(self, observation: Observation, *, outcome: str, detail: str = "") -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO observation_log(
                    payment_id, source, event, observed_status, outcome, detail,
                    observed_at, recorded_at_epoch
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    observation.payment_id,
                    observation.source.value,
                    observation.event,
                    observation.raw_status or (observation.status.value if observation.status else ""),
                    outcome,
                    detail,
                    ensure_utc(observation.observed_at).isoformat(),
                    _now_epoch(),
                ),
            )

    def _list_log(self, where: str, params: tuple[object, ...], limit: int) -> list[ObservationLogEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT id, payment_id, source, event, observed_status, outcome, detail, observed_at
                FROM observation_log
                WHERE {where}
                ORDER BY id DESC
                LIMIT ?
                """,
                (*params, max(1, int(limit))),
            ).fetchall()
        return [
            ObservationLogEntry(
                id=int(row["id"]),
                payment_id=str(row["payment_id"]),
                source=str(row["source"]),
                event=str(row["event"]),
                observed_status=str(row["observed_status"]),
                outcome=str(row["outcome"]),
                detail=str(row["detail"]),
                observed_at=str(row["observed_at"]),
            )
            for row in rows
        ]

    def list_observations(self, payment_id: str, *, limit: int = 100) -> list[ObservationLogEntry]:
        return self._list_log("payment_id = ?", (payment_id,), limit)

    def list_orphans(self, *, limit: int = 100) -> list[ObservationLogEntry]:
        return self._list_log("outcome = ?", (ORPHAN_OUTCOME,), limit)

    def prune_expired(
        self,
        now_epoch: int | None = None,
        *,
        log_retention_seconds: int = DEFAULT_RETENTION_SECONDS,
    ) -> int:
        resolved_now = now_epoch if now_epoch is not None else _now_epoch()
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM payment_records WHERE expires_at_epoch <= ?",
                (resolved_now,),
            )
            removed = int(cur.rowcount)
            conn.execute(
                "DELETE FROM observation_log WHERE recorded_at_epoch <= ?",
                (resolved_now - max(1, log_retention_seconds),),
            )
        if removed:
            logger.info("payment_records_pruned", extra={"extra": {"removed": removed}})
        return removed

    def save_shop(self, shop_domain: str, access_token: str, *, scope: str = "") -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO shops(shop_domain, access_token, scope, installed_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(shop_domain) DO UPDATE SET
                    access_token = excluded.access_token,
                    scope = excluded.scope,
                    installed_at = excluded.installed_at
                """,
                (shop_domain, access_token, scope, datetime.now(UTC).isoformat()),
            )
        logger.info("shop_saved", extra={"extra": {"shop_domain": shop_domain}})

    def get_shop(self, shop_domain: str) -> ShopCredentials | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT shop_domain, access_token, scope, installed_at FROM shops WHERE shop_domain = ?",
                (shop_domain,),
            ).fetchone()
        if row is None:
            return None
        return ShopCredentials(
            shop_domain=str(row["shop_domain"]),
            access_token=str(row["access_token"]),
            scope=str(row["scope"]),
            installed_at=ensure_utc(datetime.fromisoformat(str(row["installed_at"]))),
        )

    def delete_shop(self, shop_domain: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM shops WHERE shop_domain = ?", (shop_domain,))
            return int(cur.rowcount) > 0
