from payrecon.persistence.sqlite.sqlite_connection import (
    create_sqlite_connection,
    ensure_payment_schema,
)

__all__ = ["create_sqlite_connection", "ensure_payment_schema"]
