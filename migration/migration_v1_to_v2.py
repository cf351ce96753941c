"""
Migration V1 -> V2
- Adds 'role' to users and the payment columns to orders if missing
- Maps the legacy order status vocabulary onto pending/paid/cancelled/fulfilled
- Normalizes stored emails (trimmed, lower-case)
- Rewrites legacy '$2y$' bcrypt hash prefixes to '$2b$'

Usage:
  python -m migration.migration_v1_to_v2 --db path/to/storefront.db
"""
import argparse
import logging
import os
import sqlite3
from contextlib import closing

logger = logging.getLogger(__name__)

LEGACY_STATUS_MAP = {
    "processing": "paid",
    "shipped": "fulfilled",
    "delivered": "fulfilled",
}

ORDER_COLUMNS = {
    "payment_status": "TEXT NOT NULL DEFAULT 'unpaid'",
    "payment_method": "TEXT",
    "payment_channel": "TEXT",
    "payment_invoice_number": "TEXT",
    "payment_gateway_id": "TEXT",
    "payment_url": "TEXT",
    "payment_expires_at": "DATETIME",
    "payment_status_date": "DATETIME",
}


def has_column(conn: sqlite3.Connection, table: str, column: str) -> bool:
    cur = conn.execute(f"PRAGMA table_info({table})")
    return any(row[1] == column for row in cur.fetchall())


def migrate(db_path: str):
    if db_path == ":memory:":
        raise ValueError("Use a file-backed DB for migration script")

    if not os.path.exists(db_path):
        raise FileNotFoundError(db_path)

    with closing(sqlite3.connect(db_path)) as conn:
        conn.execute("PRAGMA foreign_keys=ON")
        conn.row_factory = sqlite3.Row

        tables = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
        for required in ("users", "orders"):
            if required not in tables:
                raise RuntimeError(f"{required} table missing; cannot migrate")

        if not has_column(conn, "users", "role"):
            conn.execute("ALTER TABLE users ADD COLUMN role TEXT NOT NULL DEFAULT 'user'")
        for column, ddl in ORDER_COLUMNS.items():
            if not has_column(conn, "orders", column):
                conn.execute(f"ALTER TABLE orders ADD COLUMN {column} {ddl}")

        for legacy, current in LEGACY_STATUS_MAP.items():
            cur = conn.execute("UPDATE orders SET status = ? WHERE status = ?", (current, legacy))
            if cur.rowcount:
                logger.info("mapped %s orders from %s to %s", cur.rowcount, legacy, current)
        # payment_status follows the order status for rows migrated as paid/fulfilled
        conn.execute(
            "UPDATE orders SET payment_status = 'paid' "
            "WHERE status IN ('paid', 'fulfilled') AND payment_status = 'unpaid'"
        )

        conn.execute("UPDATE users SET email = lower(trim(email)) WHERE email != lower(trim(email))")
        conn.execute(
            "UPDATE users SET password_hash = '$2b$' || substr(trim(password_hash), 5) "
            "WHERE trim(password_hash) LIKE '$2y$%'"
        )
        conn.commit()


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--db", required=True, help="Path to SQLite database file")
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO)
    migrate(args.db)

if __name__ == "__main__":
    main()
