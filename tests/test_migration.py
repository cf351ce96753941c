import os
import sqlite3
import tempfile

import pytest

from migration.migration_v1_to_v2 import migrate


def create_v1_db(path: str):
    conn = sqlite3.connect(path)
    try:
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute(
            "CREATE TABLE users (id INTEGER PRIMARY KEY, email TEXT NOT NULL, password_hash TEXT NOT NULL)"
        )
        conn.execute(
            "CREATE TABLE orders (id INTEGER PRIMARY KEY, user_id INTEGER NOT NULL, total_cents INTEGER NOT NULL, "
            "status TEXT NOT NULL, FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE)"
        )
        # Seed data
        conn.execute(
            "INSERT INTO users (email, password_hash) VALUES "
            "(' Alice@Example.com ', '$2y$10$abcdefghijklmnopqrstuv'), "
            "('bob@example.com', '$2b$10$abcdefghijklmnopqrstuv')"
        )
        conn.execute(
            "INSERT INTO orders (user_id, total_cents, status) VALUES "
            "(1, 115000, 'processing'), (1, 57000, 'shipped'), (2, 57000, 'pending')"
        )
        conn.commit()
    finally:
        conn.close()


def test_migration_adds_columns_and_maps_legacy_data():
    with tempfile.TemporaryDirectory() as tmp:
        db_path = os.path.join(tmp, "test.db")
        create_v1_db(db_path)

        # Run migration
        migrate(db_path)

        # Validate
        conn = sqlite3.connect(db_path)
        try:
            user_cols = [r[1] for r in conn.execute("PRAGMA table_info(users)").fetchall()]
            assert "role" in user_cols
            order_cols = [r[1] for r in conn.execute("PRAGMA table_info(orders)").fetchall()]
            for col in ("payment_status", "payment_invoice_number", "payment_gateway_id"):
                assert col in order_cols

            rows = conn.execute("SELECT email, password_hash, role FROM users ORDER BY id").fetchall()
            assert rows[0] == ("alice@example.com", "$2b$10$abcdefghijklmnopqrstuv", "user")
            assert rows[1][1] == "$2b$10$abcdefghijklmnopqrstuv"

            rows = conn.execute("SELECT status, payment_status FROM orders ORDER BY id").fetchall()
            assert rows == [("paid", "paid"), ("fulfilled", "paid"), ("pending", "unpaid")]
        finally:
            conn.close()


def test_migration_is_idempotent():
    with tempfile.TemporaryDirectory() as tmp:
        db_path = os.path.join(tmp, "test.db")
        create_v1_db(db_path)
        migrate(db_path)
        migrate(db_path)

        conn = sqlite3.connect(db_path)
        try:
            assert conn.execute("SELECT count(*) FROM orders WHERE payment_status = 'paid'").fetchone()[0] == 2
        finally:
            conn.close()


def test_migration_rejects_missing_db():
    with pytest.raises(FileNotFoundError):
        migrate("/nonexistent/storefront.db")
    with pytest.raises(ValueError):
        migrate(":memory:")
