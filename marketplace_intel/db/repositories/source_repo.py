"""
Repository for the marketplace source tables: users, products, transactions, bids.

Reads return raw ``sqlite3.Row`` objects for transactions and bids rather
than validated models: the aggregation layer groups rows per entity first
and validates inside each group, so one malformed record cannot poison a
whole batch.

Writes exist only for ``import-records`` (local seeding); engine jobs never
call them.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime

from marketplace_intel.db.repositories.base import (
    BaseRepository,
    from_db_bool,
    from_db_ts,
    to_db_bool,
    to_db_ts,
)
from marketplace_intel.models.source import Bid, Product, Transaction, User

logger = logging.getLogger(__name__)


class SourceRepository(BaseRepository):
    """Read access to source records, plus bulk upserts for seeding."""

    # ── Users ────────────────────────────────────────────────────────────────

    def upsert_users(self, users: list[User]) -> int:
        self.executemany(
            """
            INSERT INTO users (user_id, display_name, location, can_buy, can_sell, is_active)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                display_name = excluded.display_name,
                location     = excluded.location,
                can_buy      = excluded.can_buy,
                can_sell     = excluded.can_sell,
                is_active    = excluded.is_active;
            """,
            [
                (u.user_id, u.display_name, u.location, int(u.can_buy), int(u.can_sell), int(u.is_active))
                for u in users
            ],
        )
        return len(users)

    def list_users(self) -> list[User]:
        rows = self.fetchall("SELECT * FROM users ORDER BY user_id;")
        return [_row_to_user(r) for r in rows]

    # ── Products ─────────────────────────────────────────────────────────────

    def upsert_products(self, products: list[Product]) -> int:
        self.executemany(
            """
            INSERT INTO products (
                product_id, seller_id, category_name, unit_price,
                quantity_available, is_active, listed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(product_id) DO UPDATE SET
                seller_id          = excluded.seller_id,
                category_name      = excluded.category_name,
                unit_price         = excluded.unit_price,
                quantity_available = excluded.quantity_available,
                is_active          = excluded.is_active,
                listed_at          = excluded.listed_at;
            """,
            [
                (
                    p.product_id, p.seller_id, p.category_name, p.unit_price,
                    p.quantity_available, int(p.is_active), to_db_ts(p.listed_at),
                )
                for p in products
            ],
        )
        return len(products)

    def list_products(self) -> list[Product]:
        rows = self.fetchall("SELECT * FROM products ORDER BY product_id;")
        return [_row_to_product(r) for r in rows]

    # ── Transactions ─────────────────────────────────────────────────────────

    def upsert_transactions(self, transactions: list[Transaction]) -> int:
        self.executemany(
            """
            INSERT INTO transactions (
                transaction_id, buyer_id, seller_id, product_id, category_name,
                quantity, unit_price, transaction_date,
                delivered_quantity, delivered_on_time, quality_as_expected
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(transaction_id) DO UPDATE SET
                delivered_quantity  = excluded.delivered_quantity,
                delivered_on_time   = excluded.delivered_on_time,
                quality_as_expected = excluded.quality_as_expected;
            """,
            [
                (
                    t.transaction_id, t.buyer_id, t.seller_id, t.product_id,
                    t.category_name, t.quantity, t.unit_price,
                    to_db_ts(t.transaction_date), t.delivered_quantity,
                    to_db_bool(t.delivered_on_time), to_db_bool(t.quality_as_expected),
                )
                for t in transactions
            ],
        )
        return len(transactions)

    def fetch_transaction_rows(self, as_of: datetime) -> list[sqlite3.Row]:
        """All transactions dated at or before ``as_of``, oldest first."""
        return self.fetchall(
            """
            SELECT * FROM transactions
            WHERE transaction_date <= ?
            ORDER BY transaction_date, transaction_id;
            """,
            (to_db_ts(as_of),),
        )

    # ── Bids ─────────────────────────────────────────────────────────────────

    def upsert_bids(self, bids: list[Bid]) -> int:
        self.executemany(
            """
            INSERT INTO bids (bid_id, buyer_id, product_id, status, quantity, unit_price, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(bid_id) DO UPDATE SET status = excluded.status;
            """,
            [
                (b.bid_id, b.buyer_id, b.product_id, b.status, b.quantity,
                 b.unit_price, to_db_ts(b.created_at))
                for b in bids
            ],
        )
        return len(bids)

    def fetch_bid_rows(self, as_of: datetime) -> list[sqlite3.Row]:
        """All bids created at or before ``as_of``, with the product's category."""
        return self.fetchall(
            """
            SELECT b.*, p.category_name AS category_name
            FROM bids b
            JOIN products p ON p.product_id = b.product_id
            WHERE b.created_at <= ?
            ORDER BY b.created_at, b.bid_id;
            """,
            (to_db_ts(as_of),),
        )


# ── Row mappers ───────────────────────────────────────────────────────────────

def _row_to_user(row: sqlite3.Row) -> User:
    return User(
        user_id=row["user_id"],
        display_name=row["display_name"],
        location=row["location"],
        can_buy=bool(row["can_buy"]),
        can_sell=bool(row["can_sell"]),
        is_active=bool(row["is_active"]),
    )


def _row_to_product(row: sqlite3.Row) -> Product:
    return Product(
        product_id=row["product_id"],
        seller_id=row["seller_id"],
        category_name=row["category_name"],
        unit_price=row["unit_price"],
        quantity_available=row["quantity_available"],
        is_active=bool(row["is_active"]),
        listed_at=from_db_ts(row["listed_at"]),
    )


def row_to_transaction(row: sqlite3.Row) -> Transaction:
    """Validate one raw transaction row; raises ``pydantic.ValidationError``."""
    return Transaction(
        transaction_id=row["transaction_id"],
        buyer_id=row["buyer_id"],
        seller_id=row["seller_id"],
        product_id=row["product_id"],
        category_name=row["category_name"],
        quantity=row["quantity"],
        unit_price=row["unit_price"],
        transaction_date=row["transaction_date"],
        delivered_quantity=row["delivered_quantity"],
        delivered_on_time=from_db_bool(row["delivered_on_time"]),
        quality_as_expected=from_db_bool(row["quality_as_expected"]),
    )


def row_to_bid(row: sqlite3.Row) -> Bid:
    """Validate one raw bid row; raises ``pydantic.ValidationError``."""
    return Bid(
        bid_id=row["bid_id"],
        buyer_id=row["buyer_id"],
        product_id=row["product_id"],
        status=row["status"],
        quantity=row["quantity"],
        unit_price=row["unit_price"],
        created_at=row["created_at"],
    )
