"""
Shared pytest fixtures for the marketplace intelligence test suite.

Provides:
  - ``in_memory_db``: A fresh in-memory SQLite connection with the full
    schema and migrations applied. Created anew for each test.
  - ``db_path``: A file-backed database under ``tmp_path``. Jobs and the
    service open their own connections, so they need a real file.
  - ``app_config``: Default ``AppConfig`` with a small worker pool.
  - Record factories (``user``, ``product``, ``tx``, ``bid``) and ``seed``,
    which writes records through ``SourceRepository``.
"""

from __future__ import annotations

import itertools
import sqlite3
from datetime import datetime
from typing import Callable, Generator, Iterable

import pytest

from marketplace_intel.config import AppConfig, RunsConfig
from marketplace_intel.db.connection import get_connection
from marketplace_intel.db.migrations import initialize_database
from marketplace_intel.db.repositories.source_repo import SourceRepository
from marketplace_intel.models.source import Bid, Product, Transaction, User


# ── Database fixtures ─────────────────────────────────────────────────────────

@pytest.fixture
def in_memory_db() -> Generator[sqlite3.Connection, None, None]:
    """Yield a fresh in-memory SQLite connection with the full schema applied.

    Foreign key enforcement is ON. Connection is closed after the test.
    """
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    initialize_database(conn)
    yield conn
    conn.close()


@pytest.fixture
def db_path(tmp_path) -> str:
    """Path to an initialized, empty database file."""
    path = str(tmp_path / "db" / "intel.db")
    with get_connection(path) as conn:
        initialize_database(conn)
    return path


@pytest.fixture
def app_config() -> AppConfig:
    return AppConfig(runs=RunsConfig(max_workers=2))


# ── Record factories ──────────────────────────────────────────────────────────

@pytest.fixture
def user() -> Callable[..., User]:
    def _make(user_id: str, **kwargs) -> User:
        kwargs.setdefault("display_name", user_id.title())
        return User(user_id=user_id, **kwargs)
    return _make


@pytest.fixture
def product() -> Callable[..., Product]:
    def _make(product_id: str, seller_id: str, category_name: str = "Flower", **kwargs) -> Product:
        kwargs.setdefault("unit_price", 10.0)
        kwargs.setdefault("quantity_available", 100.0)
        return Product(product_id=product_id, seller_id=seller_id, category_name=category_name, **kwargs)
    return _make


@pytest.fixture
def tx() -> Callable[..., Transaction]:
    """Transaction factory with sequential ids (``t-0001``, ``t-0002``, ...)."""
    counter = itertools.count(1)

    def _make(
        buyer_id: str,
        seller_id: str,
        at: datetime,
        category_name: str = "Flower",
        quantity: float = 100.0,
        unit_price: float | None = 10.0,
        **kwargs,
    ) -> Transaction:
        return Transaction(
            transaction_id=f"t-{next(counter):04d}",
            buyer_id=buyer_id,
            seller_id=seller_id,
            category_name=category_name,
            quantity=quantity,
            unit_price=unit_price,
            transaction_date=at,
            **kwargs,
        )
    return _make


@pytest.fixture
def bid() -> Callable[..., Bid]:
    counter = itertools.count(1)

    def _make(buyer_id: str, product_id: str, at: datetime, status: str = "pending", **kwargs) -> Bid:
        return Bid(
            bid_id=f"bid-{next(counter):04d}",
            buyer_id=buyer_id,
            product_id=product_id,
            status=status,
            created_at=at,
            **kwargs,
        )
    return _make


@pytest.fixture
def seed() -> Callable[..., None]:
    """Write source records through an open connection and commit."""
    def _seed(
        conn: sqlite3.Connection,
        users: Iterable[User] = (),
        products: Iterable[Product] = (),
        transactions: Iterable[Transaction] = (),
        bids: Iterable[Bid] = (),
    ) -> None:
        repo = SourceRepository(conn)
        repo.upsert_users(list(users))
        repo.upsert_products(list(products))
        repo.upsert_transactions(list(transactions))
        repo.upsert_bids(list(bids))
        conn.commit()
    return _seed
