"""
SQLite schema DDL — all CREATE TABLE and CREATE INDEX statements.

All statements use ``IF NOT EXISTS`` so ``apply_schema()`` is **idempotent**:
safe to call on an already-initialized database (e.g. after restart or in tests).

Two groups of tables live in the same database:

Source tables (owned by the marketplace application; the engine only reads
them, except for ``import-records`` which seeds them for local use):
  1. users          (no FKs)
  2. products       (→ users)
  3. transactions   (→ users × 2, products)
  4. bids           (→ users, products)

Engine tables (owned and written by the engine):
  5. run_metadata   (no FKs)
  6. job_locks      (no FKs)
  7. matches        (→ users, products, run_metadata)
  8. churn_signals  (→ users, run_metadata)
  9. predictions    (→ users, run_metadata)
  10. seller_scores (→ users, run_metadata)

Timestamps are ISO-8601 UTC strings (``datetime.isoformat()``), so string
comparison orders them correctly.
"""

from __future__ import annotations

import logging
import sqlite3

logger = logging.getLogger(__name__)

# ── Source tables ─────────────────────────────────────────────────────────────

_DDL_USERS = """
CREATE TABLE IF NOT EXISTS users (
    user_id         TEXT    PRIMARY KEY,
    display_name    TEXT,
    location        TEXT,
    can_buy         INTEGER NOT NULL DEFAULT 1,
    can_sell        INTEGER NOT NULL DEFAULT 0,
    is_active       INTEGER NOT NULL DEFAULT 1,
    created_at      TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);
"""

_DDL_PRODUCTS = """
CREATE TABLE IF NOT EXISTS products (
    product_id          TEXT    PRIMARY KEY,
    seller_id           TEXT    NOT NULL REFERENCES users(user_id),
    category_name       TEXT,
    unit_price          REAL,
    quantity_available  REAL,
    is_active           INTEGER NOT NULL DEFAULT 1,
    listed_at           TEXT
);

CREATE INDEX IF NOT EXISTS idx_products_category
    ON products(category_name, is_active);
"""

_DDL_TRANSACTIONS = """
CREATE TABLE IF NOT EXISTS transactions (
    transaction_id      TEXT    PRIMARY KEY,
    buyer_id            TEXT    NOT NULL REFERENCES users(user_id),
    seller_id           TEXT    NOT NULL REFERENCES users(user_id),
    product_id          TEXT    REFERENCES products(product_id),
    category_name       TEXT    NOT NULL,
    quantity            REAL    NOT NULL,
    unit_price          REAL,
    transaction_date    TEXT    NOT NULL,
    delivered_quantity  REAL,
    delivered_on_time   INTEGER,
    quality_as_expected INTEGER
);

CREATE INDEX IF NOT EXISTS idx_tx_buyer_category
    ON transactions(buyer_id, category_name, transaction_date);

CREATE INDEX IF NOT EXISTS idx_tx_seller
    ON transactions(seller_id);

CREATE INDEX IF NOT EXISTS idx_tx_category_date
    ON transactions(category_name, transaction_date);
"""

_DDL_BIDS = """
CREATE TABLE IF NOT EXISTS bids (
    bid_id          TEXT    PRIMARY KEY,
    buyer_id        TEXT    NOT NULL REFERENCES users(user_id),
    product_id      TEXT    NOT NULL REFERENCES products(product_id),
    status          TEXT    NOT NULL DEFAULT 'pending',
    quantity        REAL,
    unit_price      REAL,
    created_at      TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_bids_buyer
    ON bids(buyer_id);
"""

# ── Engine tables ─────────────────────────────────────────────────────────────

_DDL_RUN_METADATA = """
CREATE TABLE IF NOT EXISTS run_metadata (
    run_id          INTEGER PRIMARY KEY AUTOINCREMENT,
    run_slug        TEXT    NOT NULL UNIQUE,
    job_kind        TEXT    NOT NULL,
    status          TEXT    NOT NULL DEFAULT 'started',
    as_of           TEXT    NOT NULL,
    config_snapshot TEXT    NOT NULL,
    processed       INTEGER NOT NULL DEFAULT 0,
    errors          INTEGER NOT NULL DEFAULT 0,
    counts_json     TEXT,
    error_message   TEXT,
    started_at      TEXT    NOT NULL,
    finished_at     TEXT
);

CREATE INDEX IF NOT EXISTS idx_run_kind_started
    ON run_metadata(job_kind, started_at DESC);
"""

_DDL_JOB_LOCKS = """
CREATE TABLE IF NOT EXISTS job_locks (
    lock_name       TEXT    PRIMARY KEY,
    holder          TEXT    NOT NULL,
    acquired_at     TEXT    NOT NULL,
    heartbeat_at    TEXT    NOT NULL
);
"""

_DDL_MATCHES = """
CREATE TABLE IF NOT EXISTS matches (
    match_id        INTEGER PRIMARY KEY AUTOINCREMENT,
    buyer_id        TEXT    NOT NULL REFERENCES users(user_id),
    product_id      TEXT    NOT NULL REFERENCES products(product_id),
    score           REAL    NOT NULL CHECK (score BETWEEN 0 AND 100),
    breakdown_json  TEXT    NOT NULL,
    insights_json   TEXT    NOT NULL,
    status          TEXT    NOT NULL DEFAULT 'pending',
    weights_version TEXT    NOT NULL,
    run_id          INTEGER REFERENCES run_metadata(run_id),
    created_at      TEXT    NOT NULL,
    computed_at     TEXT    NOT NULL,
    UNIQUE (buyer_id, product_id)
);

CREATE INDEX IF NOT EXISTS idx_matches_buyer_score
    ON matches(buyer_id, score DESC);

CREATE INDEX IF NOT EXISTS idx_matches_product
    ON matches(product_id);

CREATE INDEX IF NOT EXISTS idx_matches_status
    ON matches(status, score DESC);
"""

_DDL_CHURN_SIGNALS = """
CREATE TABLE IF NOT EXISTS churn_signals (
    signal_id           INTEGER PRIMARY KEY AUTOINCREMENT,
    buyer_id            TEXT    NOT NULL REFERENCES users(user_id),
    category_key        TEXT    NOT NULL,
    category_name       TEXT,
    risk_level          TEXT    NOT NULL,
    risk_score          REAL    NOT NULL CHECK (risk_score BETWEEN 0 AND 100),
    days_since_purchase INTEGER NOT NULL,
    avg_interval_days   REAL    NOT NULL,
    last_purchase_date  TEXT    NOT NULL,
    is_active           INTEGER NOT NULL DEFAULT 1,
    resolved_at         TEXT,
    resolved_reason     TEXT,
    run_id              INTEGER REFERENCES run_metadata(run_id),
    computed_at         TEXT    NOT NULL,
    UNIQUE (buyer_id, category_key)
);

CREATE INDEX IF NOT EXISTS idx_churn_active_score
    ON churn_signals(is_active, risk_score DESC);
"""

_DDL_PREDICTIONS = """
CREATE TABLE IF NOT EXISTS predictions (
    prediction_id           INTEGER PRIMARY KEY AUTOINCREMENT,
    buyer_id                TEXT    NOT NULL REFERENCES users(user_id),
    category_name           TEXT    NOT NULL,
    predicted_date          TEXT    NOT NULL,
    confidence_score        REAL    NOT NULL CHECK (confidence_score BETWEEN 0 AND 1),
    avg_interval_days       REAL    NOT NULL,
    based_on_transactions   INTEGER NOT NULL,
    last_purchase_date      TEXT    NOT NULL,
    run_id                  INTEGER REFERENCES run_metadata(run_id),
    computed_at             TEXT    NOT NULL,
    UNIQUE (buyer_id, category_name)
);

CREATE INDEX IF NOT EXISTS idx_predictions_date
    ON predictions(predicted_date);
"""

_DDL_SELLER_SCORES = """
CREATE TABLE IF NOT EXISTS seller_scores (
    seller_score_id     INTEGER PRIMARY KEY AUTOINCREMENT,
    seller_id           TEXT    NOT NULL UNIQUE REFERENCES users(user_id),
    fill_rate           REAL    NOT NULL,
    quality_score       REAL    NOT NULL,
    delivery_score      REAL    NOT NULL,
    pricing_score       REAL    NOT NULL,
    overall_score       REAL    NOT NULL CHECK (overall_score BETWEEN 0 AND 100),
    transactions_scored INTEGER NOT NULL,
    run_id              INTEGER REFERENCES run_metadata(run_id),
    computed_at         TEXT    NOT NULL
);
"""

# ── Ordered DDL list ──────────────────────────────────────────────────────────

_ALL_DDL = [
    _DDL_USERS,
    _DDL_PRODUCTS,
    _DDL_TRANSACTIONS,
    _DDL_BIDS,
    _DDL_RUN_METADATA,
    _DDL_JOB_LOCKS,
    _DDL_MATCHES,
    _DDL_CHURN_SIGNALS,
    _DDL_PREDICTIONS,
    _DDL_SELLER_SCORES,
]

SOURCE_TABLE_NAMES = ["users", "products", "transactions", "bids"]

ENGINE_TABLE_NAMES = [
    "run_metadata",
    "job_locks",
    "matches",
    "churn_signals",
    "predictions",
    "seller_scores",
]

ALL_TABLE_NAMES = SOURCE_TABLE_NAMES + ENGINE_TABLE_NAMES


def apply_schema(conn: sqlite3.Connection) -> None:
    """Apply all DDL statements to ``conn``.

    Idempotent — safe to call on an already-initialized database.

    Args:
        conn: An open ``sqlite3.Connection`` (FK enforcement should be ON).
    """
    logger.debug("Applying schema to database...")

    for ddl in _ALL_DDL:
        for statement in _split_ddl(ddl):
            conn.execute(statement)

    conn.commit()
    logger.info("Schema applied: %d tables created/verified.", len(ALL_TABLE_NAMES))


def _split_ddl(ddl: str) -> list[str]:
    """Split a multi-statement DDL block on semicolons."""
    return [s.strip() for s in ddl.split(";") if s.strip()]


def get_existing_tables(conn: sqlite3.Connection) -> list[str]:
    """Return the table names present in the database, sorted alphabetically."""
    rows = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name;"
    ).fetchall()
    return [row["name"] for row in rows]
