"""
Repository for ``churn_signals``.

One row per (buyer_id, category_key); the buyer's overall signal is stored
under ``category_key = ''`` with ``category_name`` NULL, since SQLite treats
NULLs as distinct in UNIQUE constraints.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Any, Optional

from marketplace_intel.db.repositories.base import BaseRepository, from_db_ts, to_db_ts
from marketplace_intel.models.intel import RISK_LEVEL_RANK, RISK_LEVELS, ChurnSignal

logger = logging.getLogger(__name__)


class ChurnSignalRepository(BaseRepository):
    """Read/write access to ``churn_signals``."""

    def load_existing(self) -> dict[tuple[str, str], ChurnSignal]:
        """All stored signals keyed by (buyer_id, category_key)."""
        rows = self.fetchall("SELECT * FROM churn_signals;")
        return {(r["buyer_id"], r["category_key"]): _row_to_signal(r) for r in rows}

    def upsert(self, signal: ChurnSignal) -> None:
        """Write a whole signal row in one statement."""
        self.execute(
            """
            INSERT INTO churn_signals (
                buyer_id, category_key, category_name, risk_level, risk_score,
                days_since_purchase, avg_interval_days, last_purchase_date,
                is_active, resolved_at, resolved_reason, run_id, computed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(buyer_id, category_key) DO UPDATE SET
                risk_level          = excluded.risk_level,
                risk_score          = excluded.risk_score,
                days_since_purchase = excluded.days_since_purchase,
                avg_interval_days   = excluded.avg_interval_days,
                last_purchase_date  = excluded.last_purchase_date,
                is_active           = excluded.is_active,
                resolved_at         = excluded.resolved_at,
                resolved_reason     = excluded.resolved_reason,
                run_id              = excluded.run_id,
                computed_at         = excluded.computed_at;
            """,
            (
                signal.buyer_id,
                signal.category_key,
                signal.category_name,
                signal.risk_level,
                signal.risk_score,
                signal.days_since_purchase,
                signal.avg_interval_days,
                to_db_ts(signal.last_purchase_date),
                int(signal.is_active),
                to_db_ts(signal.resolved_at),
                signal.resolved_reason,
                signal.run_id,
                to_db_ts(signal.computed_at),
            ),
        )

    def get(self, signal_id: int) -> Optional[ChurnSignal]:
        row = self.fetchone("SELECT * FROM churn_signals WHERE signal_id = ?;", (signal_id,))
        return _row_to_signal(row) if row else None

    def get_for_buyer(self, buyer_id: str) -> list[ChurnSignal]:
        rows = self.fetchall(
            "SELECT * FROM churn_signals WHERE buyer_id = ? ORDER BY category_key;",
            (buyer_id,),
        )
        return [_row_to_signal(r) for r in rows]

    def resolve(self, signal_id: int, reason: str, resolved_at: datetime) -> bool:
        """Deactivate a signal manually. Returns ``False`` if it does not exist."""
        cur = self.execute(
            """
            UPDATE churn_signals
            SET is_active = 0, resolved_at = ?, resolved_reason = ?
            WHERE signal_id = ?;
            """,
            (to_db_ts(resolved_at), reason, signal_id),
        )
        return cur.rowcount > 0

    def list_active(self, min_risk_level: str = "medium") -> list[ChurnSignal]:
        """Active signals at or above ``min_risk_level``, highest score first."""
        if min_risk_level not in RISK_LEVEL_RANK:
            raise ValueError(
                f"Unknown risk level '{min_risk_level}'. Must be one of {list(RISK_LEVELS)}."
            )
        allowed = RISK_LEVELS[RISK_LEVEL_RANK[min_risk_level]:]
        placeholders = ",".join("?" for _ in allowed)
        rows = self.fetchall(
            f"""
            SELECT * FROM churn_signals
            WHERE is_active = 1 AND risk_level IN ({placeholders})
            ORDER BY risk_score DESC, buyer_id, category_key;
            """,
            tuple(allowed),
        )
        return [_row_to_signal(r) for r in rows]

    def stats(self) -> dict[str, Any]:
        """Per-tier counts of category-level signals plus distinct at-risk buyers."""
        rows = self.fetchall(
            """
            SELECT risk_level, COUNT(*) AS n
            FROM churn_signals
            WHERE category_key != '' AND resolved_at IS NULL
            GROUP BY risk_level;
            """
        )
        by_level = {r["risk_level"]: int(r["n"]) for r in rows}
        at_risk = self.scalar(
            "SELECT COUNT(DISTINCT buyer_id) FROM churn_signals WHERE is_active = 1;",
            default=0,
        )
        return {
            "total_at_risk": int(at_risk),
            "critical_count": by_level.get("critical", 0),
            "high_count": by_level.get("high", 0),
            "medium_count": by_level.get("medium", 0),
            "low_count": by_level.get("low", 0),
        }


def _row_to_signal(row: sqlite3.Row) -> ChurnSignal:
    return ChurnSignal(
        signal_id=row["signal_id"],
        buyer_id=row["buyer_id"],
        category_name=row["category_name"],
        risk_level=row["risk_level"],
        risk_score=row["risk_score"],
        days_since_purchase=row["days_since_purchase"],
        avg_interval_days=row["avg_interval_days"],
        last_purchase_date=from_db_ts(row["last_purchase_date"]),
        is_active=bool(row["is_active"]),
        resolved_at=from_db_ts(row["resolved_at"]),
        resolved_reason=row["resolved_reason"],
        run_id=row["run_id"],
        computed_at=from_db_ts(row["computed_at"]),
    )
