"""
Repository for ``predictions``.

At most one live row per (buyer_id, category_name). A predictions run
upserts every qualifying key and then deletes the keys it did not produce,
so the table always reflects exactly the latest run.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import date
from typing import Optional

from marketplace_intel.db.repositories.base import BaseRepository, from_db_ts, to_db_ts
from marketplace_intel.models.intel import PredictionRecord

logger = logging.getLogger(__name__)


class PredictionRepository(BaseRepository):
    """Read/write access to ``predictions``."""

    def upsert(self, record: PredictionRecord) -> None:
        self.execute(
            """
            INSERT INTO predictions (
                buyer_id, category_name, predicted_date, confidence_score,
                avg_interval_days, based_on_transactions, last_purchase_date,
                run_id, computed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(buyer_id, category_name) DO UPDATE SET
                predicted_date        = excluded.predicted_date,
                confidence_score      = excluded.confidence_score,
                avg_interval_days     = excluded.avg_interval_days,
                based_on_transactions = excluded.based_on_transactions,
                last_purchase_date    = excluded.last_purchase_date,
                run_id                = excluded.run_id,
                computed_at           = excluded.computed_at;
            """,
            (
                record.buyer_id,
                record.category_name,
                record.predicted_date.isoformat(),
                record.confidence_score,
                record.avg_interval_days,
                record.based_on_transactions,
                to_db_ts(record.last_purchase_date),
                record.run_id,
                to_db_ts(record.computed_at),
            ),
        )

    def delete_except(
        self,
        keep: set[tuple[str, str]],
        protect_buyers: Optional[set[str]] = None,
    ) -> int:
        """Delete rows whose (buyer_id, category_name) is not in ``keep``.

        Rows belonging to ``protect_buyers`` are left alone; the predictions
        job passes the buyers whose facts failed to load, so a transient
        failure never removes their last good prediction.

        Returns:
            Number of rows deleted.
        """
        protect_buyers = protect_buyers or set()
        rows = self.fetchall("SELECT prediction_id, buyer_id, category_name FROM predictions;")
        stale = [
            (r["prediction_id"],)
            for r in rows
            if (r["buyer_id"], r["category_name"]) not in keep
            and r["buyer_id"] not in protect_buyers
        ]
        if stale:
            self.executemany("DELETE FROM predictions WHERE prediction_id = ?;", stale)
        return len(stale)

    def get(self, buyer_id: str, category_name: str) -> Optional[PredictionRecord]:
        row = self.fetchone(
            "SELECT * FROM predictions WHERE buyer_id = ? AND category_name = ?;",
            (buyer_id, category_name),
        )
        return _row_to_prediction(row) if row else None

    def list_all(self) -> list[PredictionRecord]:
        rows = self.fetchall("SELECT * FROM predictions ORDER BY predicted_date, buyer_id;")
        return [_row_to_prediction(r) for r in rows]

    def list_between(
        self,
        start: Optional[date],
        end: Optional[date],
        limit: int = 50,
    ) -> list[PredictionRecord]:
        """Predictions with ``start <= predicted_date <= end`` (open bounds allowed)."""
        clauses: list[str] = []
        params: list[str | int] = []
        if start is not None:
            clauses.append("predicted_date >= ?")
            params.append(start.isoformat())
        if end is not None:
            clauses.append("predicted_date <= ?")
            params.append(end.isoformat())
        where = ("WHERE " + " AND ".join(clauses)) if clauses else ""
        rows = self.fetchall(
            f"SELECT * FROM predictions {where} "
            "ORDER BY predicted_date, confidence_score DESC, buyer_id LIMIT ?;",
            tuple(params) + (limit,),
        )
        return [_row_to_prediction(r) for r in rows]


def _row_to_prediction(row: sqlite3.Row) -> PredictionRecord:
    return PredictionRecord(
        prediction_id=row["prediction_id"],
        buyer_id=row["buyer_id"],
        category_name=row["category_name"],
        predicted_date=date.fromisoformat(row["predicted_date"]),
        confidence_score=row["confidence_score"],
        avg_interval_days=row["avg_interval_days"],
        based_on_transactions=row["based_on_transactions"],
        last_purchase_date=from_db_ts(row["last_purchase_date"]),
        run_id=row["run_id"],
        computed_at=from_db_ts(row["computed_at"]),
    )
