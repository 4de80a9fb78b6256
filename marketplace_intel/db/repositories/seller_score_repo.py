"""
Repository for ``seller_scores`` (one row per seller, overwritten on recalculation).
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Optional

from marketplace_intel.db.repositories.base import BaseRepository, from_db_ts, to_db_ts
from marketplace_intel.models.intel import SellerScore

logger = logging.getLogger(__name__)


class SellerScoreRepository(BaseRepository):
    """Read/write access to ``seller_scores``."""

    def upsert(self, score: SellerScore) -> None:
        self.execute(
            """
            INSERT INTO seller_scores (
                seller_id, fill_rate, quality_score, delivery_score, pricing_score,
                overall_score, transactions_scored, run_id, computed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(seller_id) DO UPDATE SET
                fill_rate           = excluded.fill_rate,
                quality_score       = excluded.quality_score,
                delivery_score      = excluded.delivery_score,
                pricing_score       = excluded.pricing_score,
                overall_score       = excluded.overall_score,
                transactions_scored = excluded.transactions_scored,
                run_id              = excluded.run_id,
                computed_at         = excluded.computed_at;
            """,
            (
                score.seller_id,
                score.fill_rate,
                score.quality_score,
                score.delivery_score,
                score.pricing_score,
                score.overall_score,
                score.transactions_scored,
                score.run_id,
                to_db_ts(score.computed_at),
            ),
        )

    def get(self, seller_id: str) -> Optional[SellerScore]:
        row = self.fetchone("SELECT * FROM seller_scores WHERE seller_id = ?;", (seller_id,))
        return _row_to_score(row) if row else None

    def list_all(self) -> list[SellerScore]:
        rows = self.fetchall("SELECT * FROM seller_scores ORDER BY overall_score DESC, seller_id;")
        return [_row_to_score(r) for r in rows]

    def top_sellers(self, limit: int = 5) -> list[dict[str, Any]]:
        rows = self.fetchall(
            """
            SELECT s.seller_id, u.display_name, s.overall_score, s.transactions_scored
            FROM seller_scores s JOIN users u ON u.user_id = s.seller_id
            ORDER BY s.overall_score DESC, s.seller_id
            LIMIT ?;
            """,
            (limit,),
        )
        return [dict(r) for r in rows]


def _row_to_score(row: sqlite3.Row) -> SellerScore:
    return SellerScore(
        seller_score_id=row["seller_score_id"],
        seller_id=row["seller_id"],
        fill_rate=row["fill_rate"],
        quality_score=row["quality_score"],
        delivery_score=row["delivery_score"],
        pricing_score=row["pricing_score"],
        overall_score=row["overall_score"],
        transactions_scored=row["transactions_scored"],
        run_id=row["run_id"],
        computed_at=from_db_ts(row["computed_at"]),
    )
