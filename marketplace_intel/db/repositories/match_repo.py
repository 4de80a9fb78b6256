"""
Repository for ``matches``.

Upsert contract: a (buyer_id, product_id) pair is written in one statement.
Recompute overwrites score, breakdown, insights, weights_version, run_id
and computed_at; ``status`` and ``created_at`` are left untouched so buyer
actions survive every recompute.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Optional

from marketplace_intel.db.repositories.base import BaseRepository, from_db_ts, to_db_ts
from marketplace_intel.models.intel import VALID_MATCH_STATUSES, Insight, Match

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 50


class MatchRepository(BaseRepository):
    """Read/write access to ``matches``."""

    def existing_pairs(self, product_ids: Optional[list[str]] = None) -> set[tuple[str, str]]:
        """Return (buyer_id, product_id) keys already persisted."""
        if product_ids is None:
            rows = self.fetchall("SELECT buyer_id, product_id FROM matches;")
        else:
            placeholders = ",".join("?" for _ in product_ids)
            rows = self.fetchall(
                f"SELECT buyer_id, product_id FROM matches WHERE product_id IN ({placeholders});",
                tuple(product_ids),
            )
        return {(r["buyer_id"], r["product_id"]) for r in rows}

    def upsert(self, match: Match) -> None:
        """Insert a new match or refresh the scores of an existing one."""
        self.execute(
            """
            INSERT INTO matches (
                buyer_id, product_id, score, breakdown_json, insights_json,
                status, weights_version, run_id, created_at, computed_at
            ) VALUES (?, ?, ?, ?, ?, 'pending', ?, ?, ?, ?)
            ON CONFLICT(buyer_id, product_id) DO UPDATE SET
                score           = excluded.score,
                breakdown_json  = excluded.breakdown_json,
                insights_json   = excluded.insights_json,
                weights_version = excluded.weights_version,
                run_id          = excluded.run_id,
                computed_at     = excluded.computed_at;
            """,
            (
                match.buyer_id,
                match.product_id,
                match.score,
                json.dumps(match.breakdown),
                json.dumps([i.model_dump() for i in match.insights]),
                match.weights_version,
                match.run_id,
                to_db_ts(match.created_at or match.computed_at),
                to_db_ts(match.computed_at),
            ),
        )

    def get(self, match_id: int) -> Optional[Match]:
        row = self.fetchone("SELECT * FROM matches WHERE match_id = ?;", (match_id,))
        return _row_to_match(row) if row else None

    def get_by_pair(self, buyer_id: str, product_id: str) -> Optional[Match]:
        row = self.fetchone(
            "SELECT * FROM matches WHERE buyer_id = ? AND product_id = ?;",
            (buyer_id, product_id),
        )
        return _row_to_match(row) if row else None

    def set_status(self, match_id: int, status: str) -> bool:
        """Set a match's status. Returns ``False`` if no such match exists."""
        if status not in VALID_MATCH_STATUSES:
            raise ValueError(
                f"Unknown match status '{status}'. Must be one of {sorted(VALID_MATCH_STATUSES)}."
            )
        cur = self.execute(
            "UPDATE matches SET status = ? WHERE match_id = ?;", (status, match_id)
        )
        return cur.rowcount > 0

    def query(
        self,
        buyer_id: Optional[str] = None,
        product_id: Optional[str] = None,
        status: Optional[str] = None,
        min_score: Optional[float] = None,
        category_name: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Match], int]:
        """Filtered, score-ordered page of matches plus the total match count.

        ``limit`` is capped at ``MAX_PAGE_SIZE``; ``page`` is 1-based.
        """
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        page = max(1, page)

        clauses: list[str] = []
        params: list[Any] = []
        if buyer_id is not None:
            clauses.append("m.buyer_id = ?")
            params.append(buyer_id)
        if product_id is not None:
            clauses.append("m.product_id = ?")
            params.append(product_id)
        if status is not None:
            clauses.append("m.status = ?")
            params.append(status)
        if min_score is not None:
            clauses.append("m.score >= ?")
            params.append(min_score)
        if category_name is not None:
            clauses.append("p.category_name = ?")
            params.append(category_name)
        where = ("WHERE " + " AND ".join(clauses)) if clauses else ""

        base = f"FROM matches m JOIN products p ON p.product_id = m.product_id {where}"
        total = self.scalar(f"SELECT COUNT(*) {base};", tuple(params), default=0)
        rows = self.fetchall(
            f"SELECT m.* {base} ORDER BY m.score DESC, m.match_id LIMIT ? OFFSET ?;",
            tuple(params) + (limit, (page - 1) * limit),
        )
        return [_row_to_match(r) for r in rows], int(total)

    def list_all(self) -> list[Match]:
        rows = self.fetchall("SELECT * FROM matches ORDER BY score DESC, match_id;")
        return [_row_to_match(r) for r in rows]

    def summary(self) -> dict[str, Any]:
        """Counts and average score for the dashboard."""
        row = self.fetchone(
            """
            SELECT COUNT(*) AS total,
                   SUM(CASE WHEN status = 'pending' THEN 1 ELSE 0 END) AS pending,
                   AVG(score) AS avg_score
            FROM matches;
            """
        )
        return {
            "total": int(row["total"] or 0),
            "pending": int(row["pending"] or 0),
            "avg_score": round(row["avg_score"], 2) if row["avg_score"] is not None else None,
        }


def _row_to_match(row: sqlite3.Row) -> Match:
    return Match(
        match_id=row["match_id"],
        buyer_id=row["buyer_id"],
        product_id=row["product_id"],
        score=row["score"],
        breakdown=json.loads(row["breakdown_json"]),
        insights=[Insight(**i) for i in json.loads(row["insights_json"])],
        status=row["status"],
        weights_version=row["weights_version"],
        run_id=row["run_id"],
        created_at=from_db_ts(row["created_at"]),
        computed_at=from_db_ts(row["computed_at"]),
    )
