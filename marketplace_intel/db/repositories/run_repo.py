"""
Repository for ``run_metadata`` — the job audit log.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Optional

from marketplace_intel.db.repositories.base import BaseRepository, from_db_ts, to_db_ts
from marketplace_intel.models.meta import VALID_JOB_KINDS, RunMetadata

logger = logging.getLogger(__name__)


class RunMetadataRepository(BaseRepository):
    """Read/write access to ``run_metadata``."""

    def insert_run(self, run: RunMetadata) -> int:
        """Insert a run record and return its ``run_id``."""
        self.execute(
            """
            INSERT INTO run_metadata (
                run_slug, job_kind, status, as_of, config_snapshot,
                processed, errors, counts_json, error_message,
                started_at, finished_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                run.run_slug,
                run.job_kind,
                run.status,
                to_db_ts(run.as_of),
                json.dumps(run.config_snapshot, default=str),
                run.processed,
                run.errors,
                json.dumps(run.counts),
                run.error_message,
                to_db_ts(run.started_at),
                to_db_ts(run.finished_at),
            ),
        )
        return self.last_insert_rowid()

    def update_run(self, run: RunMetadata) -> None:
        """Write the final status and counts of a run."""
        if run.run_id is None:
            raise ValueError("Cannot update a RunMetadata without run_id.")
        self.execute(
            """
            UPDATE run_metadata
            SET status = ?, processed = ?, errors = ?, counts_json = ?,
                error_message = ?, finished_at = ?
            WHERE run_id = ?;
            """,
            (
                run.status,
                run.processed,
                run.errors,
                json.dumps(run.counts),
                run.error_message,
                to_db_ts(run.finished_at),
                run.run_id,
            ),
        )

    def get_run(self, run_id: int) -> Optional[RunMetadata]:
        row = self.fetchone("SELECT * FROM run_metadata WHERE run_id = ?;", (run_id,))
        return _row_to_run(row) if row else None

    def get_recent_runs(self, job_kind: Optional[str] = None, limit: int = 20) -> list[RunMetadata]:
        """Most recent runs first, optionally for one job kind."""
        if job_kind is None:
            rows = self.fetchall(
                "SELECT * FROM run_metadata ORDER BY started_at DESC, run_id DESC LIMIT ?;",
                (limit,),
            )
        else:
            rows = self.fetchall(
                """
                SELECT * FROM run_metadata WHERE job_kind = ?
                ORDER BY started_at DESC, run_id DESC LIMIT ?;
                """,
                (job_kind, limit),
            )
        return [_row_to_run(r) for r in rows]

    def last_finished_by_kind(self) -> dict[str, Optional[RunMetadata]]:
        """Latest finished (non-``started``) run per job kind; ``None`` if never run."""
        result: dict[str, Optional[RunMetadata]] = {}
        for kind in sorted(VALID_JOB_KINDS):
            row = self.fetchone(
                """
                SELECT * FROM run_metadata
                WHERE job_kind = ? AND status != 'started'
                ORDER BY started_at DESC, run_id DESC LIMIT 1;
                """,
                (kind,),
            )
            result[kind] = _row_to_run(row) if row else None
        return result


def _row_to_run(row: sqlite3.Row) -> RunMetadata:
    return RunMetadata(
        run_id=row["run_id"],
        run_slug=row["run_slug"],
        job_kind=row["job_kind"],
        status=row["status"],
        as_of=from_db_ts(row["as_of"]),
        config_snapshot=json.loads(row["config_snapshot"]),
        processed=row["processed"],
        errors=row["errors"],
        counts=json.loads(row["counts_json"]) if row["counts_json"] else {},
        error_message=row["error_message"],
        started_at=from_db_ts(row["started_at"]),
        finished_at=from_db_ts(row["finished_at"]),
    )
