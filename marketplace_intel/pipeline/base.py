"""
Abstract base class for the four engine jobs.

Every job follows the same contract:
  1. Receive ``AppConfig`` at construction.
  2. ``run(as_of=None, **kwargs)`` is the sole public API and returns a
     ``JobResult``.
  3. ``run()`` takes the job kind's fleet-wide lock. If another process
     holds it, the call is a silent no-op returning ``status="skipped"``
     with zero counts, and no run record is written.
  4. Otherwise a ``RunMetadata`` record is inserted (so every row the job
     writes can carry its ``run_id``), ``_execute()`` does the work, and
     the run record is finalized with ``success``, ``partial`` (some
     entities failed) or ``failed``.
  5. ``_execute()`` is the job-specific implementation. It gathers facts,
     fans out per entity, then writes every result through one connection,
     so all upserts of a run land in a single transaction.

Usage::

    class MyJob(IntelJob):
        job_kind = "churn"
        count_keys = ("signals_created", "signals_updated")

        def _execute(self, conn, run, **kwargs) -> JobOutcome:
            return JobOutcome(processed=3, errors=0, counts={...})

    result = MyJob(config=app_config).run()
"""

from __future__ import annotations

import logging
import sqlite3
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from marketplace_intel.aggregation.facts import FactBundle, Scope
from marketplace_intel.aggregation.loader import AggregationLayer
from marketplace_intel.config import AppConfig
from marketplace_intel.db.connection import connect_from_config
from marketplace_intel.db.repositories.run_repo import RunMetadataRepository
from marketplace_intel.models.meta import RunMetadata
from marketplace_intel.pipeline.locks import LOCK_NAMES, job_lock
from marketplace_intel.utils.time_utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobOutcome:
    """What ``_execute`` reports back to ``run``."""

    processed: int
    errors: int
    counts: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class JobResult:
    """Result of one ``IntelJob.run`` call.

    Attributes:
        job_kind: Which job ran.
        status: ``success`` | ``partial`` | ``skipped``.
        as_of: Reference instant the job computed against.
        processed: Entities the job computed a result for.
        errors: Entities whose facts or scoring failed.
        counts: Job-specific counts (always the full key set for the kind).
        run_id: ``run_metadata`` row id; ``None`` when skipped.
    """

    job_kind: str
    status: str
    as_of: datetime
    processed: int = 0
    errors: int = 0
    counts: dict[str, int] = field(default_factory=dict)
    run_id: Optional[int] = None

    @property
    def skipped(self) -> bool:
        return self.status == "skipped"

    def as_dict(self) -> dict[str, Any]:
        """Flat ``{status, processed, errors, ...counts}`` for callers and the CLI."""
        return {
            "status": self.status,
            "processed": self.processed,
            "errors": self.errors,
            **self.counts,
        }


class IntelJob(ABC):
    """Abstract base for all engine jobs.

    Subclasses must:
      1. Set ``job_kind`` (one of ``VALID_JOB_KINDS``) and ``count_keys``.
      2. Implement ``_execute(conn, run, **kwargs) -> JobOutcome``.

    Attributes:
        config: The application configuration for this run.
        db_path: Path to the SQLite database (defaults to ``config.database.db_path``).
    """

    job_kind: str
    count_keys: tuple[str, ...] = ()

    def __init__(self, config: AppConfig, db_path: str | None = None) -> None:
        self.config = config
        self.db_path = db_path or config.database.db_path

    def run(self, as_of: Optional[datetime] = None, **kwargs) -> JobResult:
        """Execute this job under its lock.

        Args:
            as_of: Reference instant; defaults to now (UTC).
            **kwargs: Job-specific keyword arguments passed to ``_execute()``.

        Returns:
            ``JobResult``; ``status="skipped"`` when the lock was held elsewhere.

        Raises:
            Exception: Re-raises any exception from ``_execute()`` after
                recording ``status='failed'`` in the run record.
        """
        as_of = ensure_utc(as_of) if as_of is not None else utcnow()
        with job_lock(
            self.db_path,
            LOCK_NAMES[self.job_kind],
            self.config.runs.lock_stale_after_seconds,
        ) as acquired:
            if not acquired:
                logger.info("Job [%s] skipped: already running elsewhere.", self.job_kind)
                return JobResult(
                    job_kind=self.job_kind,
                    status="skipped",
                    as_of=as_of,
                    counts={k: 0 for k in self.count_keys},
                )
            return self._run_locked(as_of, **kwargs)

    def _run_locked(self, as_of: datetime, **kwargs) -> JobResult:
        run = RunMetadata(
            run_slug=str(uuid4()),
            job_kind=self.job_kind,
            as_of=as_of,
            config_snapshot=self.config.model_dump(),
            started_at=utcnow(),
        )
        with connect_from_config(self.config.database, self.db_path) as conn:
            run.run_id = RunMetadataRepository(conn).insert_run(run)
        logger.info(
            "Job [%s] starting | as_of=%s | run_slug=%s",
            self.job_kind, as_of.isoformat(), run.run_slug,
        )

        try:
            with connect_from_config(self.config.database, self.db_path) as conn:
                outcome = self._execute(conn, run, **kwargs)
        except Exception as exc:
            run.status = "failed"
            run.error_message = str(exc)
            run.finished_at = utcnow()
            logger.error(
                "Job [%s] FAILED: %s | run_slug=%s", self.job_kind, exc, run.run_slug
            )
            self._persist_run(run)
            raise

        counts = {k: 0 for k in self.count_keys}
        counts.update(outcome.counts)
        run.processed = outcome.processed
        run.errors = outcome.errors
        run.counts = counts
        run.status = "partial" if outcome.errors else "success"
        run.finished_at = utcnow()
        logger.info(
            "Job [%s] %s | processed=%d errors=%d counts=%s | run_slug=%s",
            self.job_kind, run.status, run.processed, run.errors, counts, run.run_slug,
        )
        self._persist_run(run)

        return JobResult(
            job_kind=self.job_kind,
            status=run.status,
            as_of=as_of,
            processed=run.processed,
            errors=run.errors,
            counts=counts,
            run_id=run.run_id,
        )

    def load_facts(self, conn: sqlite3.Connection, as_of: datetime, scope: Scope | None = None) -> FactBundle:
        return AggregationLayer(conn).load(scope or Scope(), as_of)

    @abstractmethod
    def _execute(self, conn: sqlite3.Connection, run: RunMetadata, **kwargs) -> JobOutcome:
        """Job-specific implementation.

        Args:
            conn: Open connection; everything written through it commits together.
            run: The in-progress ``RunMetadata`` (``run_id`` and ``as_of`` set).
            **kwargs: Job-specific parameters.
        """
        ...

    def _persist_run(self, run: RunMetadata) -> None:
        """Write the final state of ``run``.

        Errors are logged rather than raised so a persistence failure never
        masks the job's own outcome.
        """
        try:
            with connect_from_config(self.config.database, self.db_path) as conn:
                RunMetadataRepository(conn).update_run(run)
        except Exception as exc:
            logger.error(
                "Failed to persist RunMetadata for run_slug=%s: %s", run.run_slug, exc
            )
