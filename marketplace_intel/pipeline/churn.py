"""
Churn detection job.

Evaluates every buyer with purchase history, reconciles each fresh
assessment with the stored signal for the same (buyer, category) key and
writes the result. ``signals_created`` counts keys seen for the first
time; ``signals_updated`` counts rewrites of existing keys.

Stored signals for keys that produced no assessment this run (history
dropped below the minimum, or the buyer's facts failed to load) are left
untouched.
"""

from __future__ import annotations

import logging
import sqlite3

from marketplace_intel.churn.detector import ChurnAssessment, ChurnDetector, reconcile
from marketplace_intel.db.repositories.churn_repo import ChurnSignalRepository
from marketplace_intel.models.meta import RunMetadata
from marketplace_intel.pipeline.base import IntelJob, JobOutcome
from marketplace_intel.pipeline.fanout import fan_out

logger = logging.getLogger(__name__)


class ChurnDetectionJob(IntelJob):
    """Creates, refreshes and resolves churn signals."""

    job_kind = "churn"
    count_keys = ("signals_created", "signals_updated")

    def _execute(self, conn: sqlite3.Connection, run: RunMetadata, **kwargs) -> JobOutcome:
        bundle = self.load_facts(conn, run.as_of)
        detector = ChurnDetector(self.config.churn)

        buyers = bundle.buyer_ids_with_purchases()
        fanned = fan_out(
            buyers,
            lambda buyer_id: detector.evaluate(bundle, buyer_id),
            self.config.runs.max_workers,
            label="buyer",
        )

        repo = ChurnSignalRepository(conn)
        existing = repo.load_existing()
        created = updated = 0
        for _, assessments in fanned.results:
            for assessment in assessments:
                created_now = self._write(repo, existing, assessment, run)
                if created_now:
                    created += 1
                else:
                    updated += 1

        return JobOutcome(
            processed=len(fanned.results),
            errors=len(bundle.failed_ids("buyer")) + len(fanned.failures),
            counts={"signals_created": created, "signals_updated": updated},
        )

    @staticmethod
    def _write(
        repo: ChurnSignalRepository,
        existing: dict,
        assessment: ChurnAssessment,
        run: RunMetadata,
    ) -> bool:
        prior = existing.get((assessment.buyer_id, assessment.category_key))
        repo.upsert(reconcile(assessment, prior, run.as_of, run.run_id))
        return prior is None
