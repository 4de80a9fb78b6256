"""
Reorder prediction job.

Writes one prediction per qualifying (buyer, category) and then removes
every stored prediction that did not qualify this run. Buyers whose facts
failed to load keep their existing rows.
"""

from __future__ import annotations

import logging
import sqlite3

from marketplace_intel.db.repositories.prediction_repo import PredictionRepository
from marketplace_intel.models.intel import PredictionRecord
from marketplace_intel.models.meta import RunMetadata
from marketplace_intel.pipeline.base import IntelJob, JobOutcome
from marketplace_intel.pipeline.fanout import fan_out
from marketplace_intel.prediction.reorder import ReorderEstimate, estimate

logger = logging.getLogger(__name__)


class ReorderPredictionJob(IntelJob):
    job_kind = "predictions"
    count_keys = ("buyers_processed", "predictions_written", "stale_removed")

    def _execute(self, conn: sqlite3.Connection, run: RunMetadata, **kwargs) -> JobOutcome:
        bundle = self.load_facts(conn, run.as_of)
        cfg = self.config.prediction

        def _predict(buyer_id: str) -> list[ReorderEstimate]:
            estimates = (estimate(h, cfg) for h in bundle.histories_for_buyer(buyer_id))
            return [e for e in estimates if e is not None]

        fanned = fan_out(
            bundle.buyer_ids_with_purchases(),
            _predict,
            self.config.runs.max_workers,
            label="buyer",
        )

        repo = PredictionRepository(conn)
        keep: set[tuple[str, str]] = set()
        for _, estimates in fanned.results:
            for e in estimates:
                repo.upsert(
                    PredictionRecord(
                        buyer_id=e.buyer_id,
                        category_name=e.category_name,
                        predicted_date=e.predicted_date,
                        confidence_score=e.confidence_score,
                        avg_interval_days=e.avg_interval_days,
                        based_on_transactions=e.based_on_transactions,
                        last_purchase_date=e.last_purchase_date,
                        run_id=run.run_id,
                        computed_at=run.as_of,
                    )
                )
                keep.add((e.buyer_id, e.category_name))

        protect = bundle.failed_ids("buyer") | {b for b, _ in fanned.failures}
        removed = repo.delete_except(keep, protect_buyers=protect)
        if removed:
            logger.info("Removed %d stale predictions.", removed)

        return JobOutcome(
            processed=len(fanned.results),
            errors=len(bundle.failed_ids("buyer")) + len(fanned.failures),
            counts={
                "buyers_processed": len(fanned.results),
                "predictions_written": len(keep),
                "stale_removed": removed,
            },
        )
