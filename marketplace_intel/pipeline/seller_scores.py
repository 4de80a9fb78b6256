"""
Seller scorecard recalculation job.

Only sellers with at least one outcome-recorded transaction get a row;
pricing is judged against the same market averages the match scorer uses.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Optional

from marketplace_intel.db.repositories.seller_score_repo import SellerScoreRepository
from marketplace_intel.market.context import MarketContextAggregator
from marketplace_intel.models.intel import SellerScore
from marketplace_intel.models.meta import RunMetadata
from marketplace_intel.pipeline.base import IntelJob, JobOutcome
from marketplace_intel.pipeline.fanout import fan_out
from marketplace_intel.sellers.scorecard import ScorecardComponents, score_seller

logger = logging.getLogger(__name__)


class SellerScoreJob(IntelJob):
    job_kind = "seller_scores"
    count_keys = ("sellers_updated",)

    def _execute(self, conn: sqlite3.Connection, run: RunMetadata, **kwargs) -> JobOutcome:
        bundle = self.load_facts(conn, run.as_of)
        market = MarketContextAggregator(bundle, self.config.market)

        def _score(seller_id: str) -> Optional[ScorecardComponents]:
            return score_seller(
                bundle.deliveries.get(seller_id),
                market.market_average,
                self.config.seller_scores,
            )

        fanned = fan_out(
            sorted(bundle.deliveries),
            _score,
            self.config.runs.max_workers,
            label="seller",
        )

        repo = SellerScoreRepository(conn)
        updated = 0
        for seller_id, card in fanned.results:
            if card is None:
                continue
            repo.upsert(
                SellerScore(
                    seller_id=seller_id,
                    fill_rate=card.fill_rate,
                    quality_score=card.quality_score,
                    delivery_score=card.delivery_score,
                    pricing_score=card.pricing_score,
                    overall_score=card.overall_score,
                    transactions_scored=card.transactions_scored,
                    run_id=run.run_id,
                    computed_at=run.as_of,
                )
            )
            updated += 1

        return JobOutcome(
            processed=updated,
            errors=len(bundle.failed_ids("seller")) + len(fanned.failures),
            counts={"sellers_updated": updated},
        )
