"""
Match generation job.

Facts are always gathered for the whole marketplace, even when a single
product is requested, so a product's scores do not depend on whether it
was scored alone or in a full run.

Pairs whose buyer failed aggregation are not scored (a partial history
would overwrite a good row with neutral values), and neither are products
whose seller or category failed. Each such entity counts once in
``errors``.

Write rule: a pair already stored is always refreshed; a new pair is
inserted only when its composite reaches ``matching.min_score``. ``status``
is never written by this job.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Optional

from marketplace_intel.db.repositories.match_repo import MatchRepository
from marketplace_intel.models.intel import Match
from marketplace_intel.models.meta import RunMetadata
from marketplace_intel.models.source import Product
from marketplace_intel.pipeline.base import IntelJob, JobOutcome
from marketplace_intel.pipeline.fanout import fan_out
from marketplace_intel.scoring.matcher import MatchScorer, ScoredPair

logger = logging.getLogger(__name__)


class MatchGenerationJob(IntelJob):
    """Scores every eligible buyer against every active product (or one product)."""

    job_kind = "matches"
    count_keys = ("products_scanned", "matches_generated")

    def _execute(
        self,
        conn: sqlite3.Connection,
        run: RunMetadata,
        product_id: Optional[str] = None,
        **kwargs,
    ) -> JobOutcome:
        bundle = self.load_facts(conn, run.as_of)
        failed_buyers = bundle.failed_ids("buyer")
        failed_sellers = bundle.failed_ids("seller")
        failed_categories = bundle.failed_ids("category")

        if product_id is not None:
            product = bundle.products.get(product_id)
            if product is None:
                logger.warning("generate_matches: unknown product_id=%s", product_id)
            candidates = [product] if product is not None and product.is_active else []
        else:
            candidates = [p for _, p in sorted(bundle.products.items()) if p.is_active]

        errors = len(failed_buyers)
        products: list[Product] = []
        for p in candidates:
            if p.seller_id in failed_sellers or p.category_name in failed_categories:
                logger.warning(
                    "Skipping product %s: facts for its seller or category failed to load.",
                    p.product_id,
                )
                errors += 1
                continue
            products.append(p)

        scorer = MatchScorer(bundle, self.config)

        def _score(product: Product) -> list[ScoredPair]:
            return [
                scorer.score_pair(buyer, product)
                for buyer in scorer.eligible_buyers(product)
                if buyer.user_id not in failed_buyers
            ]

        fanned = fan_out(products, _score, self.config.runs.max_workers, label="product")
        errors += len(fanned.failures)

        repo = MatchRepository(conn)
        existing = repo.existing_pairs([p.product_id for p in products]) if products else set()
        min_score = self.config.matching.min_score
        weights_version = self.config.matching.weights.version

        written = 0
        for _, pairs in fanned.results:
            for pair in pairs:
                key = (pair.buyer_id, pair.product_id)
                if key not in existing and pair.score < min_score:
                    continue
                repo.upsert(
                    Match(
                        buyer_id=pair.buyer_id,
                        product_id=pair.product_id,
                        score=pair.score,
                        breakdown=pair.breakdown,
                        insights=pair.insights,
                        weights_version=weights_version,
                        run_id=run.run_id,
                        computed_at=run.as_of,
                    )
                )
                written += 1

        return JobOutcome(
            processed=len(fanned.results),
            errors=errors,
            counts={
                "products_scanned": len(fanned.results),
                "matches_generated": written,
            },
        )
