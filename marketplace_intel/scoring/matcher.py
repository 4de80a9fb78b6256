"""
Match scorer: buyer × product composite scores with breakdown and insights.

``MatchScorer`` is stateless apart from lock-guarded per-run memo caches
shared by fan-out worker threads; it reads only the ``FactBundle`` it was
built with, so scoring the same pair twice over the same facts yields
bit-identical results.

Eligible pairs for a product: the product is active, and the buyer is an
active account allowed to buy that is not the product's own seller.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Optional

from marketplace_intel.aggregation.facts import FactBundle
from marketplace_intel.config import AppConfig
from marketplace_intel.market.context import MarketContextAggregator
from marketplace_intel.models.intel import Insight
from marketplace_intel.models.source import Product, User
from marketplace_intel.prediction.reorder import estimate as estimate_reorder
from marketplace_intel.scoring import factors
from marketplace_intel.scoring.insights import generate_insights
from marketplace_intel.scoring.propensity import buyer_propensity
from marketplace_intel.sellers.scorecard import score_seller

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScoredPair:
    """Scoring result for one buyer × product pair."""

    buyer_id: str
    product_id: str
    score: float
    breakdown: dict[str, float]
    insights: list[Insight]


class MatchScorer:
    """Scores buyer × product pairs from one ``FactBundle``.

    Args:
        bundle: Facts gathered for this run.
        config: Application configuration (weights, thresholds).
        market: Market context over the same bundle; built if omitted.
    """

    def __init__(
        self,
        bundle: FactBundle,
        config: AppConfig,
        market: Optional[MarketContextAggregator] = None,
    ) -> None:
        self.bundle = bundle
        self.config = config
        self.market = market or MarketContextAggregator(bundle, config.market)
        self._seller_reliability: dict[str, float] = {}
        self._seller_lock = threading.Lock()

    # ── Eligibility ──────────────────────────────────────────────────────────

    def eligible_buyers(self, product: Product) -> list[User]:
        if not product.is_active:
            return []
        return [
            u for _, u in sorted(self.bundle.users.items())
            if u.is_active and u.can_buy and u.user_id != product.seller_id
        ]

    # ── Factors that need more than one fact ─────────────────────────────────

    def seller_reliability(self, seller_id: str) -> float:
        with self._seller_lock:
            cached = self._seller_reliability.get(seller_id)
            if cached is not None:
                return cached
            card = score_seller(
                self.bundle.deliveries.get(seller_id),
                self.market.market_average,
                self.config.seller_scores,
            )
            value = card.overall_score if card is not None else factors.NEUTRAL_SCORE
            self._seller_reliability[seller_id] = value
            return value

    def _reorder_timing(self, buyer_id: str, category_name: Optional[str]) -> float:
        if category_name is None:
            return factors.NEUTRAL_SCORE
        as_of = self.bundle.as_of
        history = self.bundle.purchase_history(buyer_id, category_name)
        estimate = estimate_reorder(history, self.config.prediction) if history is not None else None
        if estimate is not None:
            return factors.reorder_timing(estimate.days_until(as_of.date()), None)
        activity = self.bundle.activity.get(buyer_id)
        last = activity.last_transaction_date if activity is not None else None
        return factors.reorder_timing(None, (as_of - last).days if last is not None else None)

    def _propensity(self, buyer_id: str, category_name: Optional[str]) -> float:
        score = buyer_propensity(
            self.bundle, buyer_id, category_name,
            self.config.churn, self.config.prediction,
        )
        return score.overall if score is not None else factors.NEUTRAL_SCORE

    # ── Pair scoring ─────────────────────────────────────────────────────────

    def score_pair(self, buyer: User, product: Product) -> ScoredPair:
        bundle = self.bundle
        category = product.category_name
        history = bundle.purchase_history(buyer.user_id, category)
        activity = bundle.activity.get(buyer.user_id)
        seller = bundle.users.get(product.seller_id)
        purchases_from_seller = activity.seller_counts.get(product.seller_id, 0) if activity else 0

        raw = {
            "category_affinity": factors.category_affinity(
                history,
                activity.bid_count(category) if activity and category else 0,
                activity is not None and activity.has_history,
                category,
            ),
            "price_fit": factors.price_fit(
                product.unit_price, history.avg_unit_price if history else None
            ),
            "location_fit": factors.location_fit(
                buyer.location, seller.location if seller else None
            ),
            "relationship_history": factors.relationship_history(purchases_from_seller),
            "reorder_timing": self._reorder_timing(buyer.user_id, category),
            "quantity_fit": factors.quantity_fit(
                product.quantity_available, history.avg_quantity if history else None
            ),
            "seller_reliability": self.seller_reliability(product.seller_id),
            "price_vs_market": self.market.price_vs_market_score(product),
            "supply_demand": self.market.supply_demand_score(category),
            "buyer_propensity": self._propensity(buyer.user_id, category),
        }
        breakdown = factors.normalize_breakdown(raw)
        score = factors.composite_score(breakdown, self.config.matching.weights)
        insights = generate_insights(
            breakdown,
            self.config.matching.max_insights,
            {"purchases_from_seller": purchases_from_seller},
        )
        return ScoredPair(
            buyer_id=buyer.user_id,
            product_id=product.product_id,
            score=score,
            breakdown=breakdown,
            insights=insights,
        )

    def score_product(self, product: Product) -> list[ScoredPair]:
        """Score every eligible buyer for ``product``, in buyer id order."""
        return [self.score_pair(buyer, product) for buyer in self.eligible_buyers(product)]
