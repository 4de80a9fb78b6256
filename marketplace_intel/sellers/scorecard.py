"""
Seller scorecard: fill, quality, delivery and pricing components per seller.

Inputs are the seller's outcome-recorded transactions (``DeliveryOutcomes``).

  fill_rate      mean over transactions of min(1, delivered / ordered) × 100
  quality_score  % of transactions marked quality-as-expected
  delivery_score % of transactions marked on time
  pricing_score  seller's average unit price per category against the
                 category market average: at or below market → 100, each
                 1% above market costs ``above_market_penalty`` points;
                 categories are weighted by the seller's transaction count

Each component only counts transactions that recorded its input; a
component with no inputs is the neutral 50. ``overall_score`` is the
configured weighted sum. A seller with no outcome-recorded transactions
gets no scorecard at all.
"""

from __future__ import annotations

import statistics
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Optional

from marketplace_intel.aggregation.facts import DeliveryOutcome, DeliveryOutcomes
from marketplace_intel.config import SellerScoreConfig

NEUTRAL_SCORE = 50.0

MarketAverageFn = Callable[[str], Optional[float]]


@dataclass(frozen=True)
class ScorecardComponents:
    fill_rate: float
    quality_score: float
    delivery_score: float
    pricing_score: float
    overall_score: float
    transactions_scored: int


def fill_rate(outcomes: tuple[DeliveryOutcome, ...]) -> Optional[float]:
    ratios = [
        min(1.0, o.delivered_quantity / o.ordered_quantity)
        for o in outcomes
        if o.delivered_quantity is not None and o.ordered_quantity > 0
    ]
    return statistics.fmean(ratios) * 100.0 if ratios else None


def percent_true(values: list[Optional[bool]]) -> Optional[float]:
    recorded = [v for v in values if v is not None]
    if not recorded:
        return None
    return sum(1 for v in recorded if v) / len(recorded) * 100.0


def pricing_score(
    outcomes: tuple[DeliveryOutcome, ...],
    market_average: MarketAverageFn,
    above_market_penalty: float,
) -> Optional[float]:
    by_category: dict[str, list[float]] = defaultdict(list)
    for o in outcomes:
        if o.unit_price is not None and o.unit_price > 0:
            by_category[o.category_name].append(o.unit_price)

    weighted_sum = 0.0
    weight = 0
    for category in sorted(by_category):
        market = market_average(category)
        if market is None or market <= 0:
            continue
        seller_avg = statistics.fmean(by_category[category])
        diff_pct = (seller_avg - market) / market * 100.0
        score = 100.0 if diff_pct <= 0 else max(0.0, 100.0 - above_market_penalty * diff_pct)
        count = len(by_category[category])
        weighted_sum += score * count
        weight += count
    return weighted_sum / weight if weight else None


def score_seller(
    deliveries: Optional[DeliveryOutcomes],
    market_average: MarketAverageFn,
    config: SellerScoreConfig,
) -> Optional[ScorecardComponents]:
    """Scorecard for one seller, or ``None`` when nothing has been delivered yet."""
    if deliveries is None or not deliveries.outcomes:
        return None
    outcomes = deliveries.outcomes

    def _or_neutral(value: Optional[float]) -> float:
        return round(value, 2) if value is not None else NEUTRAL_SCORE

    fill = _or_neutral(fill_rate(outcomes))
    quality = _or_neutral(percent_true([o.quality_as_expected for o in outcomes]))
    delivery = _or_neutral(percent_true([o.on_time for o in outcomes]))
    pricing = _or_neutral(pricing_score(outcomes, market_average, config.above_market_penalty))

    w = config.weights
    overall = (
        fill * w.fill_rate
        + quality * w.quality
        + delivery * w.delivery
        + pricing * w.pricing
    )
    return ScorecardComponents(
        fill_rate=fill,
        quality_score=quality,
        delivery_score=delivery,
        pricing_score=pricing,
        overall_score=round(min(100.0, max(0.0, overall)), 2),
        transactions_scored=len(outcomes),
    )
