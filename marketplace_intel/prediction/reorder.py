"""
Reorder predictor: next purchase date and confidence per (buyer, category).

    predicted_date = last_purchase_date + round(avg_interval_days)
    confidence     = clamp(0, 1, baseline(n) - damping(cv))
    baseline(n)    = 1 - baseline_decay ** (n - 1)      n = purchases
    damping(cv)    = variance_damping * cv              cv = pstdev / mean of gaps

``baseline`` rises with every additional purchase and ``damping`` rises with
irregular spacing, so confidence is monotonic in both directions.

Gaps outside ``[min_gap_days, max_gap_days]`` are dropped before averaging:
short gaps are split shipments of one order, very long gaps are outliers.
A history whose gaps are all dropped yields no prediction.
"""

from __future__ import annotations

import logging
import statistics
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional

from marketplace_intel.aggregation.facts import PurchaseHistory
from marketplace_intel.config import PredictionConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReorderEstimate:
    buyer_id: str
    category_name: str
    predicted_date: date
    confidence_score: float
    avg_interval_days: float
    based_on_transactions: int
    last_purchase_date: datetime

    def days_until(self, today: date) -> int:
        return (self.predicted_date - today).days


def usable_gaps(history: PurchaseHistory, config: PredictionConfig) -> list[int]:
    return [g for g in history.gaps_days if config.min_gap_days <= g <= config.max_gap_days]


def baseline(n: int, config: PredictionConfig) -> float:
    if n < 2:
        return 0.0
    return 1.0 - config.baseline_decay ** (n - 1)


def damping(cv: float, config: PredictionConfig) -> float:
    return config.variance_damping * max(0.0, cv)


def confidence(n: int, gaps: list[int], config: PredictionConfig) -> float:
    """Bounded confidence for ``n`` purchases with the given usable gaps."""
    mean = statistics.fmean(gaps)
    cv = statistics.pstdev(gaps) / mean if mean > 0 else 0.0
    return round(max(0.0, min(1.0, baseline(n, config) - damping(cv, config))), 4)


def estimate(history: PurchaseHistory, config: PredictionConfig) -> Optional[ReorderEstimate]:
    """Prediction for one history, or ``None`` when history is insufficient."""
    if history.purchase_count < config.min_purchases:
        return None
    gaps = usable_gaps(history, config)
    if not gaps:
        return None

    avg = statistics.fmean(gaps)
    last = history.last_purchase_date
    return ReorderEstimate(
        buyer_id=history.buyer_id,
        category_name=history.category_name,
        predicted_date=last.date() + timedelta(days=round(avg)),
        confidence_score=confidence(history.purchase_count, gaps, config),
        avg_interval_days=round(avg, 2),
        based_on_transactions=history.purchase_count,
        last_purchase_date=last,
    )
