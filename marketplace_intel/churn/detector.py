"""
Churn detector: ratio-tiered risk per (buyer, category) plus an overall signal.

For each (buyer, category) with at least ``min_purchases`` purchases and a
positive mean gap::

    ratio      = days_since_purchase / avg_interval_days
    risk_level = low       if ratio <  medium_ratio   (1.0)
                 medium    if ratio <  high_ratio     (1.5)
                 high      if ratio <= critical_ratio (2.0)
                 critical  otherwise
    risk_score = min(100, ratio * score_per_ratio)    (score_per_ratio = 50)

The tier is a step function of the ratio and the score is linear in it, so
for a fixed interval neither can decrease as days since purchase grow.

The buyer's overall signal (``category_name=None``) copies the single worst
category signal; one badly overdue category is never averaged away.

Lifecycle (``reconcile``):
  - tier medium or worse → active, unless the buyer dismissed it manually
    and has not purchased since;
  - an active signal whose buyer purchased again (newer last purchase date)
    and is back below medium → inactive, ``resolved_reason="purchase_made"``;
  - otherwise inactive, keeping any earlier resolution.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional

from marketplace_intel.aggregation.facts import FactBundle, PurchaseHistory
from marketplace_intel.config import ChurnConfig
from marketplace_intel.models.intel import RISK_LEVEL_RANK, ChurnSignal

logger = logging.getLogger(__name__)

PURCHASE_MADE = "purchase_made"


@dataclass(frozen=True)
class ChurnAssessment:
    """Freshly computed risk for one key, before lifecycle reconciliation."""

    buyer_id: str
    category_name: Optional[str]
    ratio: float
    risk_level: str
    risk_score: float
    days_since_purchase: int
    avg_interval_days: float
    last_purchase_date: datetime

    @property
    def category_key(self) -> str:
        return self.category_name or ""

    @property
    def is_at_risk(self) -> bool:
        return RISK_LEVEL_RANK[self.risk_level] >= RISK_LEVEL_RANK["medium"]


def classify_ratio(ratio: float, config: ChurnConfig) -> str:
    if ratio < config.medium_ratio:
        return "low"
    if ratio < config.high_ratio:
        return "medium"
    if ratio <= config.critical_ratio:
        return "high"
    return "critical"


def risk_score(ratio: float, config: ChurnConfig) -> float:
    return round(max(0.0, min(100.0, ratio * config.score_per_ratio)), 2)


def assess(history: PurchaseHistory, as_of: datetime, config: ChurnConfig) -> Optional[ChurnAssessment]:
    """Risk for one purchase history, or ``None`` when history is insufficient."""
    if history.purchase_count < config.min_purchases:
        return None
    avg = history.mean_gap_days
    if avg is None or avg <= 0:
        return None

    days_since = max(0, (as_of - history.last_purchase_date).days)
    ratio = days_since / avg
    return ChurnAssessment(
        buyer_id=history.buyer_id,
        category_name=history.category_name,
        ratio=ratio,
        risk_level=classify_ratio(ratio, config),
        risk_score=risk_score(ratio, config),
        days_since_purchase=days_since,
        avg_interval_days=round(avg, 2),
        last_purchase_date=history.last_purchase_date,
    )


def overall_assessment(assessments: list[ChurnAssessment]) -> Optional[ChurnAssessment]:
    """The worst category assessment, re-keyed as the buyer's overall signal."""
    if not assessments:
        return None
    worst = max(
        assessments,
        key=lambda a: (a.ratio, RISK_LEVEL_RANK[a.risk_level], a.category_key),
    )
    return replace(worst, category_name=None)


class ChurnDetector:
    """Evaluates every qualifying purchase history of a buyer."""

    def __init__(self, config: ChurnConfig) -> None:
        self.config = config

    def evaluate(self, bundle: FactBundle, buyer_id: str) -> list[ChurnAssessment]:
        """Category assessments followed by the overall one; empty if insufficient."""
        per_category = [
            a for a in (
                assess(h, bundle.as_of, self.config)
                for h in bundle.histories_for_buyer(buyer_id)
            )
            if a is not None
        ]
        overall = overall_assessment(per_category)
        return per_category + ([overall] if overall is not None else [])


def reconcile(
    assessment: ChurnAssessment,
    existing: Optional[ChurnSignal],
    as_of: datetime,
    run_id: Optional[int],
) -> ChurnSignal:
    """Merge a fresh assessment with the stored row for the same key."""
    purchased_since = (
        existing is not None and assessment.last_purchase_date > existing.last_purchase_date
    )
    manually_dismissed = (
        existing is not None
        and existing.resolved_at is not None
        and existing.resolved_reason != PURCHASE_MADE
        and not purchased_since
    )

    resolved_at: Optional[datetime] = None
    resolved_reason: Optional[str] = None
    if assessment.is_at_risk and not manually_dismissed:
        is_active = True
    elif existing is not None and existing.is_active and purchased_since:
        is_active = False
        resolved_at, resolved_reason = as_of, PURCHASE_MADE
    else:
        is_active = False
        if existing is not None:
            resolved_at, resolved_reason = existing.resolved_at, existing.resolved_reason

    return ChurnSignal(
        buyer_id=assessment.buyer_id,
        category_name=assessment.category_name,
        risk_level=assessment.risk_level,
        risk_score=assessment.risk_score,
        days_since_purchase=assessment.days_since_purchase,
        avg_interval_days=assessment.avg_interval_days,
        last_purchase_date=assessment.last_purchase_date,
        is_active=is_active,
        resolved_at=resolved_at,
        resolved_reason=resolved_reason,
        run_id=run_id,
        computed_at=as_of,
    )
