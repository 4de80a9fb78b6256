"""
Buyer propensity: RFM-style likelihood that a buyer purchases in a category.

    overall = recency * 0.25 + frequency * 0.20 + monetary * 0.15
            + category_affinity * 0.15 + engagement * 0.25
    overall = overall * (1 - churn_risk/100 * 0.3) + overdue_boost

recency    100 at 0 days since purchase, 0 at 180 days.
frequency  10 per purchase, +20 if bought in the last 30 days, +10 for
           more than two purchases in the last 90 days.
monetary   average order value (1000 → 50) plus total spend (10000 → 50).
affinity   top-category purchases × 20 + distinct categories × 10.
engagement from bids: acceptance rate × 50, +15 for any bid, +10 for a bid
           in the last 30 days, +5 for bids across two or more categories;
           −10 when more than half of three or more bids were rejected,
           −5 when five or more bids convert below 20%.

churn_risk and overdue_boost reuse the churn detector and reorder
predictor on the same history, so the factor depends only on source facts
and never on previously stored engine rows. A buyer with no purchases and
no bids scores the neutral 50.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from marketplace_intel.aggregation.facts import BuyerActivity, FactBundle, PurchaseHistory
from marketplace_intel.churn.detector import assess as assess_churn
from marketplace_intel.config import ChurnConfig, PredictionConfig
from marketplace_intel.prediction.reorder import estimate as estimate_reorder

NEUTRAL_SCORE = 50.0
NO_PURCHASE_DAYS = 365


@dataclass(frozen=True)
class PropensityFeatures:
    days_since_last_purchase: int
    total_transactions: int
    transactions_last_30d: int
    transactions_last_90d: int
    total_spend: float
    avg_order_value: float
    category_count: int
    top_category_transactions: int
    total_bids: int
    bids_last_30d: int
    bid_categories: int
    bid_acceptance_rate: float
    bid_rejection_rate: float
    churn_risk_score: float
    overdue_days: int


@dataclass(frozen=True)
class PropensityScore:
    overall: float
    recency: float
    frequency: float
    monetary: float
    category_affinity: float
    engagement: float


def extract_features(
    activity: BuyerActivity,
    histories: list[PurchaseHistory],
    as_of: datetime,
    churn_config: ChurnConfig,
    prediction_config: PredictionConfig,
) -> PropensityFeatures:
    """Features over ``histories`` (one category, or all of the buyer's)."""
    dates = sorted(d for h in histories for d in h.dates)
    values = [
        q * p
        for h in histories
        for q, p in zip(h.quantities, h.unit_prices)
        if p is not None
    ]
    last_30 = as_of - timedelta(days=30)
    last_90 = as_of - timedelta(days=90)
    per_category = [h.purchase_count for h in histories]

    bids = activity.bids
    accepted = sum(1 for b in bids if b.status == "accepted")
    rejected = sum(1 for b in bids if b.status == "rejected")

    churn_risk = 0.0
    overdue = 0
    if len(histories) == 1:
        churn = assess_churn(histories[0], as_of, churn_config)
        if churn is not None and churn.is_at_risk:
            churn_risk = churn.risk_score
        reorder = estimate_reorder(histories[0], prediction_config)
        if reorder is not None:
            overdue = max(0, -reorder.days_until(as_of.date()))

    total_spend = sum(values)
    return PropensityFeatures(
        days_since_last_purchase=(as_of - dates[-1]).days if dates else NO_PURCHASE_DAYS,
        total_transactions=len(dates),
        transactions_last_30d=sum(1 for d in dates if d > last_30),
        transactions_last_90d=sum(1 for d in dates if d > last_90),
        total_spend=total_spend,
        avg_order_value=total_spend / len(dates) if dates else 0.0,
        category_count=sum(1 for n in per_category if n > 0),
        top_category_transactions=max(per_category, default=0),
        total_bids=len(bids),
        bids_last_30d=sum(1 for b in bids if b.created_at > last_30),
        bid_categories=len({b.category_name for b in bids if b.category_name}),
        bid_acceptance_rate=accepted / len(bids) if bids else 0.0,
        bid_rejection_rate=rejected / len(bids) if bids else 0.0,
        churn_risk_score=churn_risk,
        overdue_days=overdue,
    )


def score_features(f: PropensityFeatures) -> PropensityScore:
    recency = max(0.0, 100.0 - f.days_since_last_purchase / 180.0 * 100.0)

    frequency = min(100.0, f.total_transactions * 10.0)
    if f.transactions_last_30d > 0:
        frequency = min(100.0, frequency + 20.0)
    if f.transactions_last_90d > 2:
        frequency = min(100.0, frequency + 10.0)

    monetary = min(100.0, f.avg_order_value / 1000.0 * 50.0 + min(50.0, f.total_spend / 10000.0 * 50.0))

    affinity = min(100.0, f.top_category_transactions * 20.0 + f.category_count * 10.0)

    engagement = f.bid_acceptance_rate * 50.0
    if f.total_bids > 0:
        engagement += 15.0
    if f.bids_last_30d > 0:
        engagement += 10.0
    if f.bid_categories >= 2:
        engagement += 5.0
    if f.bid_rejection_rate > 0.5 and f.total_bids >= 3:
        engagement -= 10.0
    if f.total_bids >= 5 and f.bid_acceptance_rate < 0.2:
        engagement -= 5.0
    engagement = min(100.0, max(0.0, engagement))

    churn_penalty = f.churn_risk_score / 100.0 * 0.3
    overdue_boost = min(20.0, f.overdue_days / 7.0 * 5.0) if f.overdue_days > 0 else 0.0

    overall = (
        recency * 0.25
        + frequency * 0.20
        + monetary * 0.15
        + affinity * 0.15
        + engagement * 0.25
    )
    overall = min(100.0, max(0.0, overall * (1.0 - churn_penalty) + overdue_boost))

    return PropensityScore(
        overall=round(overall, 2),
        recency=round(recency, 2),
        frequency=round(frequency, 2),
        monetary=round(monetary, 2),
        category_affinity=round(affinity, 2),
        engagement=round(engagement, 2),
    )


def buyer_propensity(
    bundle: FactBundle,
    buyer_id: str,
    category_name: Optional[str],
    churn_config: ChurnConfig,
    prediction_config: PredictionConfig,
) -> Optional[PropensityScore]:
    """Propensity of ``buyer_id`` for ``category_name`` (or overall); ``None`` without history."""
    activity = bundle.activity.get(buyer_id)
    if activity is None or not activity.has_history:
        return None
    if category_name is not None:
        history = bundle.purchase_history(buyer_id, category_name)
        histories = [history] if history is not None else []
    else:
        histories = bundle.histories_for_buyer(buyer_id)
    features = extract_features(activity, histories, bundle.as_of, churn_config, prediction_config)
    return score_features(features)
