"""
Match factor scoring: ten independently normalized 0–100 signals.

Factor curves
-------------
category_affinity (buyer's history in the listing's category):
    purchases ≥5 → 95, ≥2 → 80, 1 → 65; else bids ≥3 → 70, ≥1 → 55;
    else 30 when the buyer has activity elsewhere.

price_fit (listing price vs buyer's volume-weighted average in category):
    diff ≤ -15% → 100, ≤ -5% → 90, ≤ +5% → 80, ≤ +15% → 60, ≤ +30% → 40, else 20.

location_fit (free-text region strings):
    equal → 100; ≥2 overlapping tokens → 80; 1 → 60; none → 30.

relationship_history (buyer's purchases from this seller):
    ≥5 → 100, ≥3 → 90, 2 → 80, 1 → 60.

reorder_timing (days until the buyer's predicted reorder in the category):
    ≤0 → 100, ≤7 → 90, ≤14 → 75, ≤30 → 50, else 25.
    Without a prediction, days since the buyer's last purchase of anything:
    >60 → 70, >30 → 50, else 30.

quantity_fit (listing quantity / buyer's average order quantity):
    [0.8, 1.2] → 100, [0.5, 2] → 75, [0.25, 4] → 50, else 25.

seller_reliability, price_vs_market, supply_demand and buyer_propensity
come from the seller scorecard, market context and propensity modules.

Any factor whose inputs are missing is ``NEUTRAL_SCORE`` (50), never null:
missing data carries no penalty and no bonus.
"""

from __future__ import annotations

import re
from typing import Optional

from marketplace_intel.aggregation.facts import PurchaseHistory
from marketplace_intel.config import MatchWeights
from marketplace_intel.models.intel import MATCH_FACTORS

NEUTRAL_SCORE = 50.0

_TOKEN_SPLIT = re.compile(r"[,\s]+")


def _clamp(value: float, lo: float = 0.0, hi: float = 100.0) -> float:
    return max(lo, min(hi, value))


def category_affinity(
    history: Optional[PurchaseHistory],
    category_bids: int,
    buyer_has_history: bool,
    category_name: Optional[str],
) -> float:
    if category_name is None or not buyer_has_history:
        return NEUTRAL_SCORE
    purchases = history.purchase_count if history is not None else 0
    if purchases >= 5:
        return 95.0
    if purchases >= 2:
        return 80.0
    if purchases == 1:
        return 65.0
    if category_bids >= 3:
        return 70.0
    if category_bids >= 1:
        return 55.0
    return 30.0


def price_fit(listing_price: Optional[float], buyer_avg_price: Optional[float]) -> float:
    if not listing_price or not buyer_avg_price:
        return NEUTRAL_SCORE
    diff = (listing_price - buyer_avg_price) / buyer_avg_price
    if diff <= -0.15:
        return 100.0
    if diff <= -0.05:
        return 90.0
    if diff <= 0.05:
        return 80.0
    if diff <= 0.15:
        return 60.0
    if diff <= 0.30:
        return 40.0
    return 20.0


def _tokens(location: str) -> list[str]:
    return [t for t in _TOKEN_SPLIT.split(location.lower().strip()) if t]


def location_fit(buyer_location: Optional[str], seller_location: Optional[str]) -> float:
    if not buyer_location or not seller_location:
        return NEUTRAL_SCORE
    b = buyer_location.lower().strip()
    s = seller_location.lower().strip()
    if b == s:
        return 100.0
    seller_tokens = _tokens(s)
    common = [t for t in _tokens(b) if any(t in st or st in t for st in seller_tokens)]
    if len(common) >= 2:
        return 80.0
    if len(common) == 1:
        return 60.0
    return 30.0


def relationship_history(purchases_from_seller: int) -> float:
    if purchases_from_seller >= 5:
        return 100.0
    if purchases_from_seller >= 3:
        return 90.0
    if purchases_from_seller == 2:
        return 80.0
    if purchases_from_seller == 1:
        return 60.0
    return NEUTRAL_SCORE


def reorder_timing(days_until_reorder: Optional[int], days_since_last_purchase: Optional[int]) -> float:
    if days_until_reorder is not None:
        if days_until_reorder <= 0:
            return 100.0
        if days_until_reorder <= 7:
            return 90.0
        if days_until_reorder <= 14:
            return 75.0
        if days_until_reorder <= 30:
            return 50.0
        return 25.0
    if days_since_last_purchase is None:
        return NEUTRAL_SCORE
    if days_since_last_purchase > 60:
        return 70.0
    if days_since_last_purchase > 30:
        return 50.0
    return 30.0


def quantity_fit(available: Optional[float], buyer_avg_quantity: Optional[float]) -> float:
    if not available or not buyer_avg_quantity:
        return NEUTRAL_SCORE
    ratio = available / buyer_avg_quantity
    if 0.8 <= ratio <= 1.2:
        return 100.0
    if 0.5 <= ratio <= 2.0:
        return 75.0
    if 0.25 <= ratio <= 4.0:
        return 50.0
    return 25.0


def normalize_breakdown(raw: dict[str, float]) -> dict[str, float]:
    """Clamp to [0, 100], round to 2 places and order by ``MATCH_FACTORS``.

    Raises:
        KeyError: If a factor is missing from ``raw``.
    """
    return {name: round(_clamp(raw[name]), 2) for name in MATCH_FACTORS}


def composite_score(breakdown: dict[str, float], weights: MatchWeights) -> float:
    """Fixed-order weighted sum, rounded to 2 places."""
    w = weights.as_dict()
    total = 0.0
    for name in MATCH_FACTORS:
        total += breakdown[name] * w[name]
    return round(_clamp(total), 2)
