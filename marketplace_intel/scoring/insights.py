"""
Threshold rules turning match factors into short explanations.

Each rule looks at one factor. Insights are ordered by the value of the
factor that produced them (highest first; rule order breaks ties) and then
capped, so the strongest signals are always the ones shown.
"""

from __future__ import annotations

from typing import Callable, Optional

from marketplace_intel.models.intel import Insight

Rule = tuple[str, Callable[[float, dict], Optional[Insight]]]


def _relationship(v: float, ctx: dict) -> Optional[Insight]:
    if v >= 80:
        n = ctx.get("purchases_from_seller", 0)
        return Insight(type="positive", text=f"{n} previous transactions with this seller")
    return None


def _reorder(v: float, ctx: dict) -> Optional[Insight]:
    if v >= 100:
        return Insight(type="urgent", text="Buyer is overdue for reorder")
    if v >= 90:
        return Insight(type="urgent", text="Buyer due to reorder soon")
    return None


def _price_fit(v: float, ctx: dict) -> Optional[Insight]:
    if v >= 90:
        return Insight(type="positive", text="Priced below buyer's typical spend")
    if v <= 40:
        return Insight(type="warning", text="Price higher than buyer typically pays")
    return None


def _category(v: float, ctx: dict) -> Optional[Insight]:
    if v >= 95:
        return Insight(type="positive", text="Strong category purchase history")
    return None


def _quantity(v: float, ctx: dict) -> Optional[Insight]:
    if v >= 90:
        return Insight(type="positive", text="Quantity matches typical order size")
    return None


def _location(v: float, ctx: dict) -> Optional[Insight]:
    if v >= 80:
        return Insight(type="positive", text="Same region as buyer")
    return None


def _seller(v: float, ctx: dict) -> Optional[Insight]:
    if v >= 80:
        return Insight(type="positive", text="Highly rated seller")
    if 0 < v <= 40:
        return Insight(type="warning", text="Seller has lower reliability score")
    return None


def _market_price(v: float, ctx: dict) -> Optional[Insight]:
    if v >= 80:
        return Insight(type="positive", text="Price below market average")
    if v <= 30:
        return Insight(type="warning", text="Price above market average")
    return None


def _supply_demand(v: float, ctx: dict) -> Optional[Insight]:
    if v >= 75:
        return Insight(type="urgent", text="High demand category")
    return None


def _propensity(v: float, ctx: dict) -> Optional[Insight]:
    if v >= 80:
        return Insight(type="positive", text="High propensity buyer")
    if v <= 30:
        return Insight(type="warning", text="Lower engagement buyer")
    return None


RULES: tuple[Rule, ...] = (
    ("relationship_history", _relationship),
    ("reorder_timing", _reorder),
    ("price_fit", _price_fit),
    ("category_affinity", _category),
    ("quantity_fit", _quantity),
    ("location_fit", _location),
    ("seller_reliability", _seller),
    ("price_vs_market", _market_price),
    ("supply_demand", _supply_demand),
    ("buyer_propensity", _propensity),
)


def generate_insights(
    breakdown: dict[str, float],
    max_insights: int,
    context: Optional[dict] = None,
) -> list[Insight]:
    """Insights for ``breakdown``, strongest factor first, at most ``max_insights``.

    Args:
        breakdown: Full factor → 0–100 map.
        max_insights: Cap on the number returned.
        context: Extra values some texts need (``purchases_from_seller``).
    """
    context = context or {}
    candidates: list[tuple[float, int, Insight]] = []
    for order, (factor, rule) in enumerate(RULES):
        value = breakdown[factor]
        insight = rule(value, context)
        if insight is not None:
            candidates.append((value, order, insight))
    candidates.sort(key=lambda c: (-c[0], c[1]))
    return [c[2] for c in candidates[:max_insights]]
