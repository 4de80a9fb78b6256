"""
Market context aggregator: rolling price windows and supply/demand per category.

Computed on read from a ``FactBundle``; nothing here is persisted.

Windows (with the default 7/30 day configuration):
  - short window: transactions in the last 7 days; ``change_pct`` compares
    its average with days 8–30.
  - long window: transactions in the last 30 days; ``change_pct`` compares
    its average with days 31–60.

Supply/demand:
  ``ratio = active_buyers / active_listings``, where active buyers are the
  distinct buyers who purchased in, or bid on, the category within the long
  window. A category with buyers but no listings is capped at ratio 10.
  ``ratio < oversupply_ratio`` → oversupply, ``> high_demand_ratio`` →
  high_demand, otherwise balanced.

``insights()`` ranks categories by long-window volume and pairs the busiest
with their supply/demand assessment.

The two scoring helpers (``price_vs_market_score``, ``supply_demand_score``)
feed the match scorer; both return the neutral 50 when the category has no
market data.
"""

from __future__ import annotations

import logging
import statistics
import threading
from datetime import datetime, timedelta
from typing import Optional

from marketplace_intel.aggregation.facts import FactBundle, PricePoint
from marketplace_intel.config import MarketConfig
from marketplace_intel.models.intel import (
    CategoryVolume,
    MarketContext,
    MarketInsights,
    MarketTrend,
    MarketWindow,
    SupplyDemandSummary,
)
from marketplace_intel.models.source import Product

logger = logging.getLogger(__name__)

NEUTRAL_SCORE = 50.0
NO_SUPPLY_RATIO_CAP = 10.0

INSIGHT_TOP_CATEGORIES = 5
INSIGHT_OVERVIEW_SIZE = 10

# Price-vs-market curve: ±20% from the 30-day average spans the full range.
_PRICE_BAND_PCT = 20.0
# Supply/demand curve: ratio 0.2 → 0, ratio 2.0 → 100.
_SD_FLOOR_RATIO = 0.2
_SD_CEIL_RATIO = 2.0


def _pct_change(current: Optional[float], baseline: Optional[float]) -> Optional[float]:
    if current is None or baseline is None or baseline == 0:
        return None
    return round((current - baseline) / baseline * 100.0, 2)


def _mean_price(points: list[PricePoint]) -> Optional[float]:
    if not points:
        return None
    return statistics.fmean(p.unit_price for p in points)


def build_window(
    points: list[PricePoint],
    baseline: list[PricePoint],
    days: int,
) -> MarketWindow:
    """Summarize ``points`` and compare their average against ``baseline``."""
    avg = _mean_price(points)
    return MarketWindow(
        days=days,
        avg_price=round(avg, 4) if avg is not None else None,
        min_price=min((p.unit_price for p in points), default=None),
        max_price=max((p.unit_price for p in points), default=None),
        change_pct=_pct_change(avg, _mean_price(baseline)),
        transaction_count=len(points),
        total_volume=round(sum(p.unit_price * p.quantity for p in points), 2),
    )


class MarketContextAggregator:
    """Per-category market context over one ``FactBundle``.

    Contexts are memoized per category for the lifetime of the aggregator,
    which is one job run. The memo is shared by fan-out worker threads.
    """

    def __init__(self, bundle: FactBundle, config: MarketConfig) -> None:
        self.bundle = bundle
        self.config = config
        self._cache: dict[str, MarketContext] = {}
        self._cache_lock = threading.Lock()

    @property
    def as_of(self) -> datetime:
        return self.bundle.as_of

    def context(self, category_name: str) -> MarketContext:
        with self._cache_lock:
            cached = self._cache.get(category_name)
            if cached is None:
                cached = self._cache[category_name] = self._compute(category_name)
            return cached

    def _compute(self, category_name: str) -> MarketContext:
        cfg = self.config
        as_of = self.as_of
        history = self.bundle.prices.get(category_name)
        short_start = as_of - timedelta(days=cfg.short_window_days)
        long_start = as_of - timedelta(days=cfg.long_window_days)
        prev_start = as_of - timedelta(days=2 * cfg.long_window_days)

        if history is None:
            short_pts: list[PricePoint] = []
            short_base: list[PricePoint] = []
            long_pts: list[PricePoint] = []
            long_base: list[PricePoint] = []
        else:
            short_pts = history.between(short_start, as_of)
            short_base = history.between(long_start, short_start)
            long_pts = history.between(long_start, as_of)
            long_base = history.between(prev_start, long_start)

        active_listings = sum(
            1 for p in self.bundle.products.values()
            if p.is_active and p.category_name == category_name
        )
        active_buyers = len(self._active_buyers(category_name, long_start))
        ratio = self._ratio(active_buyers, active_listings)

        return MarketContext(
            category_name=category_name,
            as_of=as_of,
            short_window=build_window(short_pts, short_base, cfg.short_window_days),
            long_window=build_window(long_pts, long_base, cfg.long_window_days),
            active_listings=active_listings,
            active_buyers=active_buyers,
            supply_demand_ratio=ratio,
            assessment=self._assess(ratio, active_buyers, active_listings),
        )

    def _active_buyers(self, category_name: str, since: datetime) -> set[str]:
        buyers: set[str] = set()
        for (buyer_id, category), history in self.bundle.purchases.items():
            if category == category_name and any(since < d <= self.as_of for d in history.dates):
                buyers.add(buyer_id)
        for buyer_id, activity in self.bundle.activity.items():
            if any(
                b.category_name == category_name and since < b.created_at <= self.as_of
                for b in activity.bids
            ):
                buyers.add(buyer_id)
        return buyers

    @staticmethod
    def _ratio(active_buyers: int, active_listings: int) -> float:
        if active_listings > 0:
            return round(active_buyers / active_listings, 4)
        return NO_SUPPLY_RATIO_CAP if active_buyers > 0 else 0.0

    def _assess(self, ratio: float, active_buyers: int, active_listings: int) -> str:
        if active_buyers == 0 and active_listings == 0:
            return "balanced"
        if ratio > self.config.high_demand_ratio:
            return "high_demand"
        if ratio < self.config.oversupply_ratio:
            return "oversupply"
        return "balanced"

    # ── Scores used by the match scorer ──────────────────────────────────────

    def market_average(self, category_name: str) -> Optional[float]:
        """Long-window average, falling back to the category's all-time average."""
        avg = self.context(category_name).long_window.avg_price
        if avg is not None:
            return avg
        history = self.bundle.prices.get(category_name)
        return history.all_time_avg if history is not None else None

    def price_vs_market_score(self, product: Product) -> float:
        """100 at 20%+ below market, 0 at 20%+ above, linear in between."""
        if product.unit_price is None or product.category_name is None:
            return NEUTRAL_SCORE
        avg = self.context(product.category_name).long_window.avg_price
        if avg is None or avg <= 0:
            return NEUTRAL_SCORE
        pct = (product.unit_price - avg) / avg * 100.0
        if pct <= -_PRICE_BAND_PCT:
            return 100.0
        if pct >= _PRICE_BAND_PCT:
            return 0.0
        return 50.0 - pct * (50.0 / _PRICE_BAND_PCT)

    def supply_demand_score(self, category_name: Optional[str]) -> float:
        """0 at ratio 0.2 or below, 100 at ratio 2.0 or above."""
        if category_name is None:
            return NEUTRAL_SCORE
        ctx = self.context(category_name)
        if ctx.active_buyers == 0 and ctx.long_window.transaction_count == 0:
            return NEUTRAL_SCORE
        ratio = ctx.supply_demand_ratio
        if ratio >= _SD_CEIL_RATIO:
            return 100.0
        if ratio <= _SD_FLOOR_RATIO:
            return 0.0
        return (ratio - _SD_FLOOR_RATIO) / (_SD_CEIL_RATIO - _SD_FLOOR_RATIO) * 100.0

    # ── Trends ───────────────────────────────────────────────────────────────

    def trends(self) -> list[MarketTrend]:
        """Current vs previous long-window average for every category with recent trades.

        Sorted by absolute change, largest first; categories without a
        previous window sort last.
        """
        long_start = self.as_of - timedelta(days=self.config.long_window_days)
        prev_start = self.as_of - timedelta(days=2 * self.config.long_window_days)

        result: list[MarketTrend] = []
        for category_name, history in sorted(self.bundle.prices.items()):
            window = self.context(category_name).long_window
            if window.avg_price is None:
                continue
            change = window.change_pct
            if change is None or abs(change) <= self.config.trend_threshold_pct:
                direction = "stable"
            else:
                direction = "up" if change > 0 else "down"
            previous = _mean_price(history.between(prev_start, long_start))
            if previous is not None:
                previous = round(previous, 4)
            result.append(
                MarketTrend(
                    category_name=category_name,
                    current_avg=window.avg_price,
                    previous_avg=previous,
                    change_pct=change,
                    direction=direction,
                    transaction_count=window.transaction_count,
                    volume=window.total_volume,
                )
            )
        result.sort(key=lambda t: (t.change_pct is None, -abs(t.change_pct or 0.0), t.category_name))
        return result

    def insights(self) -> MarketInsights:
        """Busiest categories by long-window volume, with their supply/demand balance.

        ``trends`` and ``supply_demand`` cover the ``INSIGHT_OVERVIEW_SIZE``
        highest-volume categories; ``top_categories`` the first
        ``INSIGHT_TOP_CATEGORIES`` of them.
        """
        by_volume = sorted(self.trends(), key=lambda t: (-t.volume, t.category_name))
        overview = by_volume[:INSIGHT_OVERVIEW_SIZE]

        supply_demand: list[SupplyDemandSummary] = []
        for trend in overview:
            ctx = self.context(trend.category_name)
            supply_demand.append(
                SupplyDemandSummary(
                    category_name=trend.category_name,
                    ratio=ctx.supply_demand_ratio,
                    assessment=ctx.assessment,
                )
            )

        return MarketInsights(
            as_of=self.as_of,
            trends=overview,
            top_categories=[
                CategoryVolume(category_name=t.category_name, volume=t.volume, avg_price=t.current_avg)
                for t in by_volume[:INSIGHT_TOP_CATEGORIES]
            ],
            supply_demand=supply_demand,
        )
