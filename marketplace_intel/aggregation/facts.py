"""
Immutable fact bundles produced by the aggregation layer.

No business rules live here: only grouping, ordering and windowing of
validated source records. Every engine (match scorer, churn detector,
reorder predictor, seller scorecard, market context) reads these and
nothing else, which is what makes each engine a pure function of
``(FactBundle, config)``.

Empty histories are represented by absent keys; callers interpret absence
as "insufficient data".
"""

from __future__ import annotations

import statistics
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from marketplace_intel.models.source import Product, User


@dataclass(frozen=True)
class Scope:
    """Which entities a load should cover. All ``None`` means everything."""

    buyer_id: Optional[str] = None
    product_id: Optional[str] = None
    seller_id: Optional[str] = None


@dataclass(frozen=True)
class AggregationFailure:
    """One entity whose facts could not be assembled."""

    entity_kind: str          # "buyer" | "seller" | "category"
    entity_id: str
    reason: str


# ── Per-entity facts ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PurchaseHistory:
    """Ordered purchases of one buyer in one category.

    Attributes:
        dates: Purchase timestamps, oldest first.
        quantities: Ordered quantity per purchase (same order as ``dates``).
        unit_prices: Unit price per purchase, ``None`` where unknown.
        seller_ids: Seller per purchase.
    """

    buyer_id: str
    category_name: str
    dates: tuple[datetime, ...]
    quantities: tuple[float, ...]
    unit_prices: tuple[Optional[float], ...]
    seller_ids: tuple[str, ...]

    @property
    def purchase_count(self) -> int:
        return len(self.dates)

    @property
    def last_purchase_date(self) -> datetime:
        return self.dates[-1]

    @property
    def gaps_days(self) -> tuple[int, ...]:
        """Whole days between consecutive purchases."""
        return tuple((b - a).days for a, b in zip(self.dates, self.dates[1:]))

    @property
    def mean_gap_days(self) -> Optional[float]:
        gaps = self.gaps_days
        return statistics.fmean(gaps) if gaps else None

    @property
    def avg_quantity(self) -> Optional[float]:
        return statistics.fmean(self.quantities) if self.quantities else None

    @property
    def avg_unit_price(self) -> Optional[float]:
        """Volume-weighted average unit price over priced purchases."""
        priced = [(q, p) for q, p in zip(self.quantities, self.unit_prices) if p is not None and p > 0]
        total_qty = sum(q for q, _ in priced)
        if not priced or total_qty <= 0:
            return None
        return sum(q * p for q, p in priced) / total_qty


@dataclass(frozen=True)
class DeliveryOutcome:
    """Recorded outcome of one delivered transaction."""

    transaction_id: str
    category_name: str
    transaction_date: datetime
    ordered_quantity: float
    delivered_quantity: Optional[float]
    on_time: Optional[bool]
    quality_as_expected: Optional[bool]
    unit_price: Optional[float]


@dataclass(frozen=True)
class DeliveryOutcomes:
    """Outcome-recorded transactions of one seller, oldest first."""

    seller_id: str
    outcomes: tuple[DeliveryOutcome, ...]

    def __len__(self) -> int:
        return len(self.outcomes)


@dataclass(frozen=True)
class PricePoint:
    at: datetime
    unit_price: float
    quantity: float


@dataclass(frozen=True)
class PriceHistory:
    """Timestamped unit prices of one category, oldest first."""

    category_name: str
    points: tuple[PricePoint, ...]

    def between(self, start: datetime, end: datetime) -> list[PricePoint]:
        """Points with ``start < at <= end``."""
        return [p for p in self.points if start < p.at <= end]

    @property
    def all_time_avg(self) -> Optional[float]:
        if not self.points:
            return None
        return statistics.fmean(p.unit_price for p in self.points)


@dataclass(frozen=True)
class BidFact:
    product_id: str
    category_name: Optional[str]
    status: str
    created_at: datetime


@dataclass(frozen=True)
class BuyerActivity:
    """Cross-category activity summary for one buyer."""

    buyer_id: str
    transaction_dates: tuple[datetime, ...]
    order_values: tuple[float, ...]
    seller_counts: dict[str, int] = field(default_factory=dict)
    category_counts: dict[str, int] = field(default_factory=dict)
    bids: tuple[BidFact, ...] = ()

    @property
    def total_transactions(self) -> int:
        return len(self.transaction_dates)

    @property
    def last_transaction_date(self) -> Optional[datetime]:
        return self.transaction_dates[-1] if self.transaction_dates else None

    @property
    def total_spend(self) -> float:
        return sum(self.order_values)

    def bid_count(self, category_name: Optional[str] = None) -> int:
        if category_name is None:
            return len(self.bids)
        return sum(1 for b in self.bids if b.category_name == category_name)

    @property
    def has_history(self) -> bool:
        return bool(self.transaction_dates or self.bids)


# ── Bundle ────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class FactBundle:
    """Everything one job run needs, gathered at a single ``as_of`` instant."""

    as_of: datetime
    scope: Scope
    users: dict[str, User]
    products: dict[str, Product]
    purchases: dict[tuple[str, str], PurchaseHistory]
    deliveries: dict[str, DeliveryOutcomes]
    prices: dict[str, PriceHistory]
    activity: dict[str, BuyerActivity]
    failures: tuple[AggregationFailure, ...] = ()

    def purchase_history(self, buyer_id: str, category_name: Optional[str]) -> Optional[PurchaseHistory]:
        if category_name is None:
            return None
        return self.purchases.get((buyer_id, category_name))

    def histories_for_buyer(self, buyer_id: str) -> list[PurchaseHistory]:
        return [h for (b, _), h in sorted(self.purchases.items()) if b == buyer_id]

    def buyer_ids_with_purchases(self) -> list[str]:
        return sorted({b for b, _ in self.purchases})

    def failed_ids(self, entity_kind: str) -> set[str]:
        return {f.entity_id for f in self.failures if f.entity_kind == entity_kind}
