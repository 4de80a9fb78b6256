"""
Engine output models: matches, churn signals, reorder predictions, seller
scores and market context.

``Match``, ``ChurnSignal``, ``PredictionRecord`` and ``SellerScore`` are
persisted; each row carries the ``run_id`` and ``computed_at`` of the run
that last wrote it. ``MarketContext``, ``MarketTrend`` and ``MarketInsights``
are computed on read and never stored.

All models are frozen. Score ranges are enforced by validators so an
out-of-range value fails at construction, before it can reach the database.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

# Fixed factor set. Order is the composite summation order.
MATCH_FACTORS: tuple[str, ...] = (
    "category_affinity",
    "price_fit",
    "location_fit",
    "relationship_history",
    "reorder_timing",
    "quantity_fit",
    "seller_reliability",
    "price_vs_market",
    "supply_demand",
    "buyer_propensity",
)

MatchStatus = Literal["pending", "viewed", "converted", "rejected"]
VALID_MATCH_STATUSES: frozenset[str] = frozenset({"pending", "viewed", "converted", "rejected"})

InsightType = Literal["positive", "neutral", "urgent", "warning"]

RiskLevel = Literal["low", "medium", "high", "critical"]
RISK_LEVELS: tuple[str, ...] = ("low", "medium", "high", "critical")
RISK_LEVEL_RANK: dict[str, int] = {level: i for i, level in enumerate(RISK_LEVELS)}

SupplyDemandAssessment = Literal["oversupply", "balanced", "high_demand"]
TrendDirection = Literal["up", "down", "stable"]


def _check_score(v: float, name: str) -> float:
    if not 0.0 <= v <= 100.0:
        raise ValueError(f"{name} must be in [0, 100], got {v}.")
    return v


class Insight(BaseModel):
    """One short, human-readable explanation attached to a match."""

    model_config = ConfigDict(frozen=True)

    type: InsightType
    text: str


class Match(BaseModel):
    """Scored buyer × product affinity.

    Attributes:
        match_id: Auto-assigned DB PK; ``None`` before insertion.
        buyer_id: The prospective buyer.
        product_id: The listing being matched.
        score: Weighted composite, 0–100.
        breakdown: Factor name → 0–100 value; always the full ``MATCH_FACTORS`` set.
        insights: Ordered by descending factor value, capped.
        status: Buyer-facing state; mutated externally, never by recompute.
        weights_version: Version of the weight vector that produced ``score``.
        run_id: Run that last computed this row.
        created_at: First time the pair was persisted.
        computed_at: Last recompute time.
    """

    model_config = ConfigDict(frozen=True)

    match_id: Optional[int] = None
    buyer_id: str
    product_id: str
    score: float
    breakdown: dict[str, float]
    insights: list[Insight] = []
    status: MatchStatus = "pending"
    weights_version: str
    run_id: Optional[int] = None
    created_at: Optional[datetime] = None
    computed_at: datetime

    @field_validator("score")
    @classmethod
    def validate_score(cls, v: float) -> float:
        return _check_score(v, "score")

    @field_validator("breakdown")
    @classmethod
    def validate_breakdown(cls, v: dict[str, float]) -> dict[str, float]:
        if set(v) != set(MATCH_FACTORS):
            missing = sorted(set(MATCH_FACTORS) - set(v))
            extra = sorted(set(v) - set(MATCH_FACTORS))
            raise ValueError(f"breakdown keys mismatch: missing={missing} extra={extra}.")
        for name, value in v.items():
            _check_score(value, f"breakdown[{name}]")
        return {name: v[name] for name in MATCH_FACTORS}


class ChurnSignal(BaseModel):
    """Churn risk for one buyer in one category, or overall (``category_name=None``).

    ``is_active`` is true while the signal is at tier ``medium`` or worse and
    has not been resolved. ``resolved_reason`` is ``"purchase_made"`` when
    the buyer bought again after the signal was raised.
    """

    model_config = ConfigDict(frozen=True)

    signal_id: Optional[int] = None
    buyer_id: str
    category_name: Optional[str] = None
    risk_level: RiskLevel
    risk_score: float
    days_since_purchase: int
    avg_interval_days: float
    last_purchase_date: datetime
    is_active: bool = True
    resolved_at: Optional[datetime] = None
    resolved_reason: Optional[str] = None
    run_id: Optional[int] = None
    computed_at: datetime

    @field_validator("risk_score")
    @classmethod
    def validate_risk_score(cls, v: float) -> float:
        return _check_score(v, "risk_score")

    @model_validator(mode="after")
    def validate_interval(self) -> "ChurnSignal":
        if self.avg_interval_days <= 0:
            raise ValueError("avg_interval_days must be positive.")
        if self.is_active and self.resolved_at is not None:
            raise ValueError("An active signal cannot carry resolved_at.")
        return self

    @property
    def category_key(self) -> str:
        """Storage key: the overall signal uses the empty string."""
        return self.category_name or ""


class PredictionRecord(BaseModel):
    """Predicted next purchase date for one (buyer, category)."""

    model_config = ConfigDict(frozen=True)

    prediction_id: Optional[int] = None
    buyer_id: str
    category_name: str
    predicted_date: date
    confidence_score: float
    avg_interval_days: float
    based_on_transactions: int
    last_purchase_date: datetime
    run_id: Optional[int] = None
    computed_at: datetime

    @field_validator("confidence_score")
    @classmethod
    def validate_confidence(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"confidence_score must be in [0, 1], got {v}.")
        return v

    @field_validator("based_on_transactions")
    @classmethod
    def validate_count(cls, v: int) -> int:
        if v < 2:
            raise ValueError(f"based_on_transactions must be >= 2, got {v}.")
        return v

    def days_until(self, today: date) -> int:
        """Signed days from ``today`` to ``predicted_date`` (negative = overdue)."""
        return (self.predicted_date - today).days

    def is_overdue(self, today: date) -> bool:
        return self.predicted_date < today


class SellerScore(BaseModel):
    """Seller reliability scorecard; all components 0–100."""

    model_config = ConfigDict(frozen=True)

    seller_score_id: Optional[int] = None
    seller_id: str
    fill_rate: float
    quality_score: float
    delivery_score: float
    pricing_score: float
    overall_score: float
    transactions_scored: int
    run_id: Optional[int] = None
    computed_at: datetime

    @model_validator(mode="after")
    def validate_ranges(self) -> "SellerScore":
        for name in ("fill_rate", "quality_score", "delivery_score", "pricing_score", "overall_score"):
            _check_score(getattr(self, name), name)
        if self.transactions_scored < 1:
            raise ValueError("A persisted SellerScore needs at least one scored transaction.")
        return self


class MarketWindow(BaseModel):
    """Price statistics for one rolling window ending at ``as_of``."""

    model_config = ConfigDict(frozen=True)

    days: int
    avg_price: Optional[float] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    change_pct: Optional[float] = None
    transaction_count: int = 0
    total_volume: float = 0.0


class MarketContext(BaseModel):
    """Rolling price and supply/demand picture for one category."""

    model_config = ConfigDict(frozen=True)

    category_name: str
    as_of: datetime
    short_window: MarketWindow
    long_window: MarketWindow
    active_listings: int
    active_buyers: int
    supply_demand_ratio: float
    assessment: SupplyDemandAssessment


class MarketTrend(BaseModel):
    """Current vs previous 30-day average price for a category."""

    model_config = ConfigDict(frozen=True)

    category_name: str
    current_avg: float
    previous_avg: Optional[float] = None
    change_pct: Optional[float] = None
    direction: TrendDirection
    transaction_count: int
    volume: float = 0.0


class CategoryVolume(BaseModel):
    """A category's 30-day traded volume and average price."""

    model_config = ConfigDict(frozen=True)

    category_name: str
    volume: float
    avg_price: float


class SupplyDemandSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    category_name: str
    ratio: float
    assessment: SupplyDemandAssessment


class MarketInsights(BaseModel):
    """Marketplace-wide summary: busiest categories and their supply/demand balance."""

    model_config = ConfigDict(frozen=True)

    as_of: datetime
    trends: list[MarketTrend]
    top_categories: list[CategoryVolume]
    supply_demand: list[SupplyDemandSummary]
