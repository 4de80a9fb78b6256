"""Tests for reporting/formatters.py."""

from __future__ import annotations

from datetime import date, datetime, timezone

from marketplace_intel.models.intel import (
    MATCH_FACTORS,
    CategoryVolume,
    MarketContext,
    MarketInsights,
    MarketTrend,
    MarketWindow,
    Match,
    PredictionRecord,
    SupplyDemandSummary,
)
from marketplace_intel.reporting.formatters import (
    format_dashboard,
    format_freshness_banner,
    format_market_context,
    format_market_insights,
    format_market_trends,
    format_matches_table,
    format_predictions_table,
)

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


def _prediction(predicted: date) -> PredictionRecord:
    return PredictionRecord(
        buyer_id="b1", category_name="Flower", predicted_date=predicted,
        confidence_score=0.62, avg_interval_days=30.0, based_on_transactions=4,
        last_purchase_date=NOW, computed_at=NOW,
    )


class TestFreshness:
    def test_never_run(self):
        assert "[NEVER RUN]" in format_freshness_banner(None)
        assert "[NEVER RUN]" in format_freshness_banner({"age_hours": None})

    def test_fresh_and_stale(self):
        fresh = format_freshness_banner({"age_hours": 1.24, "is_fresh": True, "status": "success"})
        assert fresh == "  [FRESH] Last run 1.2h ago (success)"
        stale = format_freshness_banner({"age_hours": 30.4, "is_fresh": False, "status": "partial"})
        assert stale.startswith("  [STALE] Last run 30.4h ago (partial)")
        assert "may not reflect" in stale


class TestTables:
    def test_matches_with_breakdown(self):
        match = Match(
            match_id=7, buyer_id="b1", product_id="p1", score=66.0,
            breakdown={name: 50.0 for name in MATCH_FACTORS},
            weights_version="v1", computed_at=NOW,
        )
        out = format_matches_table([match], total=1, page=1, total_pages=1, show_breakdown=True)
        assert "Page 1/1  (1 total)" in out
        assert "66.0" in out
        for name in MATCH_FACTORS:
            assert name in out

    def test_empty_matches_hint(self):
        out = format_matches_table([], total=0, page=1, total_pages=0)
        assert "generate-matches" in out

    def test_predictions_relative_dates(self):
        today = date(2026, 10, 1)
        out = format_predictions_table(
            [_prediction(date(2026, 9, 28)), _prediction(today), _prediction(date(2026, 10, 6))], today
        )
        assert "3d overdue" in out
        assert "today" in out
        assert "in 5d" in out


class TestMarket:
    def test_market_context(self):
        ctx = MarketContext(
            category_name="Flower", as_of=NOW,
            short_window=MarketWindow(days=7, avg_price=12.0, change_pct=20.0, transaction_count=2),
            long_window=MarketWindow(days=30),
            active_listings=3, active_buyers=6, supply_demand_ratio=2.0, assessment="high_demand",
        )
        out = format_market_context(ctx)
        assert "Market Context: Flower" in out
        assert "+20.0%" in out
        assert "Assessment: high_demand" in out

    def test_trends(self):
        trend = MarketTrend(category_name="Oil", current_avg=41.0, previous_avg=None,
                            change_pct=None, direction="stable", transaction_count=3)
        out = format_market_trends([trend])
        assert "Oil" in out and "new" in out
        assert "no recent transactions" in format_market_trends([])

    def test_insights(self):
        insights = MarketInsights(
            as_of=NOW,
            trends=[],
            top_categories=[CategoryVolume(category_name="Oil", volume=1250.0, avg_price=41.0)],
            supply_demand=[SupplyDemandSummary(category_name="Oil", ratio=0.25, assessment="oversupply")],
        )
        out = format_market_insights(insights)
        assert "Top Categories by Volume" in out
        assert "1250.00" in out
        assert "ratio   0.25  oversupply" in out

        empty = MarketInsights(as_of=NOW, trends=[], top_categories=[], supply_demand=[])
        assert "no recent transactions" in format_market_insights(empty)


def test_dashboard_renders_every_section():
    data = {
        "generated_at": NOW,
        "jobs": {"churn": {"status": None, "age_hours": None, "is_fresh": False, "processed": 0, "errors": 0}},
        "pending_matches": 3,
        "total_matches": 5,
        "avg_match_score": 61.5,
        "upcoming_predictions": [_prediction(date(2026, 10, 3))],
        "overdue_predictions": [],
        "at_risk_buyers": {"critical": 1, "high": 0, "medium": 2, "low": 0},
        "market_trends": [],
        "market_insights": MarketInsights(as_of=NOW, trends=[], top_categories=[], supply_demand=[]),
        "top_sellers": [{"seller_id": "s1", "display_name": None, "overall_score": 88.0}],
        "top_buyers": [{"buyer_id": "b1", "display_name": "Green Leaf", "propensity_score": 71.5}],
    }
    out = format_dashboard(data)
    assert "Matches: 5 total, 3 pending, avg score 61.5" in out
    assert "critical 1" in out
    assert "Reorders Due This Week" in out
    assert "Green Leaf" in out
    assert "s1" in out
