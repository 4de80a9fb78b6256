"""
Tests for service.py — IntelService job triggers and read operations.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from marketplace_intel.config import AppConfig, MatchingConfig, RunsConfig
from marketplace_intel.db.connection import get_connection
from marketplace_intel.db.repositories.seller_score_repo import SellerScoreRepository
from marketplace_intel.service import IntelService
from marketplace_intel.utils.time_utils import utcnow

AS_OF = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)
TODAY = AS_OF.date()


def _ago(days: int) -> datetime:
    return AS_OF - timedelta(days=days)


@pytest.fixture
def service(db_path, seed, user, product, tx) -> IntelService:
    with get_connection(db_path) as conn:
        seed(
            conn,
            users=[
                user("b1", location="Portland, OR"),
                user("b2"),
                user("s1", location="Portland, OR", can_buy=False, can_sell=True),
                user("s2", can_buy=False, can_sell=True),
            ],
            products=[product("p1", "s1"), product("p2", "s2", "Oil")],
            transactions=[tx("b1", "s1", _ago(d)) for d in (100, 70, 40)],
        )
    config = AppConfig(matching=MatchingConfig(min_score=0.0), runs=RunsConfig(max_workers=2))
    return IntelService(config, db_path=db_path)


# ── Job triggers ──────────────────────────────────────────────────────────────

class TestTriggers:
    def test_trigger_returns_flat_counts(self, service):
        result = service.run_churn_detection(as_of=AS_OF)
        assert result == {
            "status": "success", "processed": 1, "errors": 0,
            "signals_created": 2, "signals_updated": 0,
        }

    def test_unknown_job_kind(self, service):
        with pytest.raises(ValueError, match="Unknown job kind"):
            service.run_job("inventory")

    def test_generate_matches_for_one_product(self, service):
        result = service.generate_matches(product_id="p1", as_of=AS_OF)
        assert result["products_scanned"] == 1
        assert result["matches_generated"] == 2


# ── Matches ───────────────────────────────────────────────────────────────────

class TestMatches:
    def test_paging_and_order(self, service):
        service.generate_matches(as_of=AS_OF)
        page = service.fetch_matches(product_id="p1", limit=1)
        assert page.total == 2
        assert page.total_pages == 2
        assert page.matches[0].buyer_id == "b1"

        second = service.fetch_matches(product_id="p1", limit=1, page=2)
        assert second.matches[0].buyer_id == "b2"
        assert second.matches[0].score <= page.matches[0].score

    def test_limit_is_capped(self, service):
        assert service.fetch_matches(limit=500).limit == 50

    def test_dismiss_and_view(self, service):
        service.generate_matches(as_of=AS_OF)
        b1, b2 = sorted(service.fetch_matches(product_id="p1").matches, key=lambda m: m.buyer_id)

        assert service.mark_match_viewed(b1.match_id)
        assert service.dismiss_match(b2.match_id)
        # Viewing a rejected match does not reopen it.
        assert service.mark_match_viewed(b2.match_id)

        statuses = {m.buyer_id: m.status for m in service.fetch_matches(product_id="p1").matches}
        assert statuses == {"b1": "viewed", "b2": "rejected"}
        assert service.fetch_matches(product_id="p1", status="pending").total == 0

    def test_unknown_match_id(self, service):
        assert service.dismiss_match(9999) is False
        assert service.mark_match_viewed(9999) is False


# ── Churn ─────────────────────────────────────────────────────────────────────

class TestChurn:
    def test_at_risk_buyers_use_category_signals(self, service):
        service.run_churn_detection(as_of=AS_OF)
        buyers = service.fetch_at_risk_buyers()

        assert len(buyers) == 1
        assert buyers[0].buyer_id == "b1"
        assert buyers[0].display_name == "B1"
        assert buyers[0].risk_level == "medium"
        assert [s.category_name for s in buyers[0].signals] == ["Flower"]

        assert service.fetch_at_risk_buyers(min_risk_level="high") == []

    def test_unknown_risk_level(self, service):
        with pytest.raises(ValueError):
            service.fetch_at_risk_buyers(min_risk_level="severe")

    def test_manual_resolution(self, service):
        service.run_churn_detection(as_of=AS_OF)
        stats = service.fetch_churn_stats()
        assert stats["medium_count"] == 1
        assert stats["total_at_risk"] == 1

        signal = service.fetch_at_risk_buyers()[0].signals[0]
        assert service.resolve_churn_signal(signal.signal_id)
        assert service.fetch_at_risk_buyers() == []

        # Re-running detection does not bring a dismissed signal back.
        service.run_churn_detection(as_of=AS_OF + timedelta(days=1))
        assert service.fetch_at_risk_buyers() == []


# ── Predictions ───────────────────────────────────────────────────────────────

class TestPredictions:
    def test_overdue_and_upcoming(self, service):
        service.run_reorder_predictions(as_of=AS_OF)
        predicted = date(2026, 9, 21)

        overdue = service.fetch_predictions(prediction_type="overdue", today=TODAY)
        assert [p.predicted_date for p in overdue] == [predicted]
        assert service.fetch_predictions(today=TODAY) == []

        earlier = service.fetch_predictions(days=30, today=predicted - timedelta(days=15))
        assert [p.buyer_id for p in earlier] == ["b1"]
        assert service.fetch_predictions(days=7, today=predicted - timedelta(days=15)) == []

    def test_unknown_prediction_type(self, service):
        with pytest.raises(ValueError, match="Unknown prediction type"):
            service.fetch_predictions(prediction_type="late")

    def test_calendar_groups_by_sunday(self, service):
        service.run_reorder_predictions(as_of=AS_OF)
        calendar = service.fetch_predictions_calendar(today=TODAY)
        assert list(calendar) == [date(2026, 9, 20)]
        assert date(2026, 9, 20).weekday() == 6


# ── Sellers & market ──────────────────────────────────────────────────────────

class TestSellersAndMarket:
    def test_seller_score_computed_on_the_fly(self, service, seed, tx):
        with get_connection(service.db_path) as conn:
            seed(conn, transactions=[
                tx("b2", "s2", _ago(5), "Oil", delivered_quantity=100.0,
                   delivered_on_time=False, quality_as_expected=True),
            ])
        score = service.fetch_seller_score("s2", as_of=AS_OF)
        assert score.delivery_score == 0.0
        assert score.quality_score == 100.0
        assert score.run_id is None

        with get_connection(service.db_path) as conn:
            assert SellerScoreRepository(conn).get("s2") is None
        assert service.fetch_seller_score("s1", as_of=AS_OF) is None

    def test_stored_seller_score_preferred(self, service, seed, tx):
        with get_connection(service.db_path) as conn:
            seed(conn, transactions=[
                tx("b1", "s1", _ago(5), delivered_quantity=100.0, delivered_on_time=True),
            ])
        service.recalculate_seller_scores(as_of=AS_OF)
        score = service.fetch_seller_score("s1")
        assert score.run_id is not None
        assert [s.seller_id for s in service.fetch_seller_scores()] == ["s1"]

    def test_market_context(self, service, seed, tx):
        with get_connection(service.db_path) as conn:
            seed(conn, transactions=[tx("b2", "s1", _ago(5), unit_price=12.0)])

        ctx = service.fetch_market_context("Flower", as_of=AS_OF)
        assert ctx.long_window.transaction_count == 1
        assert ctx.long_window.avg_price == pytest.approx(12.0)
        assert ctx.long_window.change_pct == pytest.approx(20.0)
        assert ctx.short_window.transaction_count == 1
        assert ctx.active_listings == 1
        assert ctx.active_buyers == 1
        assert ctx.assessment == "balanced"

        oil = service.fetch_market_context("Oil", as_of=AS_OF)
        assert oil.long_window.transaction_count == 0
        assert oil.active_listings == 1
        assert oil.assessment == "oversupply"

    def test_market_insights(self, service, seed, tx):
        with get_connection(service.db_path) as conn:
            seed(conn, transactions=[
                tx("b2", "s1", _ago(5), unit_price=12.0),
                tx("b1", "s2", _ago(3), category_name="Oil", quantity=10.0, unit_price=40.0),
            ])

        insights = service.fetch_market_insights(as_of=AS_OF)
        assert [c.category_name for c in insights.top_categories] == ["Flower", "Oil"]
        assert insights.top_categories[0].volume == pytest.approx(1200.0)
        assert {sd.category_name: sd.assessment for sd in insights.supply_demand} == {
            "Flower": "balanced",
            "Oil": "balanced",
        }

    def test_top_propensity_buyers(self, service):
        ranked = service.fetch_top_propensity_buyers(as_of=AS_OF)
        assert [r["buyer_id"] for r in ranked] == ["b1"]
        assert 0.0 <= ranked[0]["propensity_score"] <= 100.0


# ── Status & dashboard ────────────────────────────────────────────────────────

class TestStatus:
    def test_never_run_is_stale(self, service):
        status = service.fetch_job_status()
        assert set(status) == {"matches", "churn", "predictions", "seller_scores"}
        assert all(s["status"] is None and not s["is_fresh"] for s in status.values())

    def test_freshness_window(self, service):
        service.run_churn_detection(as_of=AS_OF)
        now = utcnow()
        assert service.fetch_job_status(now)["churn"]["is_fresh"]
        assert not service.fetch_job_status(now + timedelta(hours=27))["churn"]["is_fresh"]

    def test_dashboard(self, service):
        service.generate_matches(as_of=AS_OF)
        service.run_churn_detection(as_of=AS_OF)
        dash = service.fetch_intel_dashboard(now=AS_OF)

        assert dash["total_matches"] == 4
        assert dash["pending_matches"] == 4
        assert dash["at_risk_buyers"]["medium"] == 1
        assert [b["buyer_id"] for b in dash["top_buyers"]] == ["b1"]
        assert set(dash) >= {
            "generated_at", "jobs", "avg_match_score", "upcoming_predictions",
            "overdue_predictions", "market_trends", "market_insights", "top_sellers",
        }
