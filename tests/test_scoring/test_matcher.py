"""
Tests for scoring/matcher.py and scoring/propensity.py against a loaded FactBundle.
"""

from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone

import pytest

from marketplace_intel.aggregation.facts import Scope
from marketplace_intel.aggregation.loader import AggregationLayer
from marketplace_intel.config import AppConfig, ChurnConfig, PredictionConfig
from marketplace_intel.models.intel import MATCH_FACTORS
from marketplace_intel.pipeline.fanout import fan_out
from marketplace_intel.scoring import matcher
from marketplace_intel.scoring.matcher import MatchScorer
from marketplace_intel.scoring.propensity import (
    NEUTRAL_SCORE,
    PropensityFeatures,
    buyer_propensity,
    score_features,
)

AS_OF = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


def _ago(days: int) -> datetime:
    return AS_OF - timedelta(days=days)


@pytest.fixture
def scorer(in_memory_db, seed, user, product, tx):
    seed(
        in_memory_db,
        users=[
            user("b1", location="Portland, OR"),
            user("b2"),
            user("b3", is_active=False),
            user("s1", location="Portland, OR", can_buy=False, can_sell=True),
            user("s2", can_sell=True),
        ],
        products=[
            product("p1", "s1"),
            product("p2", "s1", is_active=False),
            product("p3", "s2"),
        ],
        transactions=[tx("b1", "s1", _ago(d)) for d in (95, 65, 35)],
    )
    bundle = AggregationLayer(in_memory_db).load(Scope(), AS_OF)
    return MatchScorer(bundle, AppConfig())


# ── Eligibility ───────────────────────────────────────────────────────────────

def test_eligible_buyers_are_active_purchasers(scorer):
    p1 = scorer.bundle.products["p1"]
    assert [u.user_id for u in scorer.eligible_buyers(p1)] == ["b1", "b2", "s2"]


def test_seller_never_matched_to_own_product(scorer):
    p3 = scorer.bundle.products["p3"]
    assert "s2" not in [u.user_id for u in scorer.eligible_buyers(p3)]


def test_inactive_product_has_no_candidates(scorer):
    assert scorer.score_product(scorer.bundle.products["p2"]) == []


# ── Pair scoring ──────────────────────────────────────────────────────────────

def test_breakdown_is_complete_and_bounded(scorer):
    for pair in scorer.score_product(scorer.bundle.products["p1"]):
        assert tuple(pair.breakdown) == MATCH_FACTORS
        assert all(0.0 <= v <= 100.0 for v in pair.breakdown.values())
        assert 0.0 <= pair.score <= 100.0
        assert len(pair.insights) <= 4


def test_repeat_buyer_factors(scorer):
    b1 = scorer.bundle.users["b1"]
    pair = scorer.score_pair(b1, scorer.bundle.products["p1"])
    assert pair.breakdown["category_affinity"] == 80.0
    assert pair.breakdown["price_fit"] == 80.0
    assert pair.breakdown["location_fit"] == 100.0
    assert pair.breakdown["relationship_history"] == 90.0
    assert pair.breakdown["reorder_timing"] == 100.0
    assert pair.breakdown["quantity_fit"] == 100.0
    assert pair.insights[0].text == "Buyer is overdue for reorder"


def test_repeat_buyer_outranks_unknown_buyer(scorer):
    p1 = scorer.bundle.products["p1"]
    scores = {p.buyer_id: p.score for p in scorer.score_product(p1)}
    assert scores["b1"] > scores["b2"]


def test_scoring_is_deterministic(scorer):
    b1 = scorer.bundle.users["b1"]
    p1 = scorer.bundle.products["p1"]
    assert scorer.score_pair(b1, p1) == scorer.score_pair(b1, p1)


def test_seller_reliability_is_memoized(scorer):
    first = scorer.seller_reliability("s1")
    assert scorer.seller_reliability("s1") == first
    assert "s1" in scorer._seller_reliability


def test_seller_reliability_computed_once_across_threads(scorer, monkeypatch):
    real_score_seller = matcher.score_seller
    calls: list[str] = []

    def slow_score_seller(outcomes, market_average, config):
        calls.append("s1")
        time.sleep(0.05)
        return real_score_seller(outcomes, market_average, config)

    monkeypatch.setattr(matcher, "score_seller", slow_score_seller)
    out = fan_out(["s1"] * 8, scorer.seller_reliability, max_workers=8)

    assert calls == ["s1"]
    assert len({value for _, value in out.results}) == 1


def test_pair_with_no_data_scores_fifty(in_memory_db, seed, user, product):
    seed(in_memory_db, users=[user("b9"), user("s9", can_buy=False)], products=[product("p9", "s9")])
    scorer = MatchScorer(AggregationLayer(in_memory_db).load(Scope(), AS_OF), AppConfig())
    pair = scorer.score_pair(scorer.bundle.users["b9"], scorer.bundle.products["p9"])
    assert set(pair.breakdown.values()) == {50.0}
    assert pair.score == 50.0
    assert pair.insights == []


# ── Propensity ────────────────────────────────────────────────────────────────

def test_propensity_none_without_history(scorer):
    assert buyer_propensity(scorer.bundle, "b2", "Flower", ChurnConfig(), PredictionConfig()) is None


def test_propensity_components_bounded(scorer):
    score = buyer_propensity(scorer.bundle, "b1", None, ChurnConfig(), PredictionConfig())
    assert score is not None
    for value in (score.overall, score.recency, score.frequency,
                  score.monetary, score.category_affinity, score.engagement):
        assert 0.0 <= value <= 100.0


def test_propensity_churn_penalty_and_overdue_boost():
    base = dict(
        days_since_last_purchase=0, total_transactions=10, transactions_last_30d=0,
        transactions_last_90d=0, total_spend=0.0, avg_order_value=0.0, category_count=0,
        top_category_transactions=0, total_bids=0, bids_last_30d=0, bid_categories=0,
        bid_acceptance_rate=0.0, bid_rejection_rate=0.0, churn_risk_score=0.0, overdue_days=0,
    )
    healthy = score_features(PropensityFeatures(**base))
    assert healthy.overall == pytest.approx(45.0)     # recency 100 * .25 + frequency 100 * .20

    at_risk = score_features(PropensityFeatures(**{**base, "churn_risk_score": 100.0}))
    assert at_risk.overall == pytest.approx(31.5)

    overdue = score_features(PropensityFeatures(**{**base, "overdue_days": 70}))
    assert overdue.overall == pytest.approx(65.0)     # boost capped at 20
    assert NEUTRAL_SCORE == 50.0
