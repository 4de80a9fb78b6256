"""Tests for repository round-trip operations using in-memory SQLite."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from marketplace_intel.db.connection import get_connection
from marketplace_intel.db.repositories.churn_repo import ChurnSignalRepository
from marketplace_intel.db.repositories.match_repo import MatchRepository
from marketplace_intel.db.repositories.prediction_repo import PredictionRepository
from marketplace_intel.db.repositories.run_repo import RunMetadataRepository
from marketplace_intel.db.repositories.seller_score_repo import SellerScoreRepository
from marketplace_intel.db.repositories.source_repo import SourceRepository
from marketplace_intel.models.intel import (
    MATCH_FACTORS,
    ChurnSignal,
    Insight,
    Match,
    PredictionRecord,
    SellerScore,
)
from marketplace_intel.models.meta import RunMetadata

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


# ── Helpers ────────────────────────────────────────────────────────────────────

@pytest.fixture
def marketplace(in_memory_db, seed, user, product):
    """Two buyers, one seller and two products in different categories."""
    seed(
        in_memory_db,
        users=[user("b1"), user("b2"), user("s1", can_buy=False, can_sell=True)],
        products=[product("p1", "s1", "Flower"), product("p2", "s1", "Oil")],
    )
    return in_memory_db


def _match(buyer_id: str, product_id: str, score: float, at: datetime = NOW) -> Match:
    return Match(
        buyer_id=buyer_id,
        product_id=product_id,
        score=score,
        breakdown={name: score for name in MATCH_FACTORS},
        insights=[Insight(type="positive", text="Same region as buyer")],
        weights_version="v1",
        computed_at=at,
    )


def _signal(buyer_id: str, category: str | None, level: str, score: float, **kwargs) -> ChurnSignal:
    base = dict(
        buyer_id=buyer_id, category_name=category, risk_level=level, risk_score=score,
        days_since_purchase=40, avg_interval_days=30.0, last_purchase_date=NOW - timedelta(days=40),
        is_active=level != "low", computed_at=NOW,
    )
    base.update(kwargs)
    return ChurnSignal(**base)


def _prediction(buyer_id: str, category: str, predicted: date) -> PredictionRecord:
    return PredictionRecord(
        buyer_id=buyer_id, category_name=category, predicted_date=predicted,
        confidence_score=0.6, avg_interval_days=30.0, based_on_transactions=3,
        last_purchase_date=NOW, computed_at=NOW,
    )


# ── Match repository ───────────────────────────────────────────────────────────

class TestMatchRepository:
    def test_upsert_and_fetch(self, marketplace):
        repo = MatchRepository(marketplace)
        repo.upsert(_match("b1", "p1", 72.5))
        fetched = repo.get_by_pair("b1", "p1")
        assert fetched is not None
        assert fetched.score == 72.5
        assert fetched.status == "pending"
        assert fetched.insights[0].text == "Same region as buyer"
        assert tuple(fetched.breakdown) == MATCH_FACTORS

    def test_recompute_preserves_status_and_created_at(self, marketplace):
        repo = MatchRepository(marketplace)
        repo.upsert(_match("b1", "p1", 60.0))
        match_id = repo.get_by_pair("b1", "p1").match_id
        assert repo.set_status(match_id, "viewed")

        repo.upsert(_match("b1", "p1", 80.0, at=NOW + timedelta(days=1)))
        refreshed = repo.get(match_id)
        assert refreshed.score == 80.0
        assert refreshed.status == "viewed"
        assert refreshed.created_at == NOW
        assert refreshed.computed_at == NOW + timedelta(days=1)
        assert len(repo.list_all()) == 1

    def test_set_status_unknown_match(self, marketplace):
        assert MatchRepository(marketplace).set_status(999, "rejected") is False

    def test_set_status_invalid_value(self, marketplace):
        with pytest.raises(ValueError):
            MatchRepository(marketplace).set_status(1, "archived")

    def test_query_filters_and_orders(self, marketplace):
        repo = MatchRepository(marketplace)
        repo.upsert(_match("b1", "p1", 55.0))
        repo.upsert(_match("b2", "p1", 90.0))
        repo.upsert(_match("b1", "p2", 70.0))

        rows, total = repo.query()
        assert total == 3
        assert [m.score for m in rows] == [90.0, 70.0, 55.0]

        rows, total = repo.query(buyer_id="b1", min_score=60.0)
        assert total == 1 and rows[0].product_id == "p2"

        rows, total = repo.query(category_name="Flower")
        assert {m.product_id for m in rows} == {"p1"} and total == 2

    def test_query_paginates_with_total(self, marketplace):
        repo = MatchRepository(marketplace)
        repo.upsert(_match("b1", "p1", 55.0))
        repo.upsert(_match("b2", "p1", 90.0))
        repo.upsert(_match("b1", "p2", 70.0))
        rows, total = repo.query(page=2, limit=2)
        assert total == 3
        assert [m.score for m in rows] == [55.0]

    def test_existing_pairs_scoped_to_products(self, marketplace):
        repo = MatchRepository(marketplace)
        repo.upsert(_match("b1", "p1", 55.0))
        repo.upsert(_match("b1", "p2", 70.0))
        assert repo.existing_pairs(["p2"]) == {("b1", "p2")}
        assert len(repo.existing_pairs()) == 2

    def test_summary(self, marketplace):
        repo = MatchRepository(marketplace)
        assert repo.summary() == {"total": 0, "pending": 0, "avg_score": None}
        repo.upsert(_match("b1", "p1", 60.0))
        repo.upsert(_match("b2", "p1", 80.0))
        repo.set_status(repo.get_by_pair("b2", "p1").match_id, "rejected")
        assert repo.summary() == {"total": 2, "pending": 1, "avg_score": 70.0}


# ── Churn repository ───────────────────────────────────────────────────────────

class TestChurnSignalRepository:
    def test_overall_and_category_rows_are_distinct_keys(self, marketplace):
        repo = ChurnSignalRepository(marketplace)
        repo.upsert(_signal("b1", "Flower", "high", 80.0))
        repo.upsert(_signal("b1", None, "high", 80.0))
        existing = repo.load_existing()
        assert set(existing) == {("b1", "Flower"), ("b1", "")}
        assert existing[("b1", "")].category_name is None

    def test_upsert_replaces_whole_row(self, marketplace):
        repo = ChurnSignalRepository(marketplace)
        repo.upsert(_signal("b1", "Flower", "high", 80.0))
        repo.upsert(_signal("b1", "Flower", "low", 20.0))
        rows = repo.get_for_buyer("b1")
        assert len(rows) == 1
        assert rows[0].risk_level == "low" and rows[0].is_active is False

    def test_list_active_respects_min_level(self, marketplace):
        repo = ChurnSignalRepository(marketplace)
        repo.upsert(_signal("b1", "Flower", "medium", 60.0))
        repo.upsert(_signal("b2", "Flower", "critical", 100.0))
        repo.upsert(_signal("b2", "Oil", "low", 10.0))
        assert [s.buyer_id for s in repo.list_active("medium")] == ["b2", "b1"]
        assert [s.buyer_id for s in repo.list_active("critical")] == ["b2"]
        with pytest.raises(ValueError):
            repo.list_active("severe")

    def test_resolve_deactivates(self, marketplace):
        repo = ChurnSignalRepository(marketplace)
        repo.upsert(_signal("b1", "Flower", "high", 80.0))
        signal_id = repo.get_for_buyer("b1")[0].signal_id
        assert repo.resolve(signal_id, "manual", NOW)
        resolved = repo.get(signal_id)
        assert resolved.is_active is False
        assert resolved.resolved_reason == "manual"
        assert repo.resolve(12345, "manual", NOW) is False

    def test_stats_counts_category_signals(self, marketplace):
        repo = ChurnSignalRepository(marketplace)
        repo.upsert(_signal("b1", "Flower", "critical", 100.0))
        repo.upsert(_signal("b1", None, "critical", 100.0))
        repo.upsert(_signal("b2", "Oil", "medium", 55.0))
        stats = repo.stats()
        assert stats["critical_count"] == 1
        assert stats["medium_count"] == 1
        assert stats["total_at_risk"] == 2


# ── Prediction repository ──────────────────────────────────────────────────────

class TestPredictionRepository:
    def test_upsert_is_keyed_by_buyer_and_category(self, marketplace):
        repo = PredictionRepository(marketplace)
        repo.upsert(_prediction("b1", "Flower", date(2026, 10, 5)))
        repo.upsert(_prediction("b1", "Flower", date(2026, 10, 9)))
        assert len(repo.list_all()) == 1
        assert repo.get("b1", "Flower").predicted_date == date(2026, 10, 9)

    def test_list_between_bounds(self, marketplace):
        repo = PredictionRepository(marketplace)
        repo.upsert(_prediction("b1", "Flower", date(2026, 9, 20)))
        repo.upsert(_prediction("b1", "Oil", date(2026, 10, 3)))
        repo.upsert(_prediction("b2", "Flower", date(2026, 11, 20)))
        upcoming = repo.list_between(date(2026, 10, 1), date(2026, 10, 31))
        assert [(p.buyer_id, p.category_name) for p in upcoming] == [("b1", "Oil")]
        overdue = repo.list_between(None, date(2026, 9, 30))
        assert [p.predicted_date for p in overdue] == [date(2026, 9, 20)]

    def test_delete_except_protects_buyers(self, marketplace):
        repo = PredictionRepository(marketplace)
        repo.upsert(_prediction("b1", "Flower", date(2026, 10, 5)))
        repo.upsert(_prediction("b1", "Oil", date(2026, 10, 5)))
        repo.upsert(_prediction("b2", "Flower", date(2026, 10, 5)))
        removed = repo.delete_except({("b1", "Flower")}, protect_buyers={"b2"})
        assert removed == 1
        remaining = {(p.buyer_id, p.category_name) for p in repo.list_all()}
        assert remaining == {("b1", "Flower"), ("b2", "Flower")}


# ── Run metadata repository ────────────────────────────────────────────────────

class TestRunMetadataRepository:
    def _run(self, kind: str = "churn", started: datetime = NOW) -> RunMetadata:
        return RunMetadata(
            run_slug=f"{kind}-{started.isoformat()}",
            job_kind=kind,
            as_of=started,
            config_snapshot={"runs": {"max_workers": 2}},
            started_at=started,
        )

    def test_insert_update_round_trip(self, in_memory_db):
        repo = RunMetadataRepository(in_memory_db)
        run = self._run()
        run.run_id = repo.insert_run(run)
        run.status = "partial"
        run.processed, run.errors = 5, 1
        run.counts = {"signals_created": 3, "signals_updated": 2}
        run.finished_at = NOW + timedelta(minutes=1)
        repo.update_run(run)

        fetched = repo.get_run(run.run_id)
        assert fetched.status == "partial"
        assert fetched.counts == {"signals_created": 3, "signals_updated": 2}
        assert fetched.config_snapshot == {"runs": {"max_workers": 2}}
        assert fetched.finished_at == NOW + timedelta(minutes=1)

    def test_update_without_id_raises(self, in_memory_db):
        with pytest.raises(ValueError):
            RunMetadataRepository(in_memory_db).update_run(self._run())

    def test_last_finished_by_kind_ignores_started(self, in_memory_db):
        repo = RunMetadataRepository(in_memory_db)
        done = self._run("churn", NOW - timedelta(hours=2))
        done.status = "success"
        repo.insert_run(done)
        repo.insert_run(self._run("churn", NOW))   # still running

        latest = repo.last_finished_by_kind()
        assert set(latest) == {"matches", "churn", "predictions", "seller_scores"}
        assert latest["churn"].started_at == NOW - timedelta(hours=2)
        assert latest["matches"] is None


# ── Seller scores and source records ───────────────────────────────────────────

class TestSellerScoreRepository:
    def test_upsert_and_top_sellers(self, marketplace, seed, user):
        seed(marketplace, users=[user("s2", can_sell=True)])
        repo = SellerScoreRepository(marketplace)
        for seller_id, overall in (("s1", 70.0), ("s2", 90.0), ("s1", 75.0)):
            repo.upsert(SellerScore(
                seller_id=seller_id, fill_rate=overall, quality_score=overall,
                delivery_score=overall, pricing_score=overall, overall_score=overall,
                transactions_scored=2, computed_at=NOW,
            ))
        assert [s.seller_id for s in repo.list_all()] == ["s2", "s1"]
        assert repo.get("s1").overall_score == 75.0
        top = repo.top_sellers(1)
        assert top[0]["seller_id"] == "s2" and top[0]["display_name"] == "S2"


class TestSourceRepository:
    def test_transactions_filtered_by_as_of(self, marketplace, seed, tx):
        seed(marketplace, transactions=[
            tx("b1", "s1", NOW - timedelta(days=1)),
            tx("b1", "s1", NOW + timedelta(days=1)),
        ])
        rows = SourceRepository(marketplace).fetch_transaction_rows(NOW)
        assert [r["transaction_id"] for r in rows] == ["t-0001"]

    def test_bid_rows_carry_product_category(self, marketplace, seed, bid):
        seed(marketplace, bids=[bid("b1", "p2", NOW - timedelta(days=1))])
        rows = SourceRepository(marketplace).fetch_bid_rows(NOW)
        assert rows[0]["category_name"] == "Oil"

    def test_outcome_update_on_reimport(self, marketplace, seed, tx):
        repo = SourceRepository(marketplace)
        original = tx("b1", "s1", NOW - timedelta(days=3))
        seed(marketplace, transactions=[original])
        seed(marketplace, transactions=[original.model_copy(update={"delivered_on_time": True})])
        row = repo.fetch_transaction_rows(NOW)[0]
        assert row["delivered_on_time"] == 1


# ── Connection usage ───────────────────────────────────────────────────────────

class TestConnectionUsage:
    @pytest.fixture
    def seeded_path(self, db_path, seed, user, product):
        with get_connection(db_path) as conn:
            seed(conn, users=[user("b1"), user("s1", can_buy=False)], products=[product("p1", "s1")])
        return db_path

    def test_upsert_commits_on_clean_exit(self, seeded_path):
        with get_connection(seeded_path) as conn:
            MatchRepository(conn).upsert(_match("b1", "p1", 70.0))
        with get_connection(seeded_path) as conn:
            assert MatchRepository(conn).get_by_pair("b1", "p1").score == 70.0

    def test_upsert_rolled_back_on_error(self, seeded_path):
        with pytest.raises(RuntimeError):
            with get_connection(seeded_path) as conn:
                MatchRepository(conn).upsert(_match("b1", "p1", 70.0))
                raise RuntimeError("abort")
        with get_connection(seeded_path) as conn:
            assert MatchRepository(conn).get_by_pair("b1", "p1") is None
