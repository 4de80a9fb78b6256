"""Tests for source and engine model validation."""

from __future__ import annotations

from datetime import date, datetime, timezone

import pytest
from pydantic import ValidationError

from marketplace_intel.models.intel import (
    MATCH_FACTORS,
    ChurnSignal,
    Match,
    PredictionRecord,
    SellerScore,
)
from marketplace_intel.models.meta import RunMetadata
from marketplace_intel.models.source import Product, Transaction

NOW = datetime(2026, 10, 1, tzinfo=timezone.utc)


def _breakdown(value: float = 50.0) -> dict[str, float]:
    return {name: value for name in MATCH_FACTORS}


class TestTransaction:
    def test_naive_date_becomes_utc(self):
        t = Transaction(
            transaction_id="t1", buyer_id="b", seller_id="s", category_name="Flower",
            quantity=5, transaction_date=datetime(2026, 1, 1, 9, 30),
        )
        assert t.transaction_date.tzinfo is not None
        assert t.transaction_date.utcoffset().total_seconds() == 0

    def test_self_dealing_rejected(self):
        with pytest.raises(ValidationError, match="must differ"):
            Transaction(
                transaction_id="t1", buyer_id="x", seller_id="x", category_name="Flower",
                quantity=5, transaction_date=NOW,
            )

    def test_non_positive_quantity_rejected(self):
        with pytest.raises(ValidationError):
            Transaction(
                transaction_id="t1", buyer_id="b", seller_id="s", category_name="Flower",
                quantity=0, transaction_date=NOW,
            )

    def test_has_outcome(self):
        base = dict(
            transaction_id="t1", buyer_id="b", seller_id="s", category_name="Flower",
            quantity=5, unit_price=2.0, transaction_date=NOW,
        )
        assert not Transaction(**base).has_outcome
        assert Transaction(**base, delivered_on_time=False).has_outcome
        assert Transaction(**base).total_value == 10.0

    def test_negative_product_price_rejected(self):
        with pytest.raises(ValidationError):
            Product(product_id="p", seller_id="s", unit_price=-1.0)


class TestMatch:
    def test_breakdown_reordered_to_factor_order(self):
        shuffled = dict(reversed(list(_breakdown().items())))
        m = Match(
            buyer_id="b", product_id="p", score=50.0, breakdown=shuffled,
            weights_version="v1", computed_at=NOW,
        )
        assert tuple(m.breakdown) == MATCH_FACTORS

    def test_missing_factor_rejected(self):
        bd = _breakdown()
        del bd["price_fit"]
        with pytest.raises(ValidationError, match="missing"):
            Match(buyer_id="b", product_id="p", score=50.0, breakdown=bd,
                  weights_version="v1", computed_at=NOW)

    def test_out_of_range_values_rejected(self):
        with pytest.raises(ValidationError):
            Match(buyer_id="b", product_id="p", score=101.0, breakdown=_breakdown(),
                  weights_version="v1", computed_at=NOW)
        with pytest.raises(ValidationError):
            Match(buyer_id="b", product_id="p", score=50.0, breakdown=_breakdown(-1.0),
                  weights_version="v1", computed_at=NOW)

    def test_default_status_pending(self):
        m = Match(buyer_id="b", product_id="p", score=50.0, breakdown=_breakdown(),
                  weights_version="v1", computed_at=NOW)
        assert m.status == "pending"


class TestChurnSignal:
    def _signal(self, **kwargs) -> ChurnSignal:
        base = dict(
            buyer_id="b", category_name="Flower", risk_level="medium", risk_score=66.67,
            days_since_purchase=40, avg_interval_days=30.0, last_purchase_date=NOW,
            computed_at=NOW,
        )
        base.update(kwargs)
        return ChurnSignal(**base)

    def test_overall_signal_key_is_empty_string(self):
        assert self._signal(category_name=None).category_key == ""
        assert self._signal().category_key == "Flower"

    def test_active_signal_cannot_be_resolved(self):
        with pytest.raises(ValidationError):
            self._signal(is_active=True, resolved_at=NOW)

    def test_non_positive_interval_rejected(self):
        with pytest.raises(ValidationError):
            self._signal(avg_interval_days=0.0)


class TestPredictionRecord:
    def _record(self, **kwargs) -> PredictionRecord:
        base = dict(
            buyer_id="b", category_name="Flower", predicted_date=date(2026, 10, 5),
            confidence_score=0.5, avg_interval_days=30.0, based_on_transactions=3,
            last_purchase_date=NOW, computed_at=NOW,
        )
        base.update(kwargs)
        return PredictionRecord(**base)

    def test_days_until_and_overdue(self):
        r = self._record()
        assert r.days_until(date(2026, 10, 1)) == 4
        assert not r.is_overdue(date(2026, 10, 5))
        assert r.is_overdue(date(2026, 10, 6))

    def test_confidence_bounds(self):
        with pytest.raises(ValidationError):
            self._record(confidence_score=1.2)

    def test_requires_two_transactions(self):
        with pytest.raises(ValidationError):
            self._record(based_on_transactions=1)


class TestSellerScore:
    def test_component_range_enforced(self):
        with pytest.raises(ValidationError, match="fill_rate"):
            SellerScore(
                seller_id="s", fill_rate=120.0, quality_score=50.0, delivery_score=50.0,
                pricing_score=50.0, overall_score=50.0, transactions_scored=1, computed_at=NOW,
            )

    def test_requires_scored_transactions(self):
        with pytest.raises(ValidationError):
            SellerScore(
                seller_id="s", fill_rate=50.0, quality_score=50.0, delivery_score=50.0,
                pricing_score=50.0, overall_score=50.0, transactions_scored=0, computed_at=NOW,
            )


class TestRunMetadata:
    def test_unknown_job_kind_rejected(self):
        with pytest.raises(ValidationError, match="job_kind"):
            RunMetadata(
                run_slug="r", job_kind="inventory", as_of=NOW,
                config_snapshot={}, started_at=NOW,
            )

    def test_status_is_mutable(self):
        run = RunMetadata(
            run_slug="r", job_kind="churn", as_of=NOW, config_snapshot={}, started_at=NOW,
        )
        run.status = "success"
        assert run.status == "success"
