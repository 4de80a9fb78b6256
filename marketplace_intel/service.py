"""
Service facade: the operations other parts of the marketplace call.

``IntelService`` wraps the four jobs (manual triggers run synchronously and
return ``{status, processed, errors, ...counts}``) and the read side over
the engine tables. Read operations never write, with two explicit
exceptions: ``dismiss_match`` / ``mark_match_viewed`` (buyer-facing match
status) and ``resolve_churn_signal`` (manual churn resolution).

Market context, market trends, buyer propensity and the on-the-fly seller
score are computed from a fresh ``FactBundle`` on each call and are never
persisted.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Optional

from marketplace_intel.aggregation.facts import FactBundle, Scope
from marketplace_intel.aggregation.loader import AggregationLayer
from marketplace_intel.config import AppConfig
from marketplace_intel.db.connection import connect_from_config
from marketplace_intel.db.repositories.churn_repo import ChurnSignalRepository
from marketplace_intel.db.repositories.match_repo import MAX_PAGE_SIZE, MatchRepository
from marketplace_intel.db.repositories.prediction_repo import PredictionRepository
from marketplace_intel.db.repositories.run_repo import RunMetadataRepository
from marketplace_intel.db.repositories.seller_score_repo import SellerScoreRepository
from marketplace_intel.db.repositories.source_repo import SourceRepository
from marketplace_intel.market.context import MarketContextAggregator
from marketplace_intel.models.intel import (
    RISK_LEVEL_RANK,
    ChurnSignal,
    MarketContext,
    MarketInsights,
    MarketTrend,
    Match,
    PredictionRecord,
    SellerScore,
)
from marketplace_intel.pipeline.base import IntelJob, JobResult
from marketplace_intel.pipeline.churn import ChurnDetectionJob
from marketplace_intel.pipeline.matches import MatchGenerationJob
from marketplace_intel.pipeline.predictions import ReorderPredictionJob
from marketplace_intel.pipeline.seller_scores import SellerScoreJob
from marketplace_intel.scoring.propensity import buyer_propensity
from marketplace_intel.sellers.scorecard import score_seller
from marketplace_intel.utils.time_utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)

JOB_CLASSES: dict[str, type[IntelJob]] = {
    "matches": MatchGenerationJob,
    "churn": ChurnDetectionJob,
    "predictions": ReorderPredictionJob,
    "seller_scores": SellerScoreJob,
}

PREDICTION_TYPES = ("upcoming", "overdue")
MANUAL_RESOLUTION = "manual"


@dataclass(frozen=True)
class AtRiskBuyer:
    """Active category signals of one buyer, rolled up to the worst one."""

    buyer_id: str
    display_name: Optional[str]
    risk_level: str
    risk_score: float
    signals: list[ChurnSignal] = field(default_factory=list)


@dataclass(frozen=True)
class MatchPage:
    matches: list[Match]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


class IntelService:
    """Entry point for triggering jobs and reading their results.

    Args:
        config: Application configuration.
        db_path: Overrides ``config.database.db_path``.
    """

    def __init__(self, config: AppConfig, db_path: Optional[str] = None) -> None:
        self.config = config
        self.db_path = db_path or config.database.db_path

    def _connect(self):
        return connect_from_config(self.config.database, self.db_path)

    def _load_facts(self, as_of: Optional[datetime] = None, scope: Optional[Scope] = None) -> FactBundle:
        as_of = ensure_utc(as_of) if as_of is not None else utcnow()
        with self._connect() as conn:
            return AggregationLayer(conn).load(scope or Scope(), as_of)

    # ── Job triggers ──────────────────────────────────────────────────────────

    def run_job(self, job_kind: str, as_of: Optional[datetime] = None, **kwargs) -> JobResult:
        """Run one job kind synchronously."""
        try:
            job_cls = JOB_CLASSES[job_kind]
        except KeyError:
            raise ValueError(
                f"Unknown job kind '{job_kind}'. Must be one of {sorted(JOB_CLASSES)}."
            ) from None
        return job_cls(self.config, db_path=self.db_path).run(as_of=as_of, **kwargs)

    def generate_matches(
        self, product_id: Optional[str] = None, as_of: Optional[datetime] = None
    ) -> dict[str, Any]:
        return self.run_job("matches", as_of=as_of, product_id=product_id).as_dict()

    def run_churn_detection(self, as_of: Optional[datetime] = None) -> dict[str, Any]:
        return self.run_job("churn", as_of=as_of).as_dict()

    def run_reorder_predictions(self, as_of: Optional[datetime] = None) -> dict[str, Any]:
        return self.run_job("predictions", as_of=as_of).as_dict()

    def recalculate_seller_scores(self, as_of: Optional[datetime] = None) -> dict[str, Any]:
        return self.run_job("seller_scores", as_of=as_of).as_dict()

    # ── Matches ───────────────────────────────────────────────────────────────

    def fetch_matches(
        self,
        buyer_id: Optional[str] = None,
        product_id: Optional[str] = None,
        status: Optional[str] = None,
        min_score: Optional[float] = None,
        category_name: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> MatchPage:
        """One page of matches, best score first. ``limit`` is capped at 50."""
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        page = max(1, page)
        with self._connect() as conn:
            matches, total = MatchRepository(conn).query(
                buyer_id=buyer_id,
                product_id=product_id,
                status=status,
                min_score=min_score,
                category_name=category_name,
                page=page,
                limit=limit,
            )
        return MatchPage(matches=matches, page=page, limit=limit, total=total)

    def dismiss_match(self, match_id: int) -> bool:
        """Mark a match rejected. Returns ``False`` if it does not exist."""
        with self._connect() as conn:
            return MatchRepository(conn).set_status(match_id, "rejected")

    def mark_match_viewed(self, match_id: int) -> bool:
        """Move a pending match to ``viewed``; other statuses are left as they are."""
        with self._connect() as conn:
            repo = MatchRepository(conn)
            match = repo.get(match_id)
            if match is None:
                return False
            if match.status == "pending":
                repo.set_status(match_id, "viewed")
            return True

    # ── Churn ─────────────────────────────────────────────────────────────────

    def fetch_at_risk_buyers(self, min_risk_level: str = "medium", limit: int = 20) -> list[AtRiskBuyer]:
        """Buyers with active category signals at or above ``min_risk_level``.

        Raises:
            ValueError: ``min_risk_level`` is not a known tier.
        """
        with self._connect() as conn:
            signals = ChurnSignalRepository(conn).list_active(min_risk_level)
            users = {u.user_id: u for u in SourceRepository(conn).list_users()}

        by_buyer: dict[str, list[ChurnSignal]] = defaultdict(list)
        for s in signals:
            if s.category_name is not None:
                by_buyer[s.buyer_id].append(s)

        buyers = [
            AtRiskBuyer(
                buyer_id=buyer_id,
                display_name=users[buyer_id].display_name if buyer_id in users else None,
                risk_level=max((s.risk_level for s in items), key=RISK_LEVEL_RANK.__getitem__),
                risk_score=max(s.risk_score for s in items),
                signals=items,
            )
            for buyer_id, items in by_buyer.items()
        ]
        buyers.sort(key=lambda b: (-b.risk_score, b.buyer_id))
        return buyers[:limit]

    def resolve_churn_signal(self, signal_id: int, reason: str = MANUAL_RESOLUTION) -> bool:
        """Deactivate a signal by hand; it stays resolved until the buyer purchases again."""
        with self._connect() as conn:
            resolved = ChurnSignalRepository(conn).resolve(signal_id, reason, utcnow())
        if resolved:
            logger.info("Churn signal %d resolved (%s).", signal_id, reason)
        return resolved

    def fetch_churn_stats(self) -> dict[str, int]:
        with self._connect() as conn:
            return ChurnSignalRepository(conn).stats()

    # ── Predictions ───────────────────────────────────────────────────────────

    def fetch_predictions(
        self,
        days: Optional[int] = None,
        prediction_type: Optional[str] = None,
        limit: int = 20,
        today: Optional[date] = None,
    ) -> list[PredictionRecord]:
        """Upcoming (next ``days``, default 30) or overdue predictions.

        Overdue means the predicted date is before ``today``; they are
        listed oldest first.
        """
        if prediction_type is not None and prediction_type not in PREDICTION_TYPES:
            raise ValueError(
                f"Unknown prediction type '{prediction_type}'. Must be one of {list(PREDICTION_TYPES)}."
            )
        today = today or utcnow().date()
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        with self._connect() as conn:
            repo = PredictionRepository(conn)
            if prediction_type == "overdue":
                return repo.list_between(None, today - timedelta(days=1), limit)
            return repo.list_between(today, today + timedelta(days=days or 30), limit)

    def fetch_predictions_calendar(self, today: Optional[date] = None) -> dict[date, list[PredictionRecord]]:
        """Overdue and next-30-day predictions grouped by week (weeks start on Sunday)."""
        today = today or utcnow().date()
        records = self.fetch_predictions(prediction_type="overdue", limit=MAX_PAGE_SIZE, today=today)
        records += self.fetch_predictions(days=30, limit=MAX_PAGE_SIZE, today=today)

        weeks: dict[date, list[PredictionRecord]] = defaultdict(list)
        for record in records:
            d = record.predicted_date
            weeks[d - timedelta(days=(d.weekday() + 1) % 7)].append(record)
        return dict(sorted(weeks.items()))

    # ── Sellers ───────────────────────────────────────────────────────────────

    def fetch_seller_scores(self, limit: int = 20) -> list[SellerScore]:
        with self._connect() as conn:
            return SellerScoreRepository(conn).list_all()[:limit]

    def fetch_seller_score(self, seller_id: str, as_of: Optional[datetime] = None) -> Optional[SellerScore]:
        """Stored scorecard, or one computed on the fly (not persisted) if none exists yet."""
        with self._connect() as conn:
            stored = SellerScoreRepository(conn).get(seller_id)
        if stored is not None:
            return stored

        bundle = self._load_facts(as_of, Scope(seller_id=seller_id))
        market = MarketContextAggregator(bundle, self.config.market)
        card = score_seller(bundle.deliveries.get(seller_id), market.market_average, self.config.seller_scores)
        if card is None:
            return None
        return SellerScore(
            seller_id=seller_id,
            fill_rate=card.fill_rate,
            quality_score=card.quality_score,
            delivery_score=card.delivery_score,
            pricing_score=card.pricing_score,
            overall_score=card.overall_score,
            transactions_scored=card.transactions_scored,
            computed_at=bundle.as_of,
        )

    # ── Market ────────────────────────────────────────────────────────────────

    def fetch_market_context(self, category_name: str, as_of: Optional[datetime] = None) -> MarketContext:
        bundle = self._load_facts(as_of)
        return MarketContextAggregator(bundle, self.config.market).context(category_name)

    def fetch_market_trends(self, as_of: Optional[datetime] = None) -> list[MarketTrend]:
        bundle = self._load_facts(as_of)
        return MarketContextAggregator(bundle, self.config.market).trends()

    def fetch_market_insights(self, as_of: Optional[datetime] = None) -> MarketInsights:
        bundle = self._load_facts(as_of)
        return MarketContextAggregator(bundle, self.config.market).insights()

    def fetch_top_propensity_buyers(self, limit: int = 5, as_of: Optional[datetime] = None) -> list[dict[str, Any]]:
        """Buyers ranked by overall propensity across all their categories."""
        bundle = self._load_facts(as_of)
        ranked: list[dict[str, Any]] = []
        for buyer_id, user in sorted(bundle.users.items()):
            if not (user.is_active and user.can_buy):
                continue
            score = buyer_propensity(bundle, buyer_id, None, self.config.churn, self.config.prediction)
            if score is None:
                continue
            ranked.append({
                "buyer_id": buyer_id,
                "display_name": user.display_name,
                "propensity_score": score.overall,
            })
        ranked.sort(key=lambda r: (-r["propensity_score"], r["buyer_id"]))
        return ranked[:limit]

    # ── Status & dashboard ────────────────────────────────────────────────────

    def fetch_job_status(self, now: Optional[datetime] = None) -> dict[str, dict[str, Any]]:
        """Last finished run per job kind with its age and freshness."""
        now = ensure_utc(now) if now is not None else utcnow()
        with self._connect() as conn:
            latest = RunMetadataRepository(conn).last_finished_by_kind()

        status: dict[str, dict[str, Any]] = {}
        for kind, run in latest.items():
            if run is None:
                status[kind] = {
                    "status": None,
                    "finished_at": None,
                    "age_hours": None,
                    "is_fresh": False,
                    "processed": 0,
                    "errors": 0,
                    "counts": {},
                }
                continue
            finished = run.finished_at or run.started_at
            age_hours = round((now - finished).total_seconds() / 3600.0, 2)
            status[kind] = {
                "status": run.status,
                "finished_at": finished,
                "age_hours": age_hours,
                "is_fresh": run.status != "failed" and age_hours <= self.config.runs.stale_after_hours,
                "processed": run.processed,
                "errors": run.errors,
                "counts": run.counts,
            }
        return status

    def fetch_intel_dashboard(self, now: Optional[datetime] = None) -> dict[str, Any]:
        """Consolidated figures for the dashboard and the ``dashboard`` command."""
        now = ensure_utc(now) if now is not None else utcnow()
        today = now.date()
        with self._connect() as conn:
            match_summary = MatchRepository(conn).summary()
            churn_stats = ChurnSignalRepository(conn).stats()
            top_sellers = SellerScoreRepository(conn).top_sellers(5)

        return {
            "generated_at": now,
            "jobs": self.fetch_job_status(now),
            "pending_matches": match_summary["pending"],
            "total_matches": match_summary["total"],
            "avg_match_score": match_summary["avg_score"] or 0.0,
            "upcoming_predictions": self.fetch_predictions(days=7, limit=5, today=today),
            "overdue_predictions": self.fetch_predictions(prediction_type="overdue", limit=5, today=today),
            "at_risk_buyers": {
                "critical": churn_stats["critical_count"],
                "high": churn_stats["high_count"],
                "medium": churn_stats["medium_count"],
                "low": churn_stats["low_count"],
            },
            "market_trends": self.fetch_market_trends(now)[:5],
            "market_insights": self.fetch_market_insights(now),
            "top_sellers": top_sellers,
            "top_buyers": self.fetch_top_propensity_buyers(5, now),
        }
