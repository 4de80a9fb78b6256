"""
ASCII terminal formatters for CLI reporting commands.

All formatters accept service results (models, dataclasses or dicts) and
return plain multi-line strings suitable for ``typer.echo()``.

No third-party dependencies (no ``rich``, no ``colorama``).

Freshness banners
-----------------
Reports backed by a job start with a freshness banner so readers can tell
at a glance whether the figures are current::

  [FRESH] Last run 1.2h ago (success)
  [STALE] Last run 30.4h ago (partial)  <- visible warning
  [NEVER RUN] no finished run recorded
"""

from __future__ import annotations

from datetime import date
from typing import Any, Optional

from marketplace_intel.models.intel import (
    MATCH_FACTORS,
    MarketContext,
    MarketInsights,
    MarketTrend,
    PredictionRecord,
    SellerScore,
)


# ── Freshness banner ─────────────────────────────────────────────────────────


def format_freshness_banner(job_status: Optional[dict[str, Any]]) -> str:
    """One-line freshness indicator for one entry of ``fetch_job_status()``."""
    if job_status is None or job_status.get("age_hours") is None:
        return "  [NEVER RUN] no finished run recorded"
    age = job_status["age_hours"]
    tag = "[FRESH]" if job_status.get("is_fresh") else "[STALE]"
    line = f"  {tag} Last run {age:.1f}h ago ({job_status.get('status')})"
    if not job_status.get("is_fresh"):
        line += " -- figures may not reflect current activity"
    return line


def _fmt_num(value: Any, fmt: str = ".1f") -> str:
    return format(value, fmt) if isinstance(value, (int, float)) else "-"


# ── Job status ────────────────────────────────────────────────────────────────


def format_job_status(status: dict[str, dict[str, Any]]) -> str:
    lines = ["", "=== Job Status ==="]
    header = f"  {'Job':<14}  {'Status':<8}  {'Age (h)':>8}  {'Processed':>9}  {'Errors':>6}  Fresh"
    lines.append(header)
    lines.append("  " + "-" * (len(header) - 2))
    for kind in sorted(status):
        s = status[kind]
        fresh = "yes" if s.get("is_fresh") else "no"
        lines.append(
            f"  {kind:<14}  {str(s.get('status') or 'never'):<8}  "
            f"{_fmt_num(s.get('age_hours')):>8}  {s.get('processed', 0):>9}  "
            f"{s.get('errors', 0):>6}  {fresh}"
        )
    return "\n".join(lines)


# ── Matches ───────────────────────────────────────────────────────────────────


def format_matches_table(
    matches: list,
    total: int,
    page: int,
    total_pages: int,
    job_status: Optional[dict[str, Any]] = None,
    show_breakdown: bool = False,
) -> str:
    """Score-ordered match list; optional per-factor breakdown under each row."""
    lines = ["", "=== Matches ===", format_freshness_banner(job_status)]
    lines.append(f"  Page {page}/{max(total_pages, 1)}  ({total} total)")
    if not matches:
        lines.append("")
        lines.append("  (no matches -- run 'generate-matches' first)")
        return "\n".join(lines)

    header = f"  {'ID':>6}  {'Buyer':<16}  {'Product':<16}  {'Score':>6}  {'Status':<9}  Top insight"
    lines.append("")
    lines.append(header)
    lines.append("  " + "-" * (len(header) - 2))
    for m in matches:
        insight = m.insights[0].text if m.insights else ""
        lines.append(
            f"  {m.match_id or '':>6}  {m.buyer_id[:16]:<16}  {m.product_id[:16]:<16}  "
            f"{m.score:>6.1f}  {m.status:<9}  {insight}"
        )
        if show_breakdown:
            for name in MATCH_FACTORS:
                lines.append(f"          {name:<22} {m.breakdown[name]:>6.1f}")
    return "\n".join(lines)


# ── Churn ─────────────────────────────────────────────────────────────────────


def format_at_risk_table(
    buyers: list,
    stats: dict[str, int],
    job_status: Optional[dict[str, Any]] = None,
) -> str:
    lines = ["", "=== At-Risk Buyers ===", format_freshness_banner(job_status)]
    lines.append(
        f"  Critical: {stats.get('critical_count', 0)}  High: {stats.get('high_count', 0)}  "
        f"Medium: {stats.get('medium_count', 0)}  Low: {stats.get('low_count', 0)}  "
        f"(distinct at-risk buyers: {stats.get('total_at_risk', 0)})"
    )
    if not buyers:
        lines.append("")
        lines.append("  (no active churn signals)")
        return "\n".join(lines)

    header = f"  {'Buyer':<20}  {'Level':<8}  {'Score':>6}  {'Category':<20}  {'Days':>5}  {'Avg gap':>7}"
    lines.append("")
    lines.append(header)
    lines.append("  " + "-" * (len(header) - 2))
    for b in buyers:
        name = (b.display_name or b.buyer_id)[:20]
        lines.append(f"  {name:<20}  {b.risk_level:<8}  {b.risk_score:>6.1f}")
        for s in b.signals:
            lines.append(
                f"  {'':<20}  {s.risk_level:<8}  {s.risk_score:>6.1f}  "
                f"{(s.category_name or '')[:20]:<20}  {s.days_since_purchase:>5}  "
                f"{s.avg_interval_days:>7.1f}"
            )
    return "\n".join(lines)


# ── Predictions ───────────────────────────────────────────────────────────────


def format_predictions_table(
    records: list[PredictionRecord],
    today: date,
    title: str = "Upcoming Reorders",
    job_status: Optional[dict[str, Any]] = None,
) -> str:
    lines = ["", f"=== {title} ===", format_freshness_banner(job_status)]
    if not records:
        lines.append("")
        lines.append("  (no predictions in range)")
        return "\n".join(lines)

    header = f"  {'Buyer':<16}  {'Category':<20}  {'Predicted':<10}  {'When':>12}  {'Conf':>5}  {'Based on':>8}"
    lines.append("")
    lines.append(header)
    lines.append("  " + "-" * (len(header) - 2))
    for r in records:
        days = r.days_until(today)
        when = f"{-days}d overdue" if days < 0 else ("today" if days == 0 else f"in {days}d")
        lines.append(
            f"  {r.buyer_id[:16]:<16}  {r.category_name[:20]:<20}  "
            f"{r.predicted_date.isoformat():<10}  {when:>12}  "
            f"{r.confidence_score:>5.2f}  {r.based_on_transactions:>8}"
        )
    return "\n".join(lines)


# ── Sellers ───────────────────────────────────────────────────────────────────


def format_seller_scores_table(
    scores: list[SellerScore],
    job_status: Optional[dict[str, Any]] = None,
) -> str:
    lines = ["", "=== Seller Scores ===", format_freshness_banner(job_status)]
    if not scores:
        lines.append("")
        lines.append("  (no seller scores -- run 'recalculate-seller-scores' first)")
        return "\n".join(lines)
    header = (
        f"  {'Seller':<16}  {'Overall':>7}  {'Fill':>6}  {'Quality':>7}  "
        f"{'Delivery':>8}  {'Pricing':>7}  {'Txns':>5}"
    )
    lines.append("")
    lines.append(header)
    lines.append("  " + "-" * (len(header) - 2))
    for s in scores:
        lines.append(
            f"  {s.seller_id[:16]:<16}  {s.overall_score:>7.1f}  {s.fill_rate:>6.1f}  "
            f"{s.quality_score:>7.1f}  {s.delivery_score:>8.1f}  {s.pricing_score:>7.1f}  "
            f"{s.transactions_scored:>5}"
        )
    return "\n".join(lines)


# ── Market ────────────────────────────────────────────────────────────────────


def format_market_context(ctx: MarketContext) -> str:
    lines = ["", f"=== Market Context: {ctx.category_name} ===", f"  As of: {ctx.as_of.isoformat()}"]
    header = f"  {'Window':>6}  {'Avg':>10}  {'Min':>10}  {'Max':>10}  {'Change':>8}  {'Txns':>5}  {'Volume':>10}"
    lines.append(header)
    lines.append("  " + "-" * (len(header) - 2))
    for w in (ctx.short_window, ctx.long_window):
        change = f"{w.change_pct:+.1f}%" if w.change_pct is not None else "-"
        lines.append(
            f"  {str(w.days) + 'd':>6}  {_fmt_num(w.avg_price, '.2f'):>10}  "
            f"{_fmt_num(w.min_price, '.2f'):>10}  {_fmt_num(w.max_price, '.2f'):>10}  "
            f"{change:>8}  {w.transaction_count:>5}  {w.total_volume:>10.1f}"
        )
    lines.append("")
    lines.append(
        f"  Active listings: {ctx.active_listings}  Active buyers: {ctx.active_buyers}  "
        f"Ratio: {ctx.supply_demand_ratio:.2f}  Assessment: {ctx.assessment}"
    )
    return "\n".join(lines)


def format_market_trends(trends: list[MarketTrend]) -> str:
    lines = ["", "=== Market Trends (30d) ==="]
    if not trends:
        lines.append("  (no recent transactions)")
        return "\n".join(lines)
    for t in trends:
        change = f"{t.change_pct:+.1f}%" if t.change_pct is not None else "new"
        lines.append(
            f"  {t.category_name[:24]:<24}  {t.current_avg:>10.2f}  {change:>8}  "
            f"{t.direction:<6}  ({t.transaction_count} txns)"
        )
    return "\n".join(lines)


def format_market_insights(insights: MarketInsights) -> str:
    lines = ["", "=== Top Categories by Volume (30d) ==="]
    if not insights.top_categories:
        lines.append("  (no recent transactions)")
        return "\n".join(lines)
    for c in insights.top_categories:
        lines.append(f"  {c.category_name[:24]:<24}  {c.volume:>12.2f}  avg {c.avg_price:>10.2f}")
    lines.append("")
    lines.append("=== Supply / Demand ===")
    for sd in insights.supply_demand:
        lines.append(f"  {sd.category_name[:24]:<24}  ratio {sd.ratio:>6.2f}  {sd.assessment}")
    return "\n".join(lines)


# ── Dashboard ─────────────────────────────────────────────────────────────────


def format_dashboard(data: dict[str, Any]) -> str:
    """Plain-text rendering of ``IntelService.fetch_intel_dashboard()``."""
    today = data["generated_at"].date()
    lines = ["", "=== Intelligence Dashboard ===", f"  Generated at: {data['generated_at'].isoformat()}"]
    lines.append(format_job_status(data["jobs"]))
    lines.append("")
    lines.append(
        f"  Matches: {data['total_matches']} total, {data['pending_matches']} pending, "
        f"avg score {data['avg_match_score']:.1f}"
    )
    risk = data["at_risk_buyers"]
    lines.append(
        f"  Churn:   critical {risk['critical']}  high {risk['high']}  "
        f"medium {risk['medium']}  low {risk['low']}"
    )
    lines.append(format_predictions_table(data["upcoming_predictions"], today, "Reorders Due This Week"))
    lines.append(format_predictions_table(data["overdue_predictions"], today, "Overdue Reorders"))
    lines.append(format_market_trends(data["market_trends"]))
    lines.append(format_market_insights(data["market_insights"]))

    lines.append("")
    lines.append("=== Top Sellers ===")
    for s in data["top_sellers"] or []:
        lines.append(f"  {(s.get('display_name') or s['seller_id'])[:24]:<24}  {s['overall_score']:>6.1f}")
    lines.append("")
    lines.append("=== Top Buyers (propensity) ===")
    for b in data["top_buyers"] or []:
        lines.append(f"  {(b.get('display_name') or b['buyer_id'])[:24]:<24}  {b['propensity_score']:>6.1f}")
    return "\n".join(lines)
