"""
Marketplace Intelligence — Streamlit Dashboard
==============================================

Optional read-only view over the engine tables. It does NOT trigger any
jobs; use the CLI (``mpintel run-job <kind>``) or the scheduler for that.

Why optional?
-------------
- Streamlit and pandas are not needed for headless job runs.
- Everything shown here is also available through CLI report commands.

App structure (5 tabs)
----------------------
  1. Overview  — Job freshness, match and churn totals, top sellers/buyers.
  2. Matches   — Filterable match list with the full factor breakdown.
  3. Churn     — Active signals by buyer and category.
  4. Reorders  — Upcoming and overdue reorder predictions.
  5. Market    — Rolling price windows and supply/demand per category.

Usage
-----
    pip install -e ".[dashboard]"
    streamlit run dashboard/app.py
"""

from __future__ import annotations

import sys
from pathlib import Path

# ── Ensure project root is importable ────────────────────────────────────────
_ROOT = Path(__file__).resolve().parent.parent
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

import streamlit as st

# ── Must be the first Streamlit call ─────────────────────────────────────────
st.set_page_config(
    page_title="Marketplace Intelligence",
    layout="wide",
    initial_sidebar_state="expanded",
)

import pandas as pd

from dashboard.data_loader import (
    load_at_risk,
    load_categories,
    load_dashboard,
    load_market_context,
    load_matches,
    load_seller_scores,
)
from marketplace_intel.models.intel import RISK_LEVELS, VALID_MATCH_STATUSES


# ── Sidebar ───────────────────────────────────────────────────────────────────

with st.sidebar:
    st.title("Marketplace Intelligence")
    st.caption("Read-only view; jobs run from the CLI or scheduler")
    st.divider()

    db_path = st.text_input(
        "Database path",
        value="",
        help="Leave empty to use database.db_path from the config.",
    ) or None

    if st.button("Clear cache", help="Force re-read from the database."):
        st.cache_data.clear()
        st.rerun()

    st.divider()
    st.caption("Refresh data:")
    st.code("mpintel run-job predictions\nmpintel run-job churn\nmpintel run-job seller_scores\nmpintel run-job matches")


def _freshness_badge(status: dict | None, label: str) -> None:
    if status is None or status.get("age_hours") is None:
        st.error(f"{label}  NEVER RUN")
    elif status.get("is_fresh"):
        st.success(f"{label}  FRESH ({status['age_hours']:.1f}h ago, {status['status']})")
    else:
        st.warning(f"{label}  STALE ({status['age_hours']:.1f}h ago, {status['status']})")


dash = load_dashboard(db_path)
jobs = dash["jobs"]

tab_overview, tab_matches, tab_churn, tab_reorders, tab_market = st.tabs(
    ["Overview", "Matches", "Churn", "Reorders", "Market"]
)


# ══════════════════════════════════════════════════════════════════════════════
# Tab 1 — Overview
# ══════════════════════════════════════════════════════════════════════════════

with tab_overview:
    st.header("Overview")
    cols = st.columns(4)
    for col, kind in zip(cols, ("matches", "churn", "predictions", "seller_scores")):
        with col:
            _freshness_badge(jobs.get(kind), kind)

    m1, m2, m3, m4 = st.columns(4)
    m1.metric("Pending matches", dash["pending_matches"])
    m2.metric("Total matches", dash["total_matches"])
    m3.metric("Avg match score", f"{dash['avg_match_score']:.1f}")
    risk = dash["at_risk_buyers"]
    m4.metric("Critical churn signals", risk["critical"])

    st.subheader("Churn signals by tier")
    st.bar_chart(pd.DataFrame({"signals": [risk[level] for level in RISK_LEVELS]}, index=list(RISK_LEVELS)))

    left, right = st.columns(2)
    with left:
        st.subheader("Top sellers")
        st.dataframe(pd.DataFrame(dash["top_sellers"]), use_container_width=True, hide_index=True)
    with right:
        st.subheader("Top buyers (propensity)")
        st.dataframe(pd.DataFrame(dash["top_buyers"]), use_container_width=True, hide_index=True)


# ══════════════════════════════════════════════════════════════════════════════
# Tab 2 — Matches
# ══════════════════════════════════════════════════════════════════════════════

with tab_matches:
    st.header("Matches")
    _freshness_badge(jobs.get("matches"), "Match generation")

    c1, c2, c3, c4 = st.columns(4)
    with c1:
        status = st.selectbox("Status", ["All"] + sorted(VALID_MATCH_STATUSES))
    with c2:
        min_score = st.slider("Minimum score", 0, 100, 50)
    with c3:
        categories = load_categories(db_path)
        category = st.selectbox("Category", ["All"] + categories)
    with c4:
        page = st.number_input("Page", min_value=1, value=1)

    df_matches, total_pages = load_matches(
        db_path,
        None if status == "All" else status,
        float(min_score),
        None if category == "All" else category,
        int(page),
    )
    if df_matches.empty:
        st.info("No matches for these filters. Run `mpintel generate-matches`.")
    else:
        st.caption(f"Page {int(page)} of {max(total_pages, 1)}")
        st.dataframe(df_matches, use_container_width=True, hide_index=True)


# ══════════════════════════════════════════════════════════════════════════════
# Tab 3 — Churn
# ══════════════════════════════════════════════════════════════════════════════

with tab_churn:
    st.header("At-Risk Buyers")
    _freshness_badge(jobs.get("churn"), "Churn detection")
    min_level = st.selectbox("Minimum risk level", list(RISK_LEVELS[1:]), index=0)
    df_risk = load_at_risk(db_path, min_level)
    if df_risk.empty:
        st.info("No active churn signals at this level.")
    else:
        st.dataframe(df_risk, use_container_width=True, hide_index=True)


# ══════════════════════════════════════════════════════════════════════════════
# Tab 4 — Reorders
# ══════════════════════════════════════════════════════════════════════════════

with tab_reorders:
    st.header("Reorder Predictions")
    _freshness_badge(jobs.get("predictions"), "Reorder prediction")
    left, right = st.columns(2)
    with left:
        st.subheader("Due this week")
        st.dataframe(pd.DataFrame(dash["upcoming_predictions"]), use_container_width=True, hide_index=True)
    with right:
        st.subheader("Overdue")
        st.dataframe(pd.DataFrame(dash["overdue_predictions"]), use_container_width=True, hide_index=True)

    st.subheader("Seller scorecards")
    _freshness_badge(jobs.get("seller_scores"), "Seller scores")
    st.dataframe(load_seller_scores(db_path), use_container_width=True, hide_index=True)


# ══════════════════════════════════════════════════════════════════════════════
# Tab 5 — Market
# ══════════════════════════════════════════════════════════════════════════════

with tab_market:
    st.header("Market")
    trends = pd.DataFrame(dash["market_trends"])
    if trends.empty:
        st.info("No transactions in the last 30 days.")
    else:
        st.subheader("Biggest 30-day moves")
        st.dataframe(trends, use_container_width=True, hide_index=True)

    insights = dash["market_insights"]
    if insights["top_categories"]:
        left, right = st.columns(2)
        with left:
            st.subheader("Top categories by volume")
            st.dataframe(pd.DataFrame(insights["top_categories"]), use_container_width=True, hide_index=True)
        with right:
            st.subheader("Supply / demand")
            st.dataframe(pd.DataFrame(insights["supply_demand"]), use_container_width=True, hide_index=True)

    categories = load_categories(db_path)
    if categories:
        sel = st.selectbox("Category detail", categories, key="market_cat")
        ctx = load_market_context(db_path, sel)
        windows = pd.DataFrame([ctx["short_window"], ctx["long_window"]]).set_index("days")
        st.dataframe(windows, use_container_width=True)
        a, b, c = st.columns(3)
        a.metric("Active listings", ctx["active_listings"])
        b.metric("Active buyers", ctx["active_buyers"])
        c.metric("Supply/demand", f"{ctx['supply_demand_ratio']:.2f}", ctx["assessment"])
