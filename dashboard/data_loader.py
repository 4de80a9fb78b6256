"""
Dashboard data loader.

Every loader goes through ``IntelService`` and is wrapped in
``st.cache_data`` so Streamlit only re-queries the database when the TTL
expires, not on every widget interaction.

Results are converted to plain dicts / pandas DataFrames here so the view
code in ``app.py`` never touches pydantic models directly.
"""

from __future__ import annotations

from typing import Any, Optional

import pandas as pd
import streamlit as st

from marketplace_intel.config import load_config
from marketplace_intel.models.intel import MATCH_FACTORS
from marketplace_intel.service import IntelService


def _service(db_path: Optional[str]) -> IntelService:
    return IntelService(load_config(), db_path=db_path)


@st.cache_data(ttl=300)
def load_dashboard(db_path: Optional[str]) -> dict[str, Any]:
    """Consolidated figures; predictions and trends as lists of dicts."""
    data = _service(db_path).fetch_intel_dashboard()
    return {
        **data,
        "upcoming_predictions": [p.model_dump() for p in data["upcoming_predictions"]],
        "overdue_predictions": [p.model_dump() for p in data["overdue_predictions"]],
        "market_trends": [t.model_dump() for t in data["market_trends"]],
        "market_insights": data["market_insights"].model_dump(),
    }


@st.cache_data(ttl=300)
def load_matches(
    db_path: Optional[str],
    status: Optional[str],
    min_score: float,
    category: Optional[str],
    page: int,
) -> tuple[pd.DataFrame, int]:
    """One page of matches as a DataFrame with one column per factor."""
    result = _service(db_path).fetch_matches(
        status=status, min_score=min_score, category_name=category, page=page, limit=50
    )
    rows = []
    for m in result.matches:
        row = {
            "match_id": m.match_id,
            "buyer": m.buyer_id,
            "product": m.product_id,
            "score": m.score,
            "status": m.status,
            "insights": " | ".join(i.text for i in m.insights),
        }
        row.update({name: m.breakdown[name] for name in MATCH_FACTORS})
        rows.append(row)
    return pd.DataFrame(rows), result.total_pages


@st.cache_data(ttl=300)
def load_at_risk(db_path: Optional[str], min_level: str) -> pd.DataFrame:
    buyers = _service(db_path).fetch_at_risk_buyers(min_level, limit=50)
    rows = [
        {
            "buyer": b.display_name or b.buyer_id,
            "category": s.category_name,
            "risk_level": s.risk_level,
            "risk_score": s.risk_score,
            "days_since_purchase": s.days_since_purchase,
            "avg_interval_days": s.avg_interval_days,
            "signal_id": s.signal_id,
        }
        for b in buyers
        for s in b.signals
    ]
    return pd.DataFrame(rows)


@st.cache_data(ttl=300)
def load_seller_scores(db_path: Optional[str]) -> pd.DataFrame:
    scores = _service(db_path).fetch_seller_scores(limit=200)
    return pd.DataFrame([s.model_dump(exclude={"seller_score_id"}) for s in scores])


@st.cache_data(ttl=600)
def load_market_context(db_path: Optional[str], category: str) -> dict[str, Any]:
    return _service(db_path).fetch_market_context(category).model_dump()


@st.cache_data(ttl=600)
def load_categories(db_path: Optional[str]) -> list[str]:
    return sorted(t.category_name for t in _service(db_path).fetch_market_trends())
