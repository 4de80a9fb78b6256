"""Tests for reporting/export.py — CSV, JSON and Parquet match exports."""

from __future__ import annotations

import csv
import json
from datetime import datetime, timezone

import pyarrow.parquet as pq
import pytest

from marketplace_intel.models.intel import MATCH_FACTORS, Insight, Match
from marketplace_intel.models.source import Product, User
from marketplace_intel.reporting.export import (
    MATCH_EXPORT_COLUMNS,
    export_matches,
    export_to_csv,
    flatten_matches_for_export,
)

COMPUTED = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def rows() -> list[dict]:
    breakdown = {name: 50.0 for name in MATCH_FACTORS}
    breakdown["reorder_timing"] = 100.0
    matches = [
        Match(
            match_id=1, buyer_id="b1", product_id="p1", score=72.5, breakdown=breakdown,
            insights=[
                Insight(type="urgent", text="Buyer is overdue for reorder"),
                Insight(type="positive", text="Same region as buyer"),
            ],
            weights_version="v1", run_id=3, computed_at=COMPUTED,
        ),
        Match(
            match_id=2, buyer_id="b2", product_id="p1", score=50.0,
            breakdown={name: 50.0 for name in MATCH_FACTORS},
            weights_version="v1", computed_at=COMPUTED,
        ),
    ]
    products = {"p1": Product(product_id="p1", seller_id="s1", category_name="Flower")}
    users = {"b1": User(user_id="b1", display_name="Green Leaf Co")}
    return flatten_matches_for_export(matches, products, users)


def test_flatten_has_factor_columns(rows):
    first = rows[0]
    assert list(first) == MATCH_EXPORT_COLUMNS
    assert first["f_reorder_timing"] == 100.0
    assert first["buyer_name"] == "Green Leaf Co"
    assert first["category_name"] == "Flower"
    assert first["insights"] == "Buyer is overdue for reorder | Same region as buyer"
    assert rows[1]["buyer_name"] is None
    assert rows[1]["insights"] == ""


def test_csv_export(rows, tmp_path):
    path = export_matches(rows, tmp_path / "out" / "matches.csv", "csv")
    with path.open(encoding="utf-8") as f:
        read = list(csv.DictReader(f))
    assert len(read) == 2
    assert read[0]["f_category_affinity"] == "50.0"
    assert read[0]["score"] == "72.5"


def test_json_export(rows, tmp_path):
    path = export_matches(rows, tmp_path / "matches.json", "json")
    data = json.loads(path.read_text(encoding="utf-8"))
    assert [r["buyer_id"] for r in data] == ["b1", "b2"]
    assert data[0]["computed_at"] == COMPUTED.isoformat()


def test_parquet_export(rows, tmp_path):
    path = export_matches(rows, tmp_path / "matches.parquet", "parquet")
    table = pq.read_table(str(path))
    assert table.column_names == MATCH_EXPORT_COLUMNS
    assert table.num_rows == 2
    assert table.column("f_reorder_timing").to_pylist() == [100.0, 50.0]
    assert table.column("run_id").to_pylist() == [3, None]


def test_unknown_format(rows, tmp_path):
    with pytest.raises(ValueError, match="Unknown export format"):
        export_matches(rows, tmp_path / "matches.xlsx", "xlsx")


def test_empty_csv_keeps_header(tmp_path):
    path = export_to_csv([], tmp_path / "empty.csv", fieldnames=MATCH_EXPORT_COLUMNS)
    assert path.read_text(encoding="utf-8").strip() == ",".join(MATCH_EXPORT_COLUMNS)
