"""
Flat-file exports of engine results for BI tools and manual analysis.

All writers create parent directories, write to disk and return the written
``Path``. They accept generic ``list[dict]`` rows so they stay decoupled
from specific result shapes.

CSV and Parquet exports are flat (no nested dicts). ``flatten_matches_for_export()``
turns each ``Match`` into one row with every breakdown factor as its own
``f_<factor>`` column and the insight texts joined into a single string.
"""

from __future__ import annotations

import csv
import json
import logging
from pathlib import Path
from typing import Any, Optional

import pyarrow as pa
import pyarrow.parquet as pq

from marketplace_intel.models.intel import MATCH_FACTORS, Match
from marketplace_intel.models.source import Product, User

logger = logging.getLogger(__name__)

EXPORT_FORMATS = ("csv", "json", "parquet")

MATCH_EXPORT_COLUMNS: list[str] = [
    "match_id",
    "buyer_id",
    "buyer_name",
    "product_id",
    "category_name",
    "score",
    "status",
    "weights_version",
    *(f"f_{name}" for name in MATCH_FACTORS),
    "insights",
    "run_id",
    "computed_at",
]

# Parquet column types; anything not listed is written as a string.
_MATCH_PA_TYPES: dict[str, pa.DataType] = {
    "match_id": pa.int64(),
    "score": pa.float64(),
    "run_id": pa.int64(),
    **{f"f_{name}": pa.float64() for name in MATCH_FACTORS},
}


def export_to_csv(
    records: list[dict],
    path: Path,
    fieldnames: list[str] | None = None,
) -> Path:
    """Write ``records`` to a UTF-8 CSV file.

    Args:
        records:    List of row dicts.
        path:       Destination file path.
        fieldnames: Column order. If None, uses the keys of the first record.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    if not records and not fieldnames:
        path.write_text("", encoding="utf-8")
        return path
    cols = fieldnames or list(records[0].keys())
    with path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=cols, extrasaction="ignore")
        writer.writeheader()
        writer.writerows(records)
    return path


def export_to_json(data: dict | list, path: Path) -> Path:
    """Write ``data`` to a pretty-printed JSON file (datetimes as ISO strings)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2, default=str), encoding="utf-8")
    return path


def export_to_parquet(
    records: list[dict],
    path: Path,
    columns: list[str],
    types: Optional[dict[str, pa.DataType]] = None,
) -> Path:
    """Write ``records`` to a snappy-compressed Parquet file.

    Args:
        records: Flat row dicts.
        path:    Destination file path.
        columns: Column order; every column is written even when all rows lack it.
        types:   Column → Arrow type; unlisted columns become nullable strings.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    types = types or {}
    schema = pa.schema([pa.field(c, types.get(c, pa.string()), nullable=True) for c in columns])
    arrays: dict[str, pa.Array] = {}
    for field in schema:
        values = [r.get(field.name) for r in records]
        if field.type == pa.string():
            values = [None if v is None else str(v) for v in values]
        arrays[field.name] = pa.array(values, type=field.type)
    table = pa.table(arrays, schema=schema)
    pq.write_table(table, str(path), compression="snappy")
    logger.info("Parquet written: %s (%d rows)", path.name, len(records))
    return path


def flatten_matches_for_export(
    matches: list[Match],
    products: dict[str, Product] | None = None,
    users: dict[str, User] | None = None,
) -> list[dict[str, Any]]:
    """One flat row per match, with ``f_<factor>`` columns.

    Buyer names and categories are filled in when the lookups are given.
    """
    products = products or {}
    users = users or {}
    rows: list[dict[str, Any]] = []
    for m in matches:
        product = products.get(m.product_id)
        buyer = users.get(m.buyer_id)
        row: dict[str, Any] = {
            "match_id":        m.match_id,
            "buyer_id":        m.buyer_id,
            "buyer_name":      buyer.display_name if buyer else None,
            "product_id":      m.product_id,
            "category_name":   product.category_name if product else None,
            "score":           m.score,
            "status":          m.status,
            "weights_version": m.weights_version,
        }
        for name in MATCH_FACTORS:
            row[f"f_{name}"] = m.breakdown[name]
        row["insights"] = " | ".join(i.text for i in m.insights)
        row["run_id"] = m.run_id
        row["computed_at"] = m.computed_at.isoformat()
        rows.append(row)
    return rows


def export_matches(rows: list[dict[str, Any]], path: Path, fmt: str) -> Path:
    """Write flattened match rows in ``fmt`` (``csv`` | ``json`` | ``parquet``)."""
    if fmt == "csv":
        return export_to_csv(rows, path, fieldnames=MATCH_EXPORT_COLUMNS)
    if fmt == "json":
        return export_to_json(rows, path)
    if fmt == "parquet":
        return export_to_parquet(rows, path, MATCH_EXPORT_COLUMNS, _MATCH_PA_TYPES)
    raise ValueError(f"Unknown export format '{fmt}'. Must be one of {list(EXPORT_FORMATS)}.")
