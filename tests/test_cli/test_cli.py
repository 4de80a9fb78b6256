"""
End-to-end tests for cli.py via ``typer.testing.CliRunner``.

Each test writes a minimal TOML config pointing at a database under
``tmp_path`` with file logging disabled.
"""

from __future__ import annotations

import json
from pathlib import Path

import pyarrow.parquet as pq
import pytest
from typer.testing import CliRunner

from marketplace_intel.cli import app

SAMPLE_RECORDS = Path(__file__).parents[2] / "config" / "sample" / "records.json"
AS_OF = "2026-10-01T12:00:00Z"

runner = CliRunner()


@pytest.fixture
def cli_config(tmp_path) -> str:
    db = (tmp_path / "intel.db").as_posix()
    path = tmp_path / "test.toml"
    path.write_text(
        f'[database]\ndb_path = "{db}"\n\n[logging]\nlog_file = ""\n',
        encoding="utf-8",
    )
    return str(path)


def _invoke(*args: str):
    return runner.invoke(app, list(args))


@pytest.fixture
def loaded(cli_config) -> str:
    assert _invoke("init-db", "--config", cli_config).exit_code == 0
    result = _invoke("import-records", "--file", str(SAMPLE_RECORDS), "--config", cli_config)
    assert result.exit_code == 0, result.output
    return cli_config


# ── Setup ─────────────────────────────────────────────────────────────────────

def test_init_db(cli_config):
    result = _invoke("init-db", "--config", cli_config)
    assert result.exit_code == 0
    assert "[OK] Database ready." in result.stdout


def test_validate_config(cli_config):
    result = _invoke("validate-config", "--config", cli_config)
    assert result.exit_code == 0
    assert "Match weights:     v1" in result.stdout


def test_validate_config_rejects_bad_weights(tmp_path):
    bad = tmp_path / "bad.toml"
    bad.write_text('[matching.weights]\nprice_fit = 0.9\n', encoding="utf-8")
    assert _invoke("validate-config", "--config", str(bad)).exit_code == 1


def test_import_dry_run_writes_nothing(cli_config):
    _invoke("init-db", "--config", cli_config)
    result = _invoke("import-records", "--file", str(SAMPLE_RECORDS), "--config", cli_config, "--dry-run")
    assert result.exit_code == 0
    assert "[DRY RUN]" in result.stdout


def test_import_rejects_invalid_records(cli_config, tmp_path):
    _invoke("init-db", "--config", cli_config)
    bad = tmp_path / "bad.json"
    bad.write_text(json.dumps({"products": [{"product_id": "p1", "seller_id": "s1", "unit_price": -1}]}))
    assert _invoke("import-records", "--file", str(bad), "--config", cli_config).exit_code == 1


# ── Jobs ──────────────────────────────────────────────────────────────────────

@pytest.mark.parametrize("kind", ["predictions", "churn", "seller_scores", "matches"])
def test_run_job(loaded, kind):
    result = _invoke("run-job", kind, "--as-of", AS_OF, "--config", loaded)
    assert result.exit_code == 0, result.output
    assert f"[OK] Job {kind} finished" in result.stdout


def test_run_job_unknown_kind(loaded):
    assert _invoke("run-job", "inventory", "--config", loaded).exit_code == 1


def test_invalid_as_of(loaded):
    assert _invoke("detect-churn", "--as-of", "yesterday", "--config", loaded).exit_code == 1


# ── Reports ───────────────────────────────────────────────────────────────────

def test_reports_after_jobs(loaded):
    for command in ("predict-reorders", "detect-churn", "recalculate-seller-scores", "generate-matches"):
        assert _invoke(command, "--as-of", AS_OF, "--config", loaded).exit_code == 0

    assert "=== Matches ===" in _invoke("matches", "--config", loaded, "--breakdown").stdout
    assert "=== At-Risk Buyers ===" in _invoke("at-risk", "--config", loaded).stdout
    assert "=== Seller Scores ===" in _invoke("seller-scores", "--config", loaded).stdout
    assert "Overdue Reorders" in _invoke("predictions", "--overdue", "--config", loaded).stdout
    assert "Market Context: Flower" in _invoke(
        "market-context", "--category", "Flower", "--as-of", AS_OF, "--config", loaded
    ).stdout
    assert "Top Categories by Volume" in _invoke("market-context", "--as-of", AS_OF, "--config", loaded).stdout
    assert "=== Intelligence Dashboard ===" in _invoke("dashboard", "--config", loaded).stdout


def test_at_risk_unknown_level(loaded):
    assert _invoke("at-risk", "--min-level", "severe", "--config", loaded).exit_code == 1


def test_resolve_unknown_signal(loaded):
    assert _invoke("at-risk", "--resolve", "9999", "--config", loaded).exit_code == 1


def test_export_matches_parquet(loaded, tmp_path):
    _invoke("generate-matches", "--as-of", AS_OF, "--config", loaded)
    out = tmp_path / "exports" / "matches.parquet"
    result = _invoke("export-matches", "--format", "parquet", "--output", str(out), "--config", loaded)
    assert result.exit_code == 0, result.output
    assert "f_category_affinity" in pq.read_table(str(out)).column_names


def test_export_unknown_format(loaded, tmp_path):
    result = _invoke("export-matches", "--format", "xlsx", "--output", str(tmp_path / "m.xlsx"), "--config", loaded)
    assert result.exit_code == 1
