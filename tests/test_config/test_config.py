"""Tests for config loading, layering and weight-vector validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from marketplace_intel.config import (
    AppConfig,
    ConfigurationError,
    MatchWeights,
    build_app_config,
    load_config,
)
from marketplace_intel.models.intel import MATCH_FACTORS


class TestDefaults:
    def test_default_weights_sum_to_one(self):
        weights = AppConfig().matching.weights.as_dict()
        assert sum(weights.values()) == pytest.approx(1.0)

    def test_weight_order_matches_factor_order(self):
        assert tuple(MatchWeights().as_dict()) == MATCH_FACTORS

    def test_committed_default_toml_loads(self):
        cfg = load_config()
        assert cfg.matching.weights.version == "v1"
        assert cfg.churn.medium_ratio == 1.0
        assert cfg.runs.stale_after_hours == 26.0


class TestValidation:
    def test_match_weights_not_summing_to_one_rejected(self):
        raw = {"matching": {"weights": {"category_affinity": 0.5}}}
        with pytest.raises(ConfigurationError) as exc_info:
            build_app_config(raw)
        assert "sum to 1.0" in str(exc_info.value)
        assert exc_info.value.errors

    def test_negative_match_weight_rejected(self):
        raw = {"matching": {"weights": {"category_affinity": -0.15, "price_fit": 0.42}}}
        with pytest.raises(ConfigurationError, match="non-negative"):
            build_app_config(raw)

    def test_seller_weights_not_summing_to_one_rejected(self):
        raw = {"seller_scores": {"weights": {"fill_rate": 0.9}}}
        with pytest.raises(ConfigurationError, match="Seller score weights"):
            build_app_config(raw)

    def test_churn_ratio_order_enforced(self):
        raw = {"churn": {"medium_ratio": 1.6, "high_ratio": 1.5}}
        with pytest.raises(ConfigurationError):
            build_app_config(raw)

    def test_scheduler_time_format_enforced(self):
        with pytest.raises(ConfigurationError, match="HH:MM"):
            build_app_config({"scheduler": {"churn_time": "25:00"}})

    def test_min_score_out_of_range_rejected(self):
        with pytest.raises(ConfigurationError):
            build_app_config({"matching": {"min_score": 120}})

    def test_project_debug_flag_is_honored(self):
        cfg = build_app_config({"project": {"debug": True}})
        assert cfg.debug is True


class TestLoadConfig:
    def _write(self, path: Path, text: str) -> Path:
        path.write_text(text, encoding="utf-8")
        return path

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.toml")

    def test_local_toml_overrides_base(self, tmp_path, monkeypatch):
        monkeypatch.delenv("MARKETPLACE_INTEL_MAX_WORKERS", raising=False)
        base = self._write(tmp_path / "base.toml", "[runs]\nmax_workers = 2\n")
        self._write(tmp_path / "local.toml", "[runs]\nmax_workers = 6\n")
        assert load_config(base).runs.max_workers == 6

    def test_env_overrides_toml(self, tmp_path, monkeypatch):
        base = self._write(tmp_path / "base.toml", "[database]\ndb_path = \"a.db\"\n")
        monkeypatch.setenv("MARKETPLACE_INTEL_DB_PATH", str(tmp_path / "b.db"))
        monkeypatch.setenv("MARKETPLACE_INTEL_MAX_WORKERS", "3")
        cfg = load_config(base)
        assert cfg.database.db_path == str(tmp_path / "b.db")
        assert cfg.runs.max_workers == 3

    def test_invalid_weights_in_file_raise_configuration_error(self, tmp_path):
        base = self._write(
            tmp_path / "bad.toml",
            "[matching.weights]\nversion = \"v2\"\nprice_fit = 0.5\n",
        )
        with pytest.raises(ConfigurationError):
            load_config(base)
