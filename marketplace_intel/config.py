"""
Application configuration management.

Load order (each layer overrides the previous):
  1. ``config/default.toml``      — committed static defaults
  2. ``config/local.toml``        — optional local overrides (gitignored)
  3. ``.env``                     — local secrets and env overrides (gitignored)
  4. Environment variables        — ``MARKETPLACE_INTEL_*`` prefix

Entry point: ``load_config(config_path=None) -> AppConfig``

Weight vectors (match factors and seller score components) are validated
here, at load time. A vector that does not sum to 1.0 is rejected with a
``ConfigurationError`` before any job can run with it.
"""

from __future__ import annotations

import os
import re
import tomllib
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

_WEIGHT_TOLERANCE = 1e-6
_HHMM_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class ConfigurationError(RuntimeError):
    """Raised when the merged configuration fails validation.

    Attributes:
        errors: Human-readable validation messages, one per failing field.
    """

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


# ── Sub-config models ─────────────────────────────────────────────────────────


class DatabaseConfig(BaseModel):
    """SQLite database connection settings."""

    model_config = ConfigDict(frozen=True)

    db_path: str = "data/db/marketplace_intel.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000


class LoggingConfig(BaseModel):
    """Logging output settings."""

    model_config = ConfigDict(frozen=True)

    level: str = "INFO"
    log_file: str = "data/logs/marketplace_intel.log"
    json_format: bool = False

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid:
            raise ValueError(f"Log level must be one of {sorted(valid)}, got '{v}'.")
        return v.upper()


class MatchWeights(BaseModel):
    """Versioned weight vector for the ten match factors.

    Field order is the fixed summation order used by the composite score.
    The ``version`` string is stamped on every persisted match so scores
    produced under different vectors can be told apart.
    """

    model_config = ConfigDict(frozen=True)

    version: str = "v1"
    category_affinity: float = 0.15
    price_fit: float = 0.12
    location_fit: float = 0.05
    relationship_history: float = 0.10
    reorder_timing: float = 0.10
    quantity_fit: float = 0.08
    seller_reliability: float = 0.10
    price_vs_market: float = 0.10
    supply_demand: float = 0.05
    buyer_propensity: float = 0.15

    def as_dict(self) -> dict[str, float]:
        """Return factor → weight in fixed summation order (``version`` excluded)."""
        return {k: v for k, v in self.model_dump().items() if k != "version"}

    @model_validator(mode="after")
    def validate_sum(self) -> "MatchWeights":
        weights = self.as_dict()
        negative = [k for k, v in weights.items() if v < 0]
        if negative:
            raise ValueError(f"Match weights must be non-negative: {negative}.")
        total = sum(weights.values())
        if abs(total - 1.0) > _WEIGHT_TOLERANCE:
            raise ValueError(f"Match weights must sum to 1.0, got {total:.6f}.")
        return self


class MatchingConfig(BaseModel):
    """Match scorer settings."""

    model_config = ConfigDict(frozen=True)

    weights: MatchWeights = MatchWeights()
    min_score: float = 50.0      # new matches below this are not created
    max_insights: int = 4

    @field_validator("min_score")
    @classmethod
    def validate_min_score(cls, v: float) -> float:
        if not 0.0 <= v <= 100.0:
            raise ValueError(f"min_score must be in [0, 100], got {v}.")
        return v


class ChurnConfig(BaseModel):
    """Churn detector thresholds (ratio = days since purchase / mean interval)."""

    model_config = ConfigDict(frozen=True)

    min_purchases: int = 2
    medium_ratio: float = 1.0
    high_ratio: float = 1.5
    critical_ratio: float = 2.0
    score_per_ratio: float = 50.0

    @model_validator(mode="after")
    def validate_ordering(self) -> "ChurnConfig":
        if not 0 < self.medium_ratio < self.high_ratio <= self.critical_ratio:
            raise ValueError(
                "Churn ratios must satisfy 0 < medium_ratio < high_ratio <= critical_ratio."
            )
        if self.min_purchases < 2:
            raise ValueError("churn.min_purchases must be >= 2 (an interval needs two purchases).")
        return self


class PredictionConfig(BaseModel):
    """Reorder predictor settings.

    Gaps shorter than ``min_gap_days`` are treated as split shipments of one
    order; gaps longer than ``max_gap_days`` as outliers. Both are ignored.
    """

    model_config = ConfigDict(frozen=True)

    min_purchases: int = 2
    min_gap_days: int = 3
    max_gap_days: int = 365
    baseline_decay: float = 0.5     # baseline(n) = 1 - decay ** (n - 1)
    variance_damping: float = 0.5   # damping(cv) = variance_damping * cv

    @model_validator(mode="after")
    def validate_bounds(self) -> "PredictionConfig":
        if self.min_gap_days < 0 or self.max_gap_days <= self.min_gap_days:
            raise ValueError("prediction gap bounds must satisfy 0 <= min_gap_days < max_gap_days.")
        if not 0.0 < self.baseline_decay < 1.0:
            raise ValueError(f"baseline_decay must be in (0, 1), got {self.baseline_decay}.")
        if self.variance_damping < 0:
            raise ValueError("variance_damping must be non-negative.")
        return self


class SellerScoreWeights(BaseModel):
    """Fixed weights combining the four seller scorecard components."""

    model_config = ConfigDict(frozen=True)

    fill_rate: float = 0.30
    quality: float = 0.30
    delivery: float = 0.25
    pricing: float = 0.15

    @model_validator(mode="after")
    def validate_sum(self) -> "SellerScoreWeights":
        total = self.fill_rate + self.quality + self.delivery + self.pricing
        if abs(total - 1.0) > _WEIGHT_TOLERANCE:
            raise ValueError(f"Seller score weights must sum to 1.0, got {total:.6f}.")
        return self


class SellerScoreConfig(BaseModel):
    """Seller scorecard settings."""

    model_config = ConfigDict(frozen=True)

    weights: SellerScoreWeights = SellerScoreWeights()
    above_market_penalty: float = 2.0   # pricing points lost per 1% above market


class MarketConfig(BaseModel):
    """Market context windows and supply/demand classification thresholds."""

    model_config = ConfigDict(frozen=True)

    short_window_days: int = 7
    long_window_days: int = 30
    oversupply_ratio: float = 0.5
    high_demand_ratio: float = 1.5
    trend_threshold_pct: float = 5.0

    @model_validator(mode="after")
    def validate_windows(self) -> "MarketConfig":
        if not 0 < self.short_window_days < self.long_window_days:
            raise ValueError("market windows must satisfy 0 < short_window_days < long_window_days.")
        if not 0 < self.oversupply_ratio < self.high_demand_ratio:
            raise ValueError("market ratios must satisfy 0 < oversupply_ratio < high_demand_ratio.")
        return self


class RunsConfig(BaseModel):
    """Job execution settings: fan-out width and lock staleness."""

    model_config = ConfigDict(frozen=True)

    max_workers: int = 4
    lock_stale_after_seconds: int = 3600
    stale_after_hours: float = 26.0

    @field_validator("max_workers")
    @classmethod
    def validate_workers(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"max_workers must be >= 1, got {v}.")
        return v


class SchedulerConfig(BaseModel):
    """Daily local run times (HH:MM) for each scheduled job kind."""

    model_config = ConfigDict(frozen=True)

    predictions_time: str = "00:00"
    churn_time: str = "00:05"
    seller_scores_time: str = "02:00"
    matches_time: str = "03:00"

    @field_validator("predictions_time", "churn_time", "seller_scores_time", "matches_time")
    @classmethod
    def validate_hhmm(cls, v: str) -> str:
        if not _HHMM_RE.match(v):
            raise ValueError(f"Scheduler time must be HH:MM (24h), got '{v}'.")
        return v


class ExportConfig(BaseModel):
    """Report export settings."""

    model_config = ConfigDict(frozen=True)

    output_dir: str = "data/outputs/exports"


class AppConfig(BaseModel):
    """Complete application configuration — the single source of truth.

    All jobs, the service facade and CLI commands receive an ``AppConfig``
    instance. It is constructed by ``load_config()`` which merges TOML + .env.
    """

    model_config = ConfigDict(frozen=True)

    database: DatabaseConfig = DatabaseConfig()
    logging: LoggingConfig = LoggingConfig()
    matching: MatchingConfig = MatchingConfig()
    churn: ChurnConfig = ChurnConfig()
    prediction: PredictionConfig = PredictionConfig()
    seller_scores: SellerScoreConfig = SellerScoreConfig()
    market: MarketConfig = MarketConfig()
    runs: RunsConfig = RunsConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    export: ExportConfig = ExportConfig()
    debug: bool = False


# ── Loader ────────────────────────────────────────────────────────────────────

_PROJECT_ROOT = Path(__file__).parent.parent


def _find_project_root() -> Path:
    """Walk up from this file to find the project root (contains pyproject.toml)."""
    candidate = Path(__file__).parent
    for _ in range(5):
        if (candidate / "pyproject.toml").exists():
            return candidate
        candidate = candidate.parent
    return _PROJECT_ROOT


def load_config(config_path: Optional[Path] = None) -> AppConfig:
    """Load and merge application configuration.

    Args:
        config_path: Explicit path to a TOML config file. Defaults to
            ``<project_root>/config/default.toml``.

    Returns:
        Fully validated ``AppConfig`` instance.

    Raises:
        FileNotFoundError: If the specified ``config_path`` does not exist.
        ConfigurationError: If merged config values fail validation (for
            example a weight vector that does not sum to 1.0).
    """
    root = _find_project_root()

    # 1. Load .env file (silently skip if missing)
    load_dotenv(dotenv_path=root / ".env", override=False)

    # 2. Load TOML config
    if config_path is None:
        config_path = root / "config" / "default.toml"

    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Config file not found: {config_path}\n"
            "Create config/default.toml or pass --config explicitly."
        )

    with open(config_path, "rb") as f:
        raw: dict[str, Any] = tomllib.load(f)

    local_config_path = config_path.parent / "local.toml"
    if local_config_path.exists():
        with open(local_config_path, "rb") as f:
            local_raw: dict[str, Any] = tomllib.load(f)
        raw = _deep_merge(raw, local_raw)

    # 3. Apply MARKETPLACE_INTEL_* environment variable overrides
    raw = _apply_env_overrides(raw)

    # 4. Build and validate AppConfig
    return build_app_config(raw)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge ``override`` into ``base``."""
    result = dict(base)
    for key, val in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(val, dict):
            result[key] = _deep_merge(result[key], val)
        else:
            result[key] = val
    return result


def _apply_env_overrides(raw: dict[str, Any]) -> dict[str, Any]:
    """Apply MARKETPLACE_INTEL_* env vars to the raw config dict.

    Supported overrides:
      MARKETPLACE_INTEL_DB_PATH      → raw["database"]["db_path"]
      MARKETPLACE_INTEL_LOG_LEVEL    → raw["logging"]["level"]
      MARKETPLACE_INTEL_MAX_WORKERS  → raw["runs"]["max_workers"]
      MARKETPLACE_INTEL_DEBUG        → raw["debug"]
    """
    if db_path := os.environ.get("MARKETPLACE_INTEL_DB_PATH"):
        raw.setdefault("database", {})["db_path"] = db_path

    if log_level := os.environ.get("MARKETPLACE_INTEL_LOG_LEVEL"):
        raw.setdefault("logging", {})["level"] = log_level

    if max_workers := os.environ.get("MARKETPLACE_INTEL_MAX_WORKERS"):
        raw.setdefault("runs", {})["max_workers"] = max_workers

    if debug := os.environ.get("MARKETPLACE_INTEL_DEBUG"):
        raw["debug"] = debug.lower() in ("1", "true", "yes")

    return raw


def build_app_config(raw: dict[str, Any]) -> AppConfig:
    """Map a raw TOML dict to ``AppConfig``, converting validation failures.

    Raises:
        ConfigurationError: Wrapping the underlying pydantic ``ValidationError``.
    """
    raw = dict(raw)
    project = raw.pop("project", {})
    try:
        return AppConfig(
            database=raw.get("database", {}),
            logging=raw.get("logging", {}),
            matching=raw.get("matching", {}),
            churn=raw.get("churn", {}),
            prediction=raw.get("prediction", {}),
            seller_scores=raw.get("seller_scores", {}),
            market=raw.get("market", {}),
            runs=raw.get("runs", {}),
            scheduler=raw.get("scheduler", {}),
            export=raw.get("export", {}),
            debug=raw.get("debug", project.get("debug", False)),
        )
    except ValidationError as exc:
        messages = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        ]
        raise ConfigurationError(
            "Invalid configuration: " + "; ".join(messages), errors=messages
        ) from exc
