"""
Marketplace Intelligence — CLI entry point.

All commands follow this pattern:
  1. Load ``AppConfig`` via ``load_config()``.
  2. Configure logging.
  3. Validate inputs.
  4. Execute the action (DB init, record import, job run, report).
  5. Report the result to stdout.

Install and run::

    pip install -e .
    marketplace-intel --help
    marketplace-intel init-db
    marketplace-intel import-records --file config/sample/records.json
    marketplace-intel run-job churn
    marketplace-intel at-risk --min-level high
    marketplace-intel dashboard
    marketplace-intel start-scheduler
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer

app = typer.Typer(
    name="marketplace-intel",
    help="Buyer/seller intelligence engine: matches, churn, reorders and seller scores.",
    add_completion=False,
)

_RECORD_SECTIONS = ("users", "products", "transactions", "bids")


# ── Helpers ───────────────────────────────────────────────────────────────────

def _load_config_or_exit(config_path: Optional[str] = None):
    """Load AppConfig, printing a friendly error and exiting on failure."""
    from marketplace_intel.config import ConfigurationError, load_config

    try:
        cfg_path = Path(config_path) if config_path else None
        return load_config(cfg_path)
    except FileNotFoundError as exc:
        typer.echo(f"[ERROR] {exc}", err=True)
        raise typer.Exit(code=1)
    except ConfigurationError as exc:
        typer.echo(f"[ERROR] Config validation failed: {exc}", err=True)
        for err in exc.errors:
            typer.echo(f"  {err}", err=True)
        raise typer.Exit(code=1)


def _configure_logging(config):
    """Set up logging from config."""
    from marketplace_intel.utils.logging import configure_logging
    configure_logging(config.logging)


def _service(config_path: Optional[str], db_path: Optional[str]):
    from marketplace_intel.service import IntelService

    config = _load_config_or_exit(config_path)
    _configure_logging(config)
    return IntelService(config, db_path=db_path)


def _parse_as_of(as_of: Optional[str]) -> Optional[datetime]:
    if as_of is None:
        return None
    from marketplace_intel.utils.time_utils import parse_timestamp

    try:
        return parse_timestamp(as_of)
    except ValueError as exc:
        typer.echo(f"[ERROR] Invalid --as-of '{as_of}': {exc}", err=True)
        raise typer.Exit(code=1)


def _echo_job_result(label: str, result: dict) -> None:
    if result["status"] == "skipped":
        typer.echo(f"[SKIPPED] {label} is already running elsewhere; nothing done.")
        return
    typer.echo(f"{label}:")
    for key, value in result.items():
        if key != "status":
            typer.echo(f"  {key:<20} {value}")
    tag = "[OK]" if result["status"] == "success" else "[PARTIAL]"
    typer.echo(f"{tag} {label} finished with status '{result['status']}'.")


_DB_OPTION = typer.Option(None, "--db-path", help="Override DB path from config.")
_CONFIG_OPTION = typer.Option(None, "--config", help="Path to TOML config file.")
_AS_OF_OPTION = typer.Option(
    None, "--as-of", help="Reference instant (ISO 8601, UTC assumed). Defaults to now."
)


# ── Setup ─────────────────────────────────────────────────────────────────────

@app.command("init-db")
def init_db(
    db_path: Optional[str] = _DB_OPTION,
    config_path: Optional[str] = _CONFIG_OPTION,
) -> None:
    """Initialize the SQLite database and apply the full schema.

    Safe to run multiple times; all DDL uses IF NOT EXISTS.
    Also runs pending schema migrations.
    """
    from marketplace_intel.db.connection import connect_from_config
    from marketplace_intel.db.migrations import run_migrations
    from marketplace_intel.db.schema import ALL_TABLE_NAMES, apply_schema

    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    target_path = db_path or config.database.db_path
    typer.echo(f"Initializing database at: {target_path}")

    with connect_from_config(config.database, target_path) as conn:
        apply_schema(conn)
        migrations_applied = run_migrations(conn)

    typer.echo(f"  Tables: {len(ALL_TABLE_NAMES)} created/verified.")
    typer.echo(f"  Migrations applied: {migrations_applied}")
    typer.echo("[OK] Database ready.")


@app.command("validate-config")
def validate_config(
    config_path: Optional[str] = typer.Option(
        None, "--config", help="Path to TOML config file (default: config/default.toml)."
    ),
    show_full: bool = typer.Option(False, "--full", help="Print full config including all fields."),
) -> None:
    """Validate the configuration file and print parsed values.

    Exits with code 1 if the config fails validation (for example, a
    weight vector that does not sum to 1.0).
    """
    config = _load_config_or_exit(config_path)

    typer.echo("Configuration validated successfully.")
    typer.echo("")
    typer.echo(f"  Database path:     {config.database.db_path}")
    typer.echo(f"  Match weights:     {config.matching.weights.version}")
    typer.echo(f"  Match min score:   {config.matching.min_score}")
    typer.echo(
        f"  Churn tiers:       medium>={config.churn.medium_ratio} "
        f"high>={config.churn.high_ratio} critical>{config.churn.critical_ratio}"
    )
    typer.echo(f"  Max workers:       {config.runs.max_workers}")
    typer.echo(f"  Log level:         {config.logging.level}")
    typer.echo(f"  Debug mode:        {config.debug}")

    if show_full:
        typer.echo("")
        typer.echo("Full config (JSON):")
        typer.echo(json.dumps(config.model_dump(), indent=2, default=str))

    typer.echo("")
    typer.echo("[OK] Config valid.")


@app.command("import-records")
def import_records(
    records_file: str = typer.Option(..., "--file", "-f", help="JSON file with users/products/transactions/bids."),
    db_path: Optional[str] = _DB_OPTION,
    config_path: Optional[str] = _CONFIG_OPTION,
    dry_run: bool = typer.Option(False, "--dry-run", help="Validate records but do not write to the database."),
) -> None:
    """Load marketplace records into the source tables.

    \b
    The file is a JSON object with any of the keys ``users``, ``products``,
    ``transactions`` and ``bids``, each an array of records. Records are
    validated before anything is written; existing ids are updated.
    Intended for local setups and demos; in production the source tables
    are owned by the marketplace itself.
    """
    from pydantic import ValidationError

    from marketplace_intel.db.connection import connect_from_config
    from marketplace_intel.db.repositories.source_repo import SourceRepository
    from marketplace_intel.models.source import Bid, Product, Transaction, User

    config = _load_config_or_exit(config_path)
    _configure_logging(config)

    path = Path(records_file)
    if not path.exists():
        typer.echo(f"[ERROR] Records file not found: {path}", err=True)
        raise typer.Exit(code=1)

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as exc:
        typer.echo(f"[ERROR] JSON parse error: {exc}", err=True)
        raise typer.Exit(code=1)
    if not isinstance(raw, dict):
        typer.echo("[ERROR] Records file must contain a JSON object.", err=True)
        raise typer.Exit(code=1)

    models = {"users": User, "products": Product, "transactions": Transaction, "bids": Bid}
    validated: dict[str, list] = {name: [] for name in _RECORD_SECTIONS}
    errors: list[tuple[str, int, str]] = []
    for name in _RECORD_SECTIONS:
        for i, item in enumerate(raw.get(name, [])):
            try:
                validated[name].append(models[name](**item))
            except (ValidationError, TypeError) as exc:
                errors.append((name, i, str(exc)))

    if errors:
        typer.echo(f"[ERROR] {len(errors)} record(s) failed validation:", err=True)
        for name, idx, msg in errors[:5]:
            typer.echo(f"  {name}[{idx}]: {msg}", err=True)
        if len(errors) > 5:
            typer.echo(f"  ... and {len(errors) - 5} more.", err=True)
        raise typer.Exit(code=1)

    for name in _RECORD_SECTIONS:
        typer.echo(f"  Validated {len(validated[name])} {name}.")
    if dry_run:
        typer.echo("[DRY RUN] No records written to database.")
        return

    with connect_from_config(config.database, db_path) as conn:
        repo = SourceRepository(conn)
        repo.upsert_users(validated["users"])
        repo.upsert_products(validated["products"])
        repo.upsert_transactions(validated["transactions"])
        repo.upsert_bids(validated["bids"])

    typer.echo("[OK] Records imported.")


# ── Jobs ──────────────────────────────────────────────────────────────────────

@app.command("run-job")
def run_job(
    job_kind: str = typer.Argument(..., help="matches | churn | predictions | seller_scores"),
    as_of: Optional[str] = _AS_OF_OPTION,
    db_path: Optional[str] = _DB_OPTION,
    config_path: Optional[str] = _CONFIG_OPTION,
) -> None:
    """Run one engine job synchronously (used by the scheduler)."""
    from marketplace_intel.service import JOB_CLASSES

    if job_kind not in JOB_CLASSES:
        typer.echo(
            f"[ERROR] Unknown job kind '{job_kind}'. Must be one of {sorted(JOB_CLASSES)}.",
            err=True,
        )
        raise typer.Exit(code=1)
    service = _service(config_path, db_path)
    try:
        result = service.run_job(job_kind, as_of=_parse_as_of(as_of))
    except Exception as exc:
        typer.echo(f"[ERROR] Job {job_kind} failed: {exc}", err=True)
        raise typer.Exit(code=1)
    _echo_job_result(f"Job {job_kind}", result.as_dict())


@app.command("generate-matches")
def generate_matches(
    product_id: Optional[str] = typer.Option(None, "--product", help="Score only this product."),
    as_of: Optional[str] = _AS_OF_OPTION,
    db_path: Optional[str] = _DB_OPTION,
    config_path: Optional[str] = _CONFIG_OPTION,
) -> None:
    """Score buyers against active products and store qualifying matches."""
    service = _service(config_path, db_path)
    _echo_job_result("Match generation", service.generate_matches(product_id, _parse_as_of(as_of)))


@app.command("detect-churn")
def detect_churn(
    as_of: Optional[str] = _AS_OF_OPTION,
    db_path: Optional[str] = _DB_OPTION,
    config_path: Optional[str] = _CONFIG_OPTION,
) -> None:
    """Create, refresh and resolve churn signals."""
    service = _service(config_path, db_path)
    _echo_job_result("Churn detection", service.run_churn_detection(_parse_as_of(as_of)))


@app.command("predict-reorders")
def predict_reorders(
    as_of: Optional[str] = _AS_OF_OPTION,
    db_path: Optional[str] = _DB_OPTION,
    config_path: Optional[str] = _CONFIG_OPTION,
) -> None:
    """Predict next purchase dates per buyer and category."""
    service = _service(config_path, db_path)
    _echo_job_result("Reorder prediction", service.run_reorder_predictions(_parse_as_of(as_of)))


@app.command("recalculate-seller-scores")
def recalculate_seller_scores(
    as_of: Optional[str] = _AS_OF_OPTION,
    db_path: Optional[str] = _DB_OPTION,
    config_path: Optional[str] = _CONFIG_OPTION,
) -> None:
    """Recompute seller scorecards from recorded delivery outcomes."""
    service = _service(config_path, db_path)
    _echo_job_result("Seller scores", service.recalculate_seller_scores(_parse_as_of(as_of)))


# ── Reports ───────────────────────────────────────────────────────────────────

@app.command("market-context")
def market_context(
    category: Optional[str] = typer.Option(None, "--category", "-c", help="Category; omit for marketplace insights."),
    as_of: Optional[str] = _AS_OF_OPTION,
    db_path: Optional[str] = _DB_OPTION,
    config_path: Optional[str] = _CONFIG_OPTION,
) -> None:
    """Show rolling price windows and supply/demand for a category (or marketplace insights)."""
    from marketplace_intel.reporting.formatters import (
        format_market_context,
        format_market_insights,
        format_market_trends,
    )

    service = _service(config_path, db_path)
    when = _parse_as_of(as_of)
    if category is None:
        insights = service.fetch_market_insights(when)
        typer.echo(format_market_trends(insights.trends))
        typer.echo(format_market_insights(insights))
    else:
        typer.echo(format_market_context(service.fetch_market_context(category, when)))


@app.command("at-risk")
def at_risk(
    min_level: str = typer.Option("medium", "--min-level", help="low | medium | high | critical"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum buyers to show."),
    resolve: Optional[int] = typer.Option(None, "--resolve", help="Resolve this signal id manually."),
    db_path: Optional[str] = _DB_OPTION,
    config_path: Optional[str] = _CONFIG_OPTION,
) -> None:
    """List buyers with active churn signals."""
    from marketplace_intel.reporting.formatters import format_at_risk_table

    service = _service(config_path, db_path)
    if resolve is not None:
        if not service.resolve_churn_signal(resolve):
            typer.echo(f"[ERROR] No churn signal with id {resolve}.", err=True)
            raise typer.Exit(code=1)
        typer.echo(f"[OK] Signal {resolve} resolved.")
    try:
        buyers = service.fetch_at_risk_buyers(min_level, limit)
    except ValueError as exc:
        typer.echo(f"[ERROR] {exc}", err=True)
        raise typer.Exit(code=1)
    typer.echo(
        format_at_risk_table(buyers, service.fetch_churn_stats(), service.fetch_job_status().get("churn"))
    )


@app.command("predictions")
def predictions(
    days: int = typer.Option(30, "--days", help="Look-ahead window for upcoming reorders."),
    overdue: bool = typer.Option(False, "--overdue", help="Show overdue predictions instead."),
    calendar: bool = typer.Option(False, "--calendar", help="Group overdue and upcoming by week."),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum rows (capped at 50)."),
    db_path: Optional[str] = _DB_OPTION,
    config_path: Optional[str] = _CONFIG_OPTION,
) -> None:
    """Show upcoming or overdue reorder predictions."""
    from marketplace_intel.reporting.formatters import format_predictions_table
    from marketplace_intel.utils.time_utils import utcnow

    service = _service(config_path, db_path)
    today = utcnow().date()
    status = service.fetch_job_status().get("predictions")
    if calendar:
        for week_start, records in service.fetch_predictions_calendar(today).items():
            typer.echo(format_predictions_table(records, today, f"Week of {week_start.isoformat()}"))
        return
    if overdue:
        records = service.fetch_predictions(prediction_type="overdue", limit=limit, today=today)
        typer.echo(format_predictions_table(records, today, "Overdue Reorders", status))
    else:
        records = service.fetch_predictions(days=days, limit=limit, today=today)
        typer.echo(format_predictions_table(records, today, f"Reorders Due in {days} Days", status))


@app.command("seller-scores")
def seller_scores(
    seller_id: Optional[str] = typer.Option(None, "--seller", help="Show one seller (computed if not stored)."),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum sellers to show."),
    db_path: Optional[str] = _DB_OPTION,
    config_path: Optional[str] = _CONFIG_OPTION,
) -> None:
    """Show seller scorecards."""
    from marketplace_intel.reporting.formatters import format_seller_scores_table

    service = _service(config_path, db_path)
    status = service.fetch_job_status().get("seller_scores")
    if seller_id is not None:
        score = service.fetch_seller_score(seller_id)
        if score is None:
            typer.echo(f"  Seller {seller_id} has no recorded delivery outcomes yet.")
            return
        typer.echo(format_seller_scores_table([score], status))
        return
    typer.echo(format_seller_scores_table(service.fetch_seller_scores(limit), status))


@app.command("matches")
def matches(
    buyer_id: Optional[str] = typer.Option(None, "--buyer"),
    product_id: Optional[str] = typer.Option(None, "--product"),
    status_filter: Optional[str] = typer.Option(None, "--status", help="pending | viewed | converted | rejected"),
    min_score: Optional[float] = typer.Option(None, "--min-score"),
    category: Optional[str] = typer.Option(None, "--category"),
    page: int = typer.Option(1, "--page"),
    limit: int = typer.Option(20, "--limit", "-n", help="Page size (capped at 50)."),
    breakdown: bool = typer.Option(False, "--breakdown", help="Show every factor per match."),
    db_path: Optional[str] = _DB_OPTION,
    config_path: Optional[str] = _CONFIG_OPTION,
) -> None:
    """Browse stored matches, best score first."""
    from marketplace_intel.reporting.formatters import format_matches_table

    service = _service(config_path, db_path)
    result = service.fetch_matches(
        buyer_id=buyer_id,
        product_id=product_id,
        status=status_filter,
        min_score=min_score,
        category_name=category,
        page=page,
        limit=limit,
    )
    typer.echo(
        format_matches_table(
            result.matches,
            result.total,
            result.page,
            result.total_pages,
            service.fetch_job_status().get("matches"),
            show_breakdown=breakdown,
        )
    )


@app.command("dashboard")
def dashboard(
    db_path: Optional[str] = _DB_OPTION,
    config_path: Optional[str] = _CONFIG_OPTION,
) -> None:
    """Print the consolidated intelligence dashboard."""
    from marketplace_intel.reporting.formatters import format_dashboard

    service = _service(config_path, db_path)
    typer.echo(format_dashboard(service.fetch_intel_dashboard()))


@app.command("export-matches")
def export_matches(
    fmt: str = typer.Option("csv", "--format", help="csv | json | parquet"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Destination file path."),
    status_filter: Optional[str] = typer.Option(None, "--status"),
    min_score: Optional[float] = typer.Option(None, "--min-score"),
    db_path: Optional[str] = _DB_OPTION,
    config_path: Optional[str] = _CONFIG_OPTION,
) -> None:
    """Export matches as one flat row each (factor columns prefixed ``f_``)."""
    from marketplace_intel.db.connection import connect_from_config
    from marketplace_intel.db.repositories.match_repo import MatchRepository
    from marketplace_intel.db.repositories.source_repo import SourceRepository
    from marketplace_intel.reporting.export import EXPORT_FORMATS, export_matches as write_export
    from marketplace_intel.reporting.export import flatten_matches_for_export
    from marketplace_intel.utils.time_utils import utcnow

    if fmt not in EXPORT_FORMATS:
        typer.echo(f"[ERROR] Unknown format '{fmt}'. Use one of {list(EXPORT_FORMATS)}.", err=True)
        raise typer.Exit(code=1)

    config = _load_config_or_exit(config_path)
    _configure_logging(config)
    with connect_from_config(config.database, db_path) as conn:
        all_matches = [
            m for m in MatchRepository(conn).list_all()
            if (status_filter is None or m.status == status_filter)
            and (min_score is None or m.score >= min_score)
        ]
        source = SourceRepository(conn)
        products = {p.product_id: p for p in source.list_products()}
        users = {u.user_id: u for u in source.list_users()}

    rows = flatten_matches_for_export(all_matches, products, users)
    path = Path(output) if output else (
        Path(config.export.output_dir) / f"matches_{utcnow().strftime('%Y%m%dT%H%M%S')}.{fmt}"
    )
    write_export(rows, path, fmt)
    typer.echo(f"[OK] Exported {len(rows)} match(es) to {path}")


# ── Scheduler ─────────────────────────────────────────────────────────────────

@app.command("start-scheduler")
def start_scheduler(
    db_path: Optional[str] = _DB_OPTION,
    config_path: Optional[str] = _CONFIG_OPTION,
) -> None:
    """Run every job daily at its configured time. Blocks until Ctrl-C."""
    from marketplace_intel.scheduler import SchedulerDaemon

    config = _load_config_or_exit(config_path)
    _configure_logging(config)
    try:
        daemon = SchedulerDaemon(
            db_path=db_path or config.database.db_path,
            schedule=config.scheduler,
            config_path=config_path,
        )
    except RuntimeError as exc:
        typer.echo(f"[ERROR] {exc}", err=True)
        raise typer.Exit(code=1)
    daemon.start()


if __name__ == "__main__":
    app()
