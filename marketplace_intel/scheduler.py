"""Scheduler daemon for the nightly engine jobs.

No external scheduler library is required; it uses stdlib ``time``,
``signal`` and ``subprocess`` only.

Typical usage via the CLI::

    mpintel start-scheduler

Or import directly::

    from marketplace_intel.scheduler import SchedulerDaemon
    daemon = SchedulerDaemon(db_path="data/db/marketplace_intel.db", schedule=config.scheduler)
    daemon.start()  # blocks until Ctrl-C

Each job kind fires once a day at its configured local ``HH:MM``
(``[scheduler]`` in the config). The job is invoked as ``run-job <kind>``
through the installed CLI, so each run has its own process, logging and
exit code. A failed run is logged and does not stop the daemon; a run that
finds the job lock held exits 0 as a no-op.
"""

from __future__ import annotations

import logging
import platform
import signal
import subprocess
import sys
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from marketplace_intel.config import SchedulerConfig

log = logging.getLogger(__name__)

JOB_ORDER: tuple[str, ...] = ("predictions", "churn", "seller_scores", "matches")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _find_cli_exe() -> str:
    """Locate the marketplace-intel CLI executable inside the active virtual env.

    Tries ``mpintel`` (alias) before ``marketplace-intel`` and adds the
    ``.exe`` suffix on Windows. Raises ``RuntimeError`` if neither is found.
    """
    scripts_dir = Path(sys.executable).parent
    candidates = (
        ["mpintel.exe", "marketplace-intel.exe", "mpintel", "marketplace-intel"]
        if platform.system() == "Windows"
        else ["mpintel", "marketplace-intel"]
    )
    for name in candidates:
        candidate = scripts_dir / name
        if candidate.exists():
            return str(candidate)
    raise RuntimeError(
        f"Could not find marketplace-intel executable in {scripts_dir}. "
        "Run: pip install -e ."
    )


def _next_daily_run(daily_time: str, now: Optional[datetime] = None) -> datetime:
    """Return the next local datetime matching *daily_time* (``HH:MM``)."""
    hour, minute = (int(p) for p in daily_time.split(":"))
    now = now or datetime.now()
    candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


def job_times(schedule: SchedulerConfig) -> dict[str, str]:
    """Job kind → configured ``HH:MM``."""
    return {
        "predictions": schedule.predictions_time,
        "churn": schedule.churn_time,
        "seller_scores": schedule.seller_scores_time,
        "matches": schedule.matches_time,
    }


# ── Daemon ────────────────────────────────────────────────────────────────────


class SchedulerDaemon:
    """Fires each engine job once per day at its configured time.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file, forwarded to every sub-command.
    schedule:
        Daily run times per job kind.
    config_path:
        Optional config file forwarded to every sub-command.
    cli_exe:
        Full path to the CLI executable. Auto-detected from the active
        virtual environment when *None*.
    """

    def __init__(
        self,
        db_path: str,
        schedule: SchedulerConfig,
        config_path: Optional[str] = None,
        cli_exe: Optional[str] = None,
    ) -> None:
        self.db_path = db_path
        self.schedule = schedule
        self.config_path = config_path
        self.cli_exe = cli_exe or _find_cli_exe()
        self._running = False

    # ── Internal helpers ──────────────────────────────────────────────────────

    def _run_cmd(self, args: list[str], label: str) -> bool:
        """Run a CLI sub-command. Returns ``True`` on success (exit code 0).

        Output from the sub-process goes straight to stdout/stderr.
        Timeout is 3600 s per job.
        """
        cmd = [self.cli_exe] + args
        log.info("[%s] Running: %s", label, " ".join(cmd))
        try:
            result = subprocess.run(cmd, timeout=3600)
            if result.returncode == 0:
                log.info("[%s] Completed successfully (exit 0).", label)
                return True
            log.error("[%s] Exited with code %d.", label, result.returncode)
            return False
        except subprocess.TimeoutExpired:
            log.error("[%s] Timed out after 3600 s.", label)
            return False
        except Exception as exc:
            log.error("[%s] Unexpected error: %s", label, exc, exc_info=True)
            return False

    def job_args(self, job_kind: str) -> list[str]:
        args = ["run-job", job_kind, "--db-path", self.db_path]
        if self.config_path:
            args += ["--config", self.config_path]
        return args

    def run_job(self, job_kind: str) -> bool:
        log.info(
            "=== Job %s starting at %s ===",
            job_kind, datetime.now().isoformat(timespec="seconds"),
        )
        return self._run_cmd(self.job_args(job_kind), job_kind)

    def next_runs(self, now: Optional[datetime] = None) -> dict[str, datetime]:
        times = job_times(self.schedule)
        return {kind: _next_daily_run(times[kind], now) for kind in JOB_ORDER}

    def tick(self, now: datetime, next_runs: dict[str, datetime]) -> dict[str, datetime]:
        """Run every job that is due at ``now``; return the updated schedule."""
        times = job_times(self.schedule)
        updated = dict(next_runs)
        for kind in JOB_ORDER:
            if now >= next_runs[kind]:
                self.run_job(kind)
                updated[kind] = _next_daily_run(times[kind], max(now, datetime.now()))
                log.info(
                    "Next %s scheduled: %s",
                    kind, updated[kind].isoformat(timespec="seconds"),
                )
        return updated

    # ── Main loop ─────────────────────────────────────────────────────────────

    def start(self) -> None:
        """Start the daemon. Blocks until Ctrl-C (or SIGTERM on Linux/macOS)."""
        next_runs = self.next_runs()
        log.info("Scheduler started.  db=%s", self.db_path)
        for kind in JOB_ORDER:
            log.info("Next %s: %s", kind, next_runs[kind].isoformat(timespec="seconds"))

        self._running = True

        def _shutdown(signum, frame):  # noqa: ANN001
            log.info("Signal %d received; stopping scheduler.", signum)
            self._running = False

        signal.signal(signal.SIGINT, _shutdown)
        if platform.system() != "Windows":
            signal.signal(signal.SIGTERM, _shutdown)

        # Main loop, ticking every 30 s
        while self._running:
            next_runs = self.tick(datetime.now(), next_runs)
            time.sleep(30)

        log.info("Scheduler stopped.")
