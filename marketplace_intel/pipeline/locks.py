"""
Named, non-blocking job locks shared by every process using the database.

``job_lock(db_path, name)`` tries to insert a row into ``job_locks``. The
``lock_name`` primary key makes the insert succeed for exactly one caller;
everyone else sees ``acquired=False`` immediately and should skip its run.
The row is deleted in a ``finally`` block, so the lock is released on
success, on failure and on ``KeyboardInterrupt``.

While the body runs, a heartbeat thread refreshes ``heartbeat_at`` every
``stale_after_seconds / 4``. A lock counts as stale only once its heartbeat
is older than ``stale_after_seconds``, so a long job keeps its lock for as
long as its process lives, and a crashed process's lock is reclaimed by
the next caller.

Usage::

    with job_lock(db_path, "intel_churn") as acquired:
        if not acquired:
            return skipped_result()
        ...
"""

from __future__ import annotations

import logging
import os
import socket
import threading
from contextlib import contextmanager
from datetime import timedelta
from typing import Generator
from uuid import uuid4

from marketplace_intel.db.connection import get_connection
from marketplace_intel.db.repositories.base import to_db_ts
from marketplace_intel.utils.time_utils import utcnow

logger = logging.getLogger(__name__)

LOCK_NAMES: dict[str, str] = {
    "matches": "intel_matches",
    "churn": "intel_churn",
    "predictions": "intel_predictions",
    "seller_scores": "intel_seller_scores",
}

HEARTBEATS_PER_WINDOW = 4


def _holder_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


def try_acquire(db_path: str, lock_name: str, stale_after_seconds: float) -> str | None:
    """Attempt to take ``lock_name``. Returns the holder id, or ``None`` if held."""
    holder = _holder_id()
    now = utcnow()
    with get_connection(db_path) as conn:
        conn.execute(
            "DELETE FROM job_locks WHERE lock_name = ? AND heartbeat_at < ?;",
            (lock_name, to_db_ts(now - timedelta(seconds=stale_after_seconds))),
        )
        cur = conn.execute(
            """
            INSERT OR IGNORE INTO job_locks (lock_name, holder, acquired_at, heartbeat_at)
            VALUES (?, ?, ?, ?);
            """,
            (lock_name, holder, to_db_ts(now), to_db_ts(now)),
        )
        acquired = cur.rowcount == 1
    return holder if acquired else None


def heartbeat(db_path: str, lock_name: str, holder: str) -> bool:
    """Refresh ``heartbeat_at``. Returns ``False`` if ``holder`` no longer holds the lock."""
    with get_connection(db_path) as conn:
        cur = conn.execute(
            "UPDATE job_locks SET heartbeat_at = ? WHERE lock_name = ? AND holder = ?;",
            (to_db_ts(utcnow()), lock_name, holder),
        )
        return cur.rowcount == 1


def release(db_path: str, lock_name: str, holder: str) -> None:
    """Release ``lock_name`` if still held by ``holder``."""
    with get_connection(db_path) as conn:
        conn.execute(
            "DELETE FROM job_locks WHERE lock_name = ? AND holder = ?;",
            (lock_name, holder),
        )


class _Heartbeat:
    """Daemon thread that keeps one held lock fresh until stopped."""

    def __init__(self, db_path: str, lock_name: str, holder: str, interval: float) -> None:
        self.db_path = db_path
        self.lock_name = lock_name
        self.holder = holder
        self.interval = interval
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._run, name=f"heartbeat-{lock_name}", daemon=True
        )

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        self._thread.join()

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                if not heartbeat(self.db_path, self.lock_name, self.holder):
                    logger.error("Lock %s lost by %s; heartbeat stopped.", self.lock_name, self.holder)
                    return
            except Exception as exc:
                logger.warning("Heartbeat for lock %s failed: %s", self.lock_name, exc)


@contextmanager
def job_lock(
    db_path: str,
    lock_name: str,
    stale_after_seconds: float = 3600,
) -> Generator[bool, None, None]:
    """Context manager yielding ``True`` if the lock was acquired."""
    holder = try_acquire(db_path, lock_name, stale_after_seconds)
    if holder is None:
        logger.info("Lock %s is held elsewhere; skipping.", lock_name)
        yield False
        return
    logger.debug("Lock %s acquired by %s", lock_name, holder)
    beat = _Heartbeat(db_path, lock_name, holder, stale_after_seconds / HEARTBEATS_PER_WINDOW)
    beat.start()
    try:
        yield True
    finally:
        beat.stop()
        try:
            release(db_path, lock_name, holder)
        except Exception as exc:
            logger.error("Failed to release lock %s (%s): %s", lock_name, holder, exc)
