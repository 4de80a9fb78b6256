"""
Job run metadata — the audit trail of every engine run.

Every non-skipped job run records a ``RunMetadata`` row with a complete
``config_snapshot`` (full ``AppConfig`` as a dict) and the ``as_of``
instant it computed against, so any run can be reproduced by restoring
that config and re-running at the same ``as_of``.

``RunMetadata`` is the only model in the system that is NOT frozen: its
``status``, counts, ``error_message`` and ``finished_at`` are updated as
the job executes.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, field_validator

VALID_JOB_KINDS = frozenset({"matches", "churn", "predictions", "seller_scores"})
VALID_RUN_STATUSES = frozenset({"started", "success", "partial", "failed", "skipped"})


class RunMetadata(BaseModel):
    """Job execution audit record.

    Attributes:
        run_id: Auto-assigned DB PK; ``None`` before insertion.
        run_slug: UUID4 string uniquely identifying this run.
        job_kind: One of ``VALID_JOB_KINDS``.
        status: ``started`` → ``success`` | ``partial`` | ``failed``.
        as_of: Reference instant all time-relative facts were computed against.
        config_snapshot: Full ``AppConfig.model_dump()`` at run start time.
        processed: Entities the job computed a result for.
        errors: Entities whose fact-gathering or scoring failed.
        counts: Job-specific result counts (e.g. ``signals_created``).
        error_message: Error description if ``status == "failed"``.
        started_at: UTC datetime when the run began.
        finished_at: UTC datetime when the run completed or failed.
    """

    model_config = ConfigDict(frozen=False)

    run_id: Optional[int] = None
    run_slug: str
    job_kind: str
    status: str = "started"
    as_of: datetime
    config_snapshot: dict[str, Any]
    processed: int = 0
    errors: int = 0
    counts: dict[str, int] = {}
    error_message: Optional[str] = None
    started_at: datetime
    finished_at: Optional[datetime] = None

    @field_validator("job_kind")
    @classmethod
    def validate_job_kind(cls, v: str) -> str:
        if v not in VALID_JOB_KINDS:
            raise ValueError(
                f"Unknown job_kind '{v}'. Must be one of {sorted(VALID_JOB_KINDS)}."
            )
        return v

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        if v not in VALID_RUN_STATUSES:
            raise ValueError(
                f"Unknown status '{v}'. Must be one of {sorted(VALID_RUN_STATUSES)}."
            )
        return v
