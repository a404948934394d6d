"""
import_engine.states - Import-job status machine.

    pending ──► processing ──► completed
       │          │  ▲  │
       │          ▼  │  ├────► failed ──(retry while retries remain)──► processing
       │        paused  │
       │          │     ▼
       └──────────┴──► cancelled

Every status change is one guarded UPDATE (compare-and-set on the
current status), so concurrent requests against the same job are
serialised by the database and a request from the wrong state is
rejected instead of silently applied.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from db.models import ImportJob

PENDING    = "pending"
PROCESSING = "processing"
PAUSED     = "paused"
COMPLETED  = "completed"
FAILED     = "failed"
CANCELLED  = "cancelled"

ALL_STATUSES = (PENDING, PROCESSING, PAUSED, COMPLETED, FAILED, CANCELLED)

TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING:    frozenset({PROCESSING, CANCELLED}),
    PROCESSING: frozenset({PAUSED, COMPLETED, FAILED, CANCELLED}),
    PAUSED:     frozenset({PROCESSING, CANCELLED}),
    FAILED:     frozenset({PROCESSING}),
    COMPLETED:  frozenset(),
    CANCELLED:  frozenset(),
}

# Requested action → statuses it is accepted from
ACTION_SOURCES: dict[str, tuple[str, ...]] = {
    "submit": (PENDING,),
    "pause":  (PROCESSING,),
    "resume": (PAUSED,),
    "cancel": (PENDING, PROCESSING, PAUSED),
    "retry":  (FAILED,),
}

STRATEGIES = ("sequential", "parallel")


def can_transition(src: str, dst: str) -> bool:
    return dst in TRANSITIONS.get(src, frozenset())


def is_terminal(job: ImportJob) -> bool:
    if job.status in (COMPLETED, CANCELLED):
        return True
    return job.status == FAILED and (job.retry_count or 0) >= (job.max_retries or 0)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def lease_expired_clause(lease_seconds: int):
    """SQL condition: no run holds the job, or its heartbeat went stale."""
    cutoff = utcnow() - timedelta(seconds=lease_seconds)
    return or_(ImportJob.run_token.is_(None), ImportJob.heartbeat_at < cutoff)


def transition(
    session: Session,
    job_id: int,
    dst: str,
    *,
    sources: tuple[str, ...],
    where: tuple = (),
    **values,
) -> bool:
    """
    Move job_id to dst if its status is one of sources (and every extra
    where-clause holds).  Returns False when nothing matched.  The
    caller commits.
    """
    for src in sources:
        if not can_transition(src, dst):
            raise ValueError(f"Illegal transition {src} → {dst}")
    stmt = (
        update(ImportJob)
        .where(ImportJob.id == job_id, ImportJob.status.in_(sources), *where)
        .values(status=dst, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    return session.execute(stmt).rowcount == 1
