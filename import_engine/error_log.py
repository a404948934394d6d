"""
import_engine.error_log - Append-only record of row-scoped problems.

Entries are written in the same transaction that advances the job's
counters and checkpoint, and are never updated afterwards.  They go
away only with their job (FK cascade).
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from db.models import RowError
from import_engine.results import ERROR, Issue, RowResult


def entries_for(job_id: int, result: RowResult) -> list[RowError]:
    """RowError rows describing one result: the failure (if any) plus warnings."""
    out: list[RowError] = []
    if not result.ok:
        out.append(RowError(
            job_id=job_id,
            row_number=result.row_number,
            error_type=result.error_type,
            message=result.message,
            severity=ERROR,
            field=result.field,
        ))
    for w in result.warnings:
        out.append(_from_issue(job_id, result.row_number, w))
    return out


def record(session: Session, job_id: int, result: RowResult) -> int:
    """Stage the entries for a result on the session; returns how many."""
    rows = entries_for(job_id, result)
    session.add_all(rows)
    return len(rows)


def list_errors(
    session: Session,
    job_id: int,
    *,
    severity: Optional[str] = None,
    limit: Optional[int] = None,
    offset: int = 0,
) -> list[RowError]:
    q = select(RowError).where(RowError.job_id == job_id)
    if severity:
        q = q.where(RowError.severity == severity)
    q = q.order_by(RowError.row_number, RowError.id).offset(offset)
    if limit is not None:
        q = q.limit(limit)
    return list(session.scalars(q).all())


def count_errors(session: Session, job_id: int, *, severity: Optional[str] = None) -> int:
    q = select(func.count(RowError.id)).where(RowError.job_id == job_id)
    if severity:
        q = q.where(RowError.severity == severity)
    return session.scalar(q) or 0


def _from_issue(job_id: int, row_number: int, issue: Issue) -> RowError:
    return RowError(
        job_id=job_id,
        row_number=row_number,
        error_type=issue.error_type,
        message=issue.message,
        severity=issue.severity,
        field=issue.field,
    )
