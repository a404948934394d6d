"""
services.import_service - Operations exposed on import jobs.

Read operations leave session management to the caller, like the rest
of the services package.  Lifecycle operations commit the status change
themselves before handing a run to the worker, because the worker reads
the job through its own session.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import BinaryIO, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

import config
from db.models import ImportJob, RowError
from import_engine import error_log
from import_engine import states
from import_engine import tasks
from import_engine.capacity import CapacityChecker
from import_engine.csv_parser import CsvSource
from import_engine.errors import (
    ImportSystemError, JobNotFound, RetryLimitExceeded, StateConflict, UploadRejected,
)
from import_engine.report import UploadReport
from schema.attributes import all_attributes, catalog_attributes
from schema.templates import TemplateFile, generate_template
from services import upload_store
from services.catalog_service import CatalogService

logger = logging.getLogger(__name__)


def _new_token() -> str:
    return uuid.uuid4().hex


class ImportService:

    # ── Create / read ──────────────────────────────────────────────────

    @staticmethod
    def create_job(
        session: Session,
        name: str,
        *,
        description: Optional[str] = None,
        catalog_id: Optional[int] = None,
        user_id: Optional[int] = None,
        processing_strategy: str = "sequential",
        max_retries: Optional[int] = None,
        strict_attributes: Optional[bool] = None,
    ) -> ImportJob:
        """Create a pending job.  The caller commits."""
        name = (name or "").strip()
        if not name:
            raise UploadRejected("Job name is required")
        if processing_strategy not in states.STRATEGIES:
            raise UploadRejected(
                f"Unknown processing strategy '{processing_strategy}'; "
                f"expected one of: {', '.join(states.STRATEGIES)}")
        if max_retries is None:
            max_retries = config.MAX_RETRIES
        if max_retries < 0:
            raise UploadRejected("max_retries must not be negative")
        if catalog_id is not None and CatalogService.get_catalog(session, catalog_id) is None:
            raise UploadRejected(f"Catalog {catalog_id} not found")

        job = ImportJob(
            name=name,
            description=description,
            catalog_id=catalog_id,
            user_id=user_id,
            status=states.PENDING,
            processing_strategy=processing_strategy,
            max_retries=max_retries,
            strict_attributes=(config.STRICT_ATTRIBUTES if strict_attributes is None
                               else bool(strict_attributes)),
        )
        session.add(job)
        session.flush()
        logger.info(f"Created import job {job.id} '{name}' "
                    f"(catalog={catalog_id}, strategy={processing_strategy})")
        return job

    @staticmethod
    def get_job(session: Session, job_id: int) -> ImportJob:
        job = session.get(ImportJob, job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    @staticmethod
    def list_jobs(session: Session, user_id: Optional[int] = None,
                  status: Optional[str] = None,
                  limit: Optional[int] = None, offset: int = 0) -> list[ImportJob]:
        """Newest first, optionally only one user's jobs or one status."""
        if status is not None and status not in states.ALL_STATUSES:
            raise UploadRejected(
                f"Unknown status '{status}'; expected one of: {', '.join(states.ALL_STATUSES)}")
        stmt = select(ImportJob)
        if user_id is not None:
            stmt = stmt.where(ImportJob.user_id == user_id)
        if status is not None:
            stmt = stmt.where(ImportJob.status == status)
        stmt = stmt.order_by(ImportJob.created_at.desc(), ImportJob.id.desc()).offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(session.scalars(stmt))

    @staticmethod
    def list_errors(session: Session, job_id: int, *, severity: Optional[str] = None,
                    limit: Optional[int] = None, offset: int = 0) -> list[RowError]:
        ImportService.get_job(session, job_id)
        return error_log.list_errors(session, job_id, severity=severity,
                                     limit=limit, offset=offset)

    @staticmethod
    def count_errors(session: Session, job_id: int, *, severity: Optional[str] = None) -> int:
        return error_log.count_errors(session, job_id, severity=severity)

    # ── Submit ─────────────────────────────────────────────────────────

    @staticmethod
    def submit_file(session: Session, job_id: int, original_name: str,
                    stream: BinaryIO) -> UploadReport:
        """
        Store the CSV, check its header, count its rows and start the
        first run.  A file without a usable header is rejected and the
        job stays pending.
        """
        job = ImportService.get_job(session, job_id)
        allowed = states.ACTION_SOURCES["submit"]
        if job.status not in allowed:
            raise StateConflict(job_id, "submit", job.status, allowed)

        path = upload_store.save_upload(job_id, original_name, stream)
        report = UploadReport(job_id=job_id)
        try:
            known = [a.name for a in all_attributes(session)]
            expected = ([a.name for a in catalog_attributes(session, job.catalog_id)]
                        if job.catalog_id is not None else [])
            source = CsvSource(path, known, expected_attributes=expected,
                               value_delimiter=config.VALUE_DELIMITER)
            header = source.header_report()
            if header.empty:
                upload_store.discard(path)
                raise UploadRejected("CSV file has no header row")
            total = source.count_rows()
        except ImportSystemError as exc:
            upload_store.discard(path)
            raise UploadRejected(str(exc)) from exc

        for issue in header.issues:
            report.add_issue(issue.to_dict())

        capacity = (CapacityChecker.status(session, job.catalog_id)
                    if job.catalog_id is not None else None)
        token = _new_token()
        now = states.utcnow()
        started = states.transition(
            session, job_id, states.PROCESSING, sources=allowed,
            started_at=now, heartbeat_at=now, run_token=token,
            file_name=str(path),
            file_original_name=original_name,
            total_records=total,
            warnings_json=json.dumps([i.to_dict() for i in header.issues], ensure_ascii=False),
            catalog_capacity=capacity.capacity if capacity else None,
            catalog_current_count=capacity.current_count if capacity else None,
        )
        if not started:
            upload_store.discard(path)
            ImportService._conflict(session, job_id, "submit", allowed)
        session.commit()
        logger.info(f"Import job {job_id}: accepted '{original_name}' with {total} rows "
                    f"({len(header.issues)} header issues)")
        if header.missing_required:
            logger.warning(f"Import job {job_id}: missing required columns "
                           f"{', '.join(header.missing_required)}")

        report.accepted = True
        report.total_records = total
        tasks.enqueue(job_id, token)

        session.expire_all()
        report.job = ImportService.get_job(session, job_id).to_dict()
        return report

    # ── Lifecycle ──────────────────────────────────────────────────────

    @staticmethod
    def pause(session: Session, job_id: int) -> ImportJob:
        """The running worker stops at the next row boundary."""
        ok = states.transition(session, job_id, states.PAUSED,
                               sources=states.ACTION_SOURCES["pause"],
                               paused_at=states.utcnow())
        if not ok:
            ImportService._conflict(session, job_id, "pause", states.ACTION_SOURCES["pause"])
        session.commit()
        logger.info(f"Import job {job_id}: pause requested")
        return ImportService._reload(session, job_id)

    @staticmethod
    def resume(session: Session, job_id: int) -> ImportJob:
        """
        Continue a paused job from its checkpoint.  Rejected while the
        previous run has not yet noticed the pause.
        """
        token = _new_token()
        now = states.utcnow()
        ok = states.transition(
            session, job_id, states.PROCESSING,
            sources=states.ACTION_SOURCES["resume"],
            where=(states.lease_expired_clause(config.LEASE_SECONDS),),
            resumed_at=now, heartbeat_at=now, run_token=token,
        )
        if not ok:
            job = ImportService._reload_after_rollback(session, job_id)
            if job.status == states.PAUSED:
                raise StateConflict(
                    job_id, "resume", job.status,
                    detail=f"Import job {job_id} is still stopping; try again shortly")
            ImportService._conflict(session, job_id, "resume", states.ACTION_SOURCES["resume"])
        session.commit()
        logger.info(f"Import job {job_id}: resumed (run {token})")
        tasks.enqueue(job_id, token)
        return ImportService._reload(session, job_id)

    @staticmethod
    def cancel(session: Session, job_id: int) -> ImportJob:
        """Terminal.  Rows already committed stay committed."""
        now = states.utcnow()
        idle = states.transition(session, job_id, states.CANCELLED,
                                 sources=(states.PENDING, states.PAUSED),
                                 canceled_at=now, run_token=None)
        ok = idle or states.transition(session, job_id, states.CANCELLED,
                                            sources=(states.PROCESSING,),
                                            canceled_at=now)
        if not ok:
            ImportService._conflict(session, job_id, "cancel", states.ACTION_SOURCES["cancel"])
        session.commit()
        logger.info(f"Import job {job_id}: cancelled")
        return ImportService._reload(session, job_id)

    @staticmethod
    def retry(session: Session, job_id: int) -> ImportJob:
        """Start a new run of a failed job from its checkpoint."""
        job = ImportService.get_job(session, job_id)
        if job.status != states.FAILED:
            raise StateConflict(job_id, "retry", job.status, states.ACTION_SOURCES["retry"])
        if states.is_terminal(job):
            raise RetryLimitExceeded(job_id, job.retry_count, job.max_retries)

        token = _new_token()
        now = states.utcnow()
        ok = states.transition(
            session, job_id, states.PROCESSING,
            sources=states.ACTION_SOURCES["retry"],
            where=(ImportJob.retry_count < ImportJob.max_retries,
                   states.lease_expired_clause(config.LEASE_SECONDS)),
            retry_count=ImportJob.retry_count + 1,
            heartbeat_at=now, run_token=token,
            last_error=None, failed_at=None,
        )
        if not ok:
            job = ImportService._reload_after_rollback(session, job_id)
            if job.status == states.FAILED and states.is_terminal(job):
                raise RetryLimitExceeded(job_id, job.retry_count, job.max_retries)
            ImportService._conflict(session, job_id, "retry", states.ACTION_SOURCES["retry"])
        session.commit()
        logger.info(f"Import job {job_id}: retry {job.retry_count + 1}/{job.max_retries} "
                    f"from row {job.last_processed_row} (run {token})")
        tasks.enqueue(job_id, token)
        return ImportService._reload(session, job_id)

    @staticmethod
    def delete(session: Session, job_id: int) -> None:
        """Remove the job, its error log and its stored upload."""
        job = ImportService.get_job(session, job_id)
        if job.status == states.PROCESSING:
            raise StateConflict(job_id, "delete", job.status,
                                detail=f"Import job {job_id} is processing; "
                                       f"pause or cancel it first")
        session.delete(job)
        session.commit()
        upload_store.remove_uploads(job_id)
        logger.info(f"Import job {job_id}: deleted")

    # ── Template / recovery ────────────────────────────────────────────

    @staticmethod
    def generate_template(catalog_id: Optional[int] = None) -> TemplateFile:
        return generate_template(catalog_id)

    @staticmethod
    def recover_interrupted_jobs(session: Session) -> list[int]:
        """
        Hand every processing job whose run lease expired to a fresh
        run.  Called on startup; returns the recovered job ids.
        """
        stale = list(session.scalars(
            select(ImportJob.id).where(
                ImportJob.status == states.PROCESSING,
                states.lease_expired_clause(config.LEASE_SECONDS),
            )
        ))
        recovered = []
        for job_id in stale:
            token = _new_token()
            res = session.execute(
                update(ImportJob)
                .where(ImportJob.id == job_id,
                       ImportJob.status == states.PROCESSING,
                       states.lease_expired_clause(config.LEASE_SECONDS))
                .values(run_token=token, heartbeat_at=states.utcnow())
                .execution_options(synchronize_session=False)
            )
            session.commit()
            if res.rowcount == 1:
                recovered.append(job_id)
                logger.info(f"Import job {job_id}: recovering interrupted run (run {token})")
                tasks.enqueue(job_id, token)
        return recovered

    # ── Helpers ────────────────────────────────────────────────────────

    @staticmethod
    def _reload(session: Session, job_id: int) -> ImportJob:
        session.expire_all()
        return ImportService.get_job(session, job_id)

    @staticmethod
    def _reload_after_rollback(session: Session, job_id: int) -> ImportJob:
        # a guarded UPDATE that matched nothing still opened a write transaction
        session.rollback()
        return ImportService._reload(session, job_id)

    @staticmethod
    def _conflict(session: Session, job_id: int, action: str, allowed: tuple[str, ...]):
        """Raise the right error after a guarded transition matched nothing."""
        job = ImportService._reload_after_rollback(session, job_id)
        raise StateConflict(job_id, action, job.status, allowed)
