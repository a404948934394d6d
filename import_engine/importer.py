"""
import_engine.importer - Job controller: drives one run of an import job.

Coordinates csv_parser → row_processor → error_log and owns the job's
progress counters and resume checkpoint.

A run is identified by the job's run_token.  It keeps going only while
the job is `processing` and still carries that token; pause, cancel and
takeover by another run are all observed at row (or micro-batch)
boundaries, never in the middle of a row.

Each batch of resolved rows is committed in a single transaction:
RowError entries, counter increments, checkpoint and heartbeat.  So
`processed_records == success_count + error_count` holds in every
committed state, and `last_processed_row` never passes a row whose
outcome is not stored.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import closing
from itertools import islice
from typing import Callable, Iterable, Iterator

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import config
from db.engine import get_session
from db.models import ImportJob
from import_engine import error_log
from import_engine import states
from import_engine.csv_parser import CsvSource, ParsedRow
from import_engine.errors import ImportSystemError, StorageUnavailable
from import_engine.results import RowResult
from import_engine.row_processor import RowProcessor
from schema.attributes import all_attributes, catalog_attributes

logger = logging.getLogger(__name__)


class JobController:
    """
    One run of one job.  Construct with the token handed out when the
    run was started (submit / resume / retry / recovery).
    """

    def __init__(
        self,
        job_id: int,
        run_token: str,
        *,
        session_factory: Callable[[], Session] = get_session,
    ):
        self.job_id = job_id
        self.run_token = run_token
        self._session_factory = session_factory

    # ── Entry point ────────────────────────────────────────────────────

    def run(self) -> str:
        """Process rows until done or stopped; returns the job's status afterwards."""
        job = self._load()
        if job is None:
            logger.warning(f"Import job {self.job_id} vanished before run {self.run_token}")
            return "missing"
        if job.status != states.PROCESSING or job.run_token != self.run_token:
            logger.info(f"Import job {self.job_id}: run {self.run_token} is stale "
                        f"(status={job.status}); nothing to do")
            return job.status

        logger.info(f"Import job {self.job_id}: run {self.run_token} starting after "
                    f"row {job.last_processed_row} ({job.processing_strategy})")
        try:
            source, processor = self._prepare(job)
            with closing(source.rows(start_after=job.last_processed_row or 0)) as rows:
                if job.processing_strategy == "parallel":
                    finished = self._run_parallel(rows, processor)
                else:
                    finished = self._run_sequential(rows, processor)
        except ImportSystemError as exc:
            logger.error(f"Import job {self.job_id} failed: {exc}")
            self._fail(str(exc))
            return self._status()
        except SQLAlchemyError as exc:
            logger.error(f"Import job {self.job_id} failed: database error: {exc}")
            self._fail(f"Database error: {exc}")
            return self._status()
        except Exception as exc:
            logger.exception(f"Import job {self.job_id}: unexpected error")
            self._fail(f"Unexpected error: {exc}")
            return self._status()

        if finished:
            self._complete()
        else:
            self._release()
        status = self._status()
        logger.info(f"Import job {self.job_id}: run {self.run_token} ended with status {status}")
        return status

    # ── Strategies ─────────────────────────────────────────────────────

    def _run_sequential(self, rows: Iterable[ParsedRow], processor: RowProcessor) -> bool:
        """True when every row was consumed, False when the run was stopped."""
        for row in rows:
            if not self._should_continue():
                return False
            result = processor.process(row)
            logger.debug(f"Import job {self.job_id}: row {row.row_number} → "
                         f"{'ok' if result.ok else result.error_type}")
            if not self._commit([result]):
                return False
        return True

    def _run_parallel(self, rows: Iterator[ParsedRow], processor: RowProcessor) -> bool:
        """
        Bounded window of rows in flight.  Results are committed in row
        order; if a row ends the run, only the rows before it are kept.
        """
        window = max(1, config.PARALLEL_WINDOW)
        with ThreadPoolExecutor(max_workers=max(1, config.PARALLEL_WORKERS),
                                thread_name_prefix=f"import-{self.job_id}") as pool:
            while True:
                batch = list(islice(rows, window))
                if not batch:
                    return True
                if not self._should_continue():
                    return False

                futures = [pool.submit(processor.process, row) for row in batch]
                resolved: list[RowResult] = []
                fatal: BaseException | None = None
                for fut in futures:
                    try:
                        resolved.append(fut.result())
                    except Exception as exc:
                        fatal = exc
                        break
                if fatal is not None:
                    for fut in futures:
                        fut.cancel()
                if resolved and not self._commit(resolved):
                    return False
                if fatal is not None:
                    raise fatal

    # ── Setup ──────────────────────────────────────────────────────────

    def _prepare(self, job: ImportJob) -> tuple[CsvSource, RowProcessor]:
        session = self._session_factory()
        try:
            known = [a.name for a in all_attributes(session)]
            expected = ([a.name for a in catalog_attributes(session, job.catalog_id)]
                        if job.catalog_id is not None else [])
        finally:
            session.close()

        if not job.file_name:
            raise ImportSystemError("No source file stored for this job")

        source = CsvSource(
            job.file_name, known,
            expected_attributes=expected,
            value_delimiter=config.VALUE_DELIMITER,
        )
        processor = RowProcessor(
            job.catalog_id,
            strict_attributes=bool(job.strict_attributes),
            value_delimiter=config.VALUE_DELIMITER,
            persist_attempts=config.PERSIST_ATTEMPTS,
            session_factory=self._session_factory,
        )
        return source, processor

    # ── Durable state ──────────────────────────────────────────────────

    def _mine(self):
        return ImportJob.run_token == self.run_token

    def _commit(self, results: list[RowResult]) -> bool:
        """
        Record outcomes and advance the checkpoint.  False when this run
        no longer owns the job (nothing is written then).
        """
        success = sum(1 for r in results if r.ok)
        errors = len(results) - success
        last_row = max(r.row_number for r in results)

        session = self._session_factory()
        try:
            for result in results:
                error_log.record(session, self.job_id, result)
            res = session.execute(
                update(ImportJob)
                .where(ImportJob.id == self.job_id, self._mine(),
                       ImportJob.last_processed_row < last_row)
                .values(
                    processed_records=ImportJob.processed_records + len(results),
                    success_count=ImportJob.success_count + success,
                    error_count=ImportJob.error_count + errors,
                    last_processed_row=last_row,
                    heartbeat_at=states.utcnow(),
                    updated_at=states.utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                session.rollback()
                logger.info(f"Import job {self.job_id}: run {self.run_token} lost "
                            f"ownership before row {last_row}; stopping")
                return False
            session.commit()
            return True
        except SQLAlchemyError as exc:
            session.rollback()
            raise StorageUnavailable(f"Could not record progress: {exc}") from exc
        finally:
            session.close()

    def _should_continue(self) -> bool:
        session = self._session_factory()
        try:
            job = session.get(ImportJob, self.job_id)
            if job is None:
                return False
            if job.status == states.PROCESSING and job.run_token == self.run_token:
                return True
            logger.info(f"Import job {self.job_id}: observed status {job.status} "
                        f"after row {job.last_processed_row}; stopping run")
            return False
        finally:
            session.close()

    def _complete(self) -> None:
        session = self._session_factory()
        try:
            done = states.transition(
                session, self.job_id, states.COMPLETED,
                sources=(states.PROCESSING,), where=(self._mine(),),
                completed_at=states.utcnow(), run_token=None,
            )
            session.commit()
        finally:
            session.close()
        if not done:
            self._release()

    def _fail(self, message: str) -> None:
        session = self._session_factory()
        try:
            failed = states.transition(
                session, self.job_id, states.FAILED,
                sources=(states.PROCESSING,), where=(self._mine(),),
                failed_at=states.utcnow(), last_error=message[:2000], run_token=None,
            )
            if not failed:
                session.execute(
                    update(ImportJob)
                    .where(ImportJob.id == self.job_id, self._mine())
                    .values(last_error=message[:2000], run_token=None)
                    .execution_options(synchronize_session=False)
                )
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            logger.exception(f"Import job {self.job_id}: could not record failure; "
                             f"lease will expire for recovery")
        finally:
            session.close()

    def _release(self) -> None:
        """Give up the run lease so the job can be resumed or retried."""
        session = self._session_factory()
        try:
            session.execute(
                update(ImportJob)
                .where(ImportJob.id == self.job_id, self._mine())
                .values(run_token=None)
                .execution_options(synchronize_session=False)
            )
            session.commit()
        finally:
            session.close()

    def _load(self) -> ImportJob | None:
        session = self._session_factory()
        try:
            return session.get(ImportJob, self.job_id)
        finally:
            session.close()

    def _status(self) -> str:
        job = self._load()
        return job.status if job else "missing"


def run_job(job_id: int, run_token: str) -> str:
    """Run one job to completion or until it is paused/cancelled."""
    return JobController(job_id, run_token).run()
