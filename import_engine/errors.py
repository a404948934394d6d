"""
import_engine.errors - Exceptions raised by the import engine and its service.

Row-scoped problems are never raised; they travel as RowFailure results
(see import_engine.results).  What lives here either rejects a request
or ends a whole run.
"""

from __future__ import annotations


class ImportJobError(Exception):
    """Base class for import-job request errors."""


class JobNotFound(ImportJobError):
    def __init__(self, job_id: int):
        super().__init__(f"Import job {job_id} not found")
        self.job_id = job_id


class StateConflict(ImportJobError):
    """The job is not in a state that accepts the requested action."""

    def __init__(self, job_id: int, action: str, status: str | None,
                 allowed: tuple[str, ...] = (), detail: str | None = None):
        msg = detail or (
            f"Cannot {action} import job {job_id} in '{status}' status"
            + (f"; must be one of: {', '.join(allowed)}" if allowed else "")
        )
        super().__init__(msg)
        self.job_id = job_id
        self.action = action
        self.status = status


class RetryLimitExceeded(StateConflict):
    def __init__(self, job_id: int, retry_count: int, max_retries: int):
        super().__init__(
            job_id, "retry", "failed",
            detail=(f"Import job {job_id} has used {retry_count} of "
                    f"{max_retries} retries; it stays failed"),
        )
        self.retry_count = retry_count
        self.max_retries = max_retries


class UploadRejected(ImportJobError):
    """The submitted file or request payload cannot be accepted."""


class ImportSystemError(Exception):
    """A condition that makes the rest of the file unprocessable."""


class SourceUnreadable(ImportSystemError):
    """The stored CSV can no longer be opened or parsed at all."""


class CatalogMissing(ImportSystemError):
    """The job's target catalog was removed."""


class StorageUnavailable(ImportSystemError):
    """The database stopped answering."""
