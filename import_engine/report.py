"""
import_engine.report - Summary returned when a file is submitted to a job.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class UploadReport:
    job_id: int
    accepted: bool = False
    total_records: int = 0
    header_errors: list[dict] = field(default_factory=list)     # [{column, message, severity}]
    header_warnings: list[dict] = field(default_factory=list)
    job: dict | None = None

    def add_issue(self, issue: dict):
        if issue.get("severity") == "error":
            self.header_errors.append(issue)
        else:
            self.header_warnings.append(issue)

    def to_dict(self) -> dict:
        return {
            "jobId": self.job_id,
            "accepted": self.accepted,
            "totalRecords": self.total_records,
            "headerErrors": self.header_errors,
            "headerWarnings": self.header_warnings,
            "job": self.job,
        }
