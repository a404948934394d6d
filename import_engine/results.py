"""
import_engine.results - Outcome of processing one CSV row.

Every row resolves to exactly one RowSuccess or RowFailure.  The
controller aggregates them; nothing row-scoped is signalled by raising.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Optional, Union

# errorType values
VALIDATION  = "validation"
CAPACITY    = "capacity"
PERSISTENCE = "persistence"
SYSTEM      = "system"

# severity values
ERROR   = "error"
WARNING = "warning"


@dataclass(frozen=True)
class Issue:
    error_type: str
    message: str
    field: Optional[str] = None
    severity: str = ERROR


@dataclass
class RowSuccess:
    row_number: int
    product_id: int
    created: bool
    warnings: list[Issue] = dataclasses.field(default_factory=list)

    ok = True


@dataclass
class RowFailure:
    row_number: int
    error_type: str
    message: str
    field: Optional[str] = None
    warnings: list[Issue] = dataclasses.field(default_factory=list)

    ok = False

    @classmethod
    def from_issues(cls, row_number: int, issues: list[Issue]) -> "RowFailure":
        """Collapse a row's blocking issues into one failure (first field wins)."""
        blocking = [i for i in issues if i.severity == ERROR]
        first = blocking[0]
        return cls(
            row_number=row_number,
            error_type=first.error_type,
            message="; ".join(i.message for i in blocking),
            field=first.field,
            warnings=[i for i in issues if i.severity != ERROR],
        )


RowResult = Union[RowSuccess, RowFailure]
