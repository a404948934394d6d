"""
import_engine.csv_parser - Low-level CSV reading and normalisation.

Responsibilities:
  • BOM removal and header whitespace stripping
  • Header check against the expected columns (degraded-but-usable read)
  • Splitting multi-value attribute cells
  • Turning malformed records into row-level parse errors

Rows are numbered 1..N (header excluded, blank records skipped).  The
numbering only depends on the file contents, so re-opening the same
file and skipping to a checkpoint always lands on the same row.
"""

from __future__ import annotations

import csv
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Optional

from import_engine.errors import SourceUnreadable
from import_engine.field_map import (
    ATTRIBUTE_PREFIX, REQUIRED_FIELDS, attribute_column, normalize_header,
    scalar_field, split_values,
)


@dataclass
class HeaderIssue:
    column: str
    message: str
    severity: str = "warning"        # error | warning

    def to_dict(self) -> dict:
        return {"column": self.column, "message": self.message,
                "severity": self.severity}


@dataclass
class HeaderReport:
    columns: list[str] = field(default_factory=list)
    issues: list[HeaderIssue] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.columns

    @property
    def missing_required(self) -> list[str]:
        return [i.column for i in self.issues if i.severity == "error"]


@dataclass
class ParsedRow:
    row_number: int
    fields: dict[str, str] = field(default_factory=dict)
    attributes: dict[str, list[str]] = field(default_factory=dict)
    parse_error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.parse_error is None


class CsvSource:
    """
    A re-openable CSV file plus the columns a product import expects.

    Every iteration opens the file afresh; no iterator state is kept
    between calls.
    """

    def __init__(
        self,
        path: str | Path,
        attribute_names: list[str] | None = None,
        *,
        expected_attributes: list[str] | None = None,
        value_delimiter: str = ",",
        delimiter: str = ",",
    ):
        """
        attribute_names     : attribute columns recognised in the file
        expected_attributes : subset whose absence is reported on the
                              header (defaults to all of attribute_names)
        """
        self.path = Path(path)
        self.value_delimiter = value_delimiter
        self.delimiter = delimiter
        # casefolded header → canonical attribute name
        self._attributes: dict[str, str] = {}
        for a in attribute_names or []:
            self._add_attribute(a)
        # casefolded header → column name reported when missing
        if expected_attributes is None:
            expected_attributes = attribute_names or []
        self._expected: dict[str, str] = {}
        for a in expected_attributes:
            col = self._add_attribute(a)
            if col:
                self._expected[col.casefold()] = col

    def _add_attribute(self, attribute_name: str) -> str:
        name = normalize_header(attribute_name)
        if not name:
            return ""
        col = attribute_column(name)
        self._attributes[col.casefold()] = name
        self._attributes.setdefault((ATTRIBUTE_PREFIX + name).casefold(), name)
        return col

    # ── Public API ─────────────────────────────────────────────────────

    def header_report(self) -> HeaderReport:
        """Read only the header and compare it with the expected columns."""
        with self._open() as fh:
            reader = self._reader(fh)
            header = self._read_header(reader)
        return self._check_header(header)

    def rows(self, start_after: int = 0) -> Iterator[ParsedRow]:
        """
        Yield rows with row_number > start_after.

        Earlier rows are read (to keep numbering stable) but not
        normalised.
        """
        with self._open() as fh:
            reader = self._reader(fh)
            header = self._read_header(reader)
            if not header:
                return
            layout = self._layout(header)
            for row_number, cells, error in self._records(reader):
                if row_number <= start_after:
                    continue
                if error is None and len(cells) != len(header):
                    error = (f"Expected {len(header)} columns, "
                             f"found {len(cells)}")
                if error is not None:
                    yield ParsedRow(row_number=row_number,
                                    parse_error=f"Malformed row: {error}")
                    continue
                yield self._normalise(row_number, cells, layout)

    def count_rows(self) -> int:
        """Number of data rows (malformed ones included)."""
        with self._open() as fh:
            reader = self._reader(fh)
            if not self._read_header(reader):
                return 0
            return sum(1 for _ in self._records(reader))

    # ── Private helpers ────────────────────────────────────────────────

    def _open(self):
        try:
            return open(self.path, "r", encoding="utf-8-sig",
                        errors="replace", newline="")
        except OSError as exc:
            raise SourceUnreadable(f"Cannot open source file {self.path.name}: {exc}") from exc

    def _reader(self, fh):
        return csv.reader(fh, delimiter=self.delimiter, strict=True)

    @staticmethod
    def _read_header(reader) -> list[str]:
        try:
            for cells in reader:
                header = [normalize_header(c) for c in cells]
                if any(header):
                    return header
        except csv.Error as exc:
            raise SourceUnreadable(f"Malformed header row: {exc}") from exc
        return []

    @staticmethod
    def _records(reader) -> Iterator[tuple[int, list[str], Optional[str]]]:
        """Yield (row_number, cells, error) for every non-blank record."""
        row_number = 0
        while True:
            try:
                cells = next(reader)
            except StopIteration:
                return
            except csv.Error as exc:
                row_number += 1
                yield row_number, [], f"{exc} (line {reader.line_num})"
                continue
            if not any(c.strip() for c in cells):
                continue
            row_number += 1
            yield row_number, cells, None

    def _classify(self, col: str) -> tuple[str, str] | None:
        """("field", name), ("attr", name) or None for one header cell."""
        scalar = scalar_field(col)
        if scalar is not None:
            return ("field", scalar)
        attr = self._attributes.get(col.casefold())
        if attr is not None:
            return ("attr", attr)
        return None

    def _layout(self, header: list[str]) -> list[tuple[str, str] | None]:
        """Per header position: ("field", name), ("attr", name) or None."""
        seen: set[tuple[str, str]] = set()
        layout: list[tuple[str, str] | None] = []
        for col in header:
            slot = self._classify(col) if col else None
            if slot in seen:
                slot = None
            if slot is not None:
                seen.add(slot)
            layout.append(slot)
        return layout

    def _check_header(self, header: list[str]) -> HeaderReport:
        report = HeaderReport(columns=header)
        if not header:
            report.issues.append(HeaderIssue(
                "", "CSV has no header row or is empty", "error"))
            return report

        present: set[tuple[str, str]] = set()
        for col in header:
            if not col:
                continue
            slot = self._classify(col)
            if slot is None:
                report.issues.append(HeaderIssue(
                    col, f"Unknown column '{col}' ignored"))
                continue
            if slot in present:
                report.issues.append(HeaderIssue(
                    col, f"Duplicate column '{col}' ignored"))
                continue
            present.add(slot)

        fields = {name for kind, name in present if kind == "field"}
        attrs = {name.casefold() for kind, name in present if kind == "attr"}
        for req in REQUIRED_FIELDS:
            if req not in fields:
                report.issues.append(HeaderIssue(
                    req, f"Missing required column '{req}'", "error"))
        for key, col in self._expected.items():
            if self._attributes[key].casefold() not in attrs:
                report.issues.append(HeaderIssue(
                    col, f"Missing attribute column '{col}'"))
        return report

    def _normalise(self, row_number: int, cells: list[str],
                   layout: list[tuple[str, str] | None]) -> ParsedRow:
        row = ParsedRow(row_number=row_number)
        for slot, raw in zip(layout, cells):
            if slot is None:
                continue
            kind, name = slot
            if kind == "field":
                row.fields[name] = (raw or "").strip()
            else:
                row.attributes[name] = split_values(raw, self.value_delimiter)
        return row
