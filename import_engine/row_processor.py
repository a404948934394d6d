"""
import_engine.row_processor - Validate and apply one CSV row as a Product.

Single-responsibility: given a ParsedRow, create or update the product
it describes and return a RowResult.  Row-scoped problems come back as
RowFailure; only conditions that end the whole run (catalog removed,
database unreachable) are raised.

Writes to one catalog are serialised: the capacity check, the insert
and the commit happen under a per-catalog lock (and, on databases that
support it, a row lock on the catalog), so rows processed side by side
cannot push a catalog past its capacity.
"""

from __future__ import annotations

import json
import logging
import threading
from contextlib import ExitStack
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, InterfaceError, SQLAlchemyError
from sqlalchemy.orm import Session

from db.engine import get_session
from import_engine.capacity import CapacityChecker
from import_engine.csv_parser import ParsedRow
from import_engine.errors import CatalogMissing, StorageUnavailable
from import_engine.field_map import (
    BOOLEAN_FIELDS, FALSE_VALUES, NUMERIC_FIELDS, REQUIRED_FIELDS,
    SCALAR_FIELDS, STATUS_VALUES, TRUE_VALUES, split_values,
)
from import_engine.results import (
    CAPACITY, ERROR, PERSISTENCE, VALIDATION, WARNING,
    Issue, RowFailure, RowResult, RowSuccess,
)
from schema.attributes import applicable_attributes
from services.catalog_service import CatalogService

logger = logging.getLogger(__name__)

TEXT_FIELDS = ("description", "brand", "supplier_name", "dimensions")

# Listed and calculated discount may differ by this many percentage points
DISCOUNT_TOLERANCE = 1

_locks_guard = threading.Lock()
_write_locks: dict[object, threading.Lock] = {}
_category_lock = threading.Lock()


def _write_lock(key) -> threading.Lock:
    """Process-wide lock for writes into one catalog."""
    with _locks_guard:
        return _write_locks.setdefault(key, threading.Lock())


@dataclass
class _Plan:
    """Everything needed to write a row, resolved before the write."""
    catalog_id: Optional[int]
    values: dict
    catalog_name: Optional[str] = None            # create when catalog_id is None
    category_name: Optional[str] = None           # find or create at write time
    category_parent_name: Optional[str] = None
    selections: dict[int, list[int]] = field(default_factory=dict)
    warnings: list[Issue] = field(default_factory=list)

    @property
    def lock_key(self):
        if self.catalog_id is not None:
            return self.catalog_id
        return f"name:{self.catalog_name.casefold()}"


class RowProcessor:
    """
    Applies rows for one import job.

    Each row uses its own short-lived sessions, so a processor can be
    shared by worker threads in the parallel strategy.
    """

    def __init__(
        self,
        catalog_id: Optional[int],
        *,
        strict_attributes: bool = True,
        value_delimiter: str = ",",
        persist_attempts: int = 3,
        session_factory: Callable[[], Session] = get_session,
    ):
        self.catalog_id = catalog_id
        self.strict_attributes = strict_attributes
        self.value_delimiter = value_delimiter
        self.persist_attempts = max(1, persist_attempts)
        self._session_factory = session_factory

    def process(self, row: ParsedRow) -> RowResult:
        if not row.ok:
            return RowFailure(row.row_number, VALIDATION, row.parse_error)

        values, issues = self._validate_scalars(row)
        if _blocking(issues):
            return RowFailure.from_issues(row.row_number, issues)

        plan, issues = self._resolve(row, values, issues)
        if plan is None:
            return RowFailure.from_issues(row.row_number, issues)

        return self._apply(row, plan)

    # ── Step 1: scalar validation ──────────────────────────────────────

    def _validate_scalars(self, row: ParsedRow) -> tuple[dict, list[Issue]]:
        f = row.fields
        issues: list[Issue] = []
        values: dict = {}

        for col in REQUIRED_FIELDS:
            if not f.get(col):
                issues.append(Issue(VALIDATION, f"{col} is required", col))

        numbers: dict[str, Decimal] = {}
        for col in NUMERIC_FIELDS:
            raw = f.get(col)
            if not raw:
                continue
            try:
                num = Decimal(raw.replace(" ", ""))
            except InvalidOperation:
                issues.append(Issue(VALIDATION, f"{col} must be a number", col))
                continue
            if not num.is_finite() or num < 0:
                issues.append(Issue(VALIDATION, f"{col} must be a non-negative number", col))
                continue
            numbers[col] = num

        price = numbers.get("price")
        sale = numbers.get("sale_price")
        if sale is not None and price is not None and sale > price:
            issues.append(Issue(VALIDATION,
                                "Sale price cannot be greater than regular price",
                                "sale_price"))
        minimum = numbers.get("minimum_price")
        if sale is not None and minimum is not None and sale < minimum:
            issues.append(Issue(VALIDATION,
                                "Sale price cannot be less than minimum price",
                                "sale_price"))
        cost = numbers.get("cost_price")
        if sale is not None and cost is not None and sale < cost:
            issues.append(Issue(VALIDATION,
                                "Sale price should be greater than cost price",
                                "sale_price", WARNING))

        discount = numbers.get("discount_percentage")
        if discount is not None and discount > 100:
            issues.append(Issue(VALIDATION,
                                "discount_percentage cannot exceed 100",
                                "discount_percentage"))
        elif discount is not None and sale is not None and price:
            calculated = round((price - sale) / price * 100)
            if abs(calculated - discount) > DISCOUNT_TOLERANCE:
                issues.append(Issue(VALIDATION,
                                    f"Listed discount ({discount}%) doesn't match "
                                    f"calculated discount ({calculated}%)",
                                    "discount_percentage", WARNING))

        status = (f.get("status") or "").lower()
        if "status" in f and status and status not in STATUS_VALUES:
            issues.append(Issue(VALIDATION,
                                f"status must be one of: {', '.join(sorted(STATUS_VALUES))}",
                                "status"))

        for col in BOOLEAN_FIELDS:
            raw = (f.get(col) or "").lower()
            if col in f and raw not in TRUE_VALUES and raw not in FALSE_VALUES:
                issues.append(Issue(VALIDATION, f"{col} must be true or false", col))

        for col in ("catalog_id", "category_id"):
            raw = f.get(col) or ""
            if raw and not raw.isdigit():
                issues.append(Issue(VALIDATION, f"{col} must be an integer", col))
        if self.catalog_id is None and not f.get("catalog_id") and not f.get("catalog_name"):
            issues.append(Issue(VALIDATION, "catalog_id or catalog_name is required",
                                "catalog_id"))

        if _blocking(issues):
            return values, issues

        # Only columns present in the file are written, so updates keep
        # values for columns the file omits.
        values["sku"] = f["sku"]
        values["name"] = f["name"]
        for col in TEXT_FIELDS:
            if col in f:
                values[SCALAR_FIELDS[col]] = f[col]
        for col in NUMERIC_FIELDS:
            if col in f:
                values[SCALAR_FIELDS[col]] = numbers.get(col)
        if "tags" in f:
            values["tags_json"] = json.dumps(
                split_values(f["tags"], self.value_delimiter), ensure_ascii=False)
        if "status" in f:
            values["is_active"] = status != "draft"
        if "featured" in f:
            values["is_featured"] = f["featured"].lower() in TRUE_VALUES
        return values, issues

    # ── Steps 2-3: catalog, category and attribute resolution ──────────

    def _resolve(self, row: ParsedRow, values: dict,
                 issues: list[Issue]) -> tuple[Optional[_Plan], list[Issue]]:
        session = self._session_factory()
        try:
            plan = self._target_catalog(session, row, values, issues)
            if plan is None:
                return None, issues
            category_id = self._category(session, row, plan, issues)
            if _blocking(issues):
                return None, issues
            selections, attr_issues = self._resolve_attributes(
                session, row, plan.catalog_id, category_id)
        except SQLAlchemyError as exc:
            self._check_storage(exc)
            issues.append(Issue(PERSISTENCE, f"Could not read catalog data: {_short(exc)}"))
            return None, issues
        finally:
            session.close()

        if attr_issues:
            if self.strict_attributes:
                return None, issues + attr_issues
            issues = issues + [
                Issue(i.error_type, i.message, i.field, WARNING) for i in attr_issues
            ]
        plan.selections = selections
        plan.warnings = [i for i in issues if i.severity != ERROR]
        return plan, issues

    def _target_catalog(self, session: Session, row: ParsedRow, values: dict,
                        issues: list[Issue]) -> Optional[_Plan]:
        if self.catalog_id is not None:
            if CatalogService.get_catalog(session, self.catalog_id) is None:
                raise CatalogMissing(f"Catalog {self.catalog_id} no longer exists")
            return _Plan(catalog_id=self.catalog_id, values=values)

        raw = row.fields.get("catalog_id")
        if raw:
            catalog_id = int(raw)
            if CatalogService.get_catalog(session, catalog_id) is None:
                issues.append(Issue(VALIDATION, f"Unknown catalog {catalog_id}", "catalog_id"))
                return None
            return _Plan(catalog_id=catalog_id, values=values)

        name = row.fields["catalog_name"]
        existing = CatalogService.find_catalog(session, name)
        if existing is not None:
            return _Plan(catalog_id=existing.id, values=values)
        return _Plan(catalog_id=None, catalog_name=name, values=values)

    def _category(self, session: Session, row: ParsedRow, plan: _Plan,
                  issues: list[Issue]) -> Optional[int]:
        """Category id known so far; a new category is created at write time."""
        f = row.fields
        category_id = None
        if f.get("category_id"):
            category = CatalogService.get_category(session, int(f["category_id"]))
            if category is None:
                issues.append(Issue(VALIDATION, f"Unknown category {f['category_id']}",
                                    "category_id"))
                return None
            category_id = category.id
        elif f.get("category"):
            plan.category_name = f["category"]
            plan.category_parent_name = f.get("category_parent_name") or None
            existing = CatalogService.find_category(session, f["category"])
            category_id = existing.id if existing is not None else None

        if "category" in f or "category_id" in f:
            plan.values["category_id"] = category_id
        return category_id

    def _resolve_attributes(
        self, session: Session, row: ParsedRow,
        catalog_id: Optional[int], category_id: Optional[int],
    ) -> tuple[dict[int, list[int]], list[Issue]]:
        defs = applicable_attributes(session, catalog_id, category_id)
        selections: dict[int, list[int]] = {}
        issues: list[Issue] = []

        for name, tokens in row.attributes.items():
            if not tokens:
                continue
            d = defs.get(name)
            if d is None:
                issues.append(Issue(VALIDATION,
                                    f"Attribute '{name}' does not apply to this catalog",
                                    name))
                continue
            if not d.is_multi and len(tokens) > 1:
                issues.append(Issue(VALIDATION,
                                    f"{name} accepts a single value",
                                    name))
                continue

            option_ids: list[int] = []
            unknown: list[str] = []
            for tok in tokens:
                oid = d.resolve(tok)
                if oid is None:
                    unknown.append(tok)
                elif oid not in option_ids:
                    option_ids.append(oid)
            if unknown:
                issues.append(Issue(VALIDATION,
                                    f"Unknown value(s) for {name}: {', '.join(unknown)}",
                                    name))
            if option_ids:
                selections[d.id] = option_ids
        return selections, issues

    # ── Steps 2 + 4: capacity gate and write, with bounded retry ───────

    def _apply(self, row: ParsedRow, plan: _Plan) -> RowResult:
        last_exc: Optional[SQLAlchemyError] = None

        for attempt in range(1, self.persist_attempts + 1):
            with ExitStack() as locks:
                locks.enter_context(_write_lock(plan.lock_key))
                if plan.category_name:
                    locks.enter_context(_category_lock)
                session = self._session_factory()
                try:
                    result = self._write(session, row, plan)
                    if result.ok:
                        session.commit()
                    else:
                        session.rollback()
                    return result
                except SQLAlchemyError as exc:
                    session.rollback()
                    last_exc = exc
                    logger.warning(f"Row {row.row_number}: write attempt {attempt}/"
                                   f"{self.persist_attempts} failed: {exc}")
                finally:
                    session.close()

        self._check_storage(last_exc)
        return RowFailure(row.row_number, PERSISTENCE,
                          f"Could not save product: {_short(last_exc)}",
                          warnings=plan.warnings)

    def _write(self, session: Session, row: ParsedRow, plan: _Plan) -> RowResult:
        """Create or update the row's product in the caller's transaction."""
        values = dict(plan.values)
        if plan.catalog_id is None:
            catalog_id = CatalogService.find_or_create_catalog(session, plan.catalog_name).id
        else:
            if CatalogService.get_catalog(session, plan.catalog_id, for_update=True) is None:
                raise CatalogMissing(f"Catalog {plan.catalog_id} no longer exists")
            catalog_id = plan.catalog_id
        if plan.category_name:
            values["category_id"] = CatalogService.find_or_create_category(
                session, plan.category_name, plan.category_parent_name).id

        product = CatalogService.find_product(session, catalog_id, values["sku"])
        if product is not None:
            CatalogService.update_product(session, product, values, plan.selections)
            return RowSuccess(row.row_number, product.id, False, warnings=plan.warnings)

        st = CapacityChecker.status(session, catalog_id)
        if st is None:
            raise CatalogMissing(f"Catalog {catalog_id} no longer exists")
        if st.full:
            return RowFailure(
                row.row_number, CAPACITY,
                f"Catalog {catalog_id} is full "
                f"({st.current_count}/{st.capacity} products)",
                warnings=plan.warnings,
            )
        product = CatalogService.create_product(session, catalog_id, values, plan.selections)
        return RowSuccess(row.row_number, product.id, True, warnings=plan.warnings)

    # ── Storage health ─────────────────────────────────────────────────

    def _check_storage(self, exc: Optional[SQLAlchemyError]) -> None:
        """
        Raise StorageUnavailable when a failure means the database itself
        is gone.  Locks, deadlocks and constraint errors stay row-scoped.
        """
        if _is_disconnect(exc) or not self._storage_reachable():
            raise StorageUnavailable(f"Database unreachable: {_short(exc)}") from exc

    def _storage_reachable(self) -> bool:
        session = self._session_factory()
        try:
            session.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as exc:
            logger.error(f"Database connectivity check failed: {exc}")
            return False
        finally:
            session.close()


def _is_disconnect(exc: Optional[Exception]) -> bool:
    if isinstance(exc, InterfaceError):
        return True
    return isinstance(exc, DBAPIError) and bool(exc.connection_invalidated)


def _blocking(issues: list[Issue]) -> bool:
    return any(i.severity == ERROR for i in issues)


def _short(exc: Exception | None) -> str:
    message = str(getattr(exc, "orig", None) or exc or "unknown error")
    return message.splitlines()[0][:300]
