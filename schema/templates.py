"""
schema.templates - Downloadable CSV templates for product imports.

A catalog template lists the scalar product columns plus one column per
attribute linked to that catalog, with a sample row showing how to
write several values into a multi-select cell.  Without a catalog (or
when anything goes wrong building the catalog template) the generic
template is returned instead.
"""

from __future__ import annotations

import csv
import io
import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.orm import Session

import config
from db.engine import get_session
from import_engine.field_map import SCALAR_FIELDS, attribute_column, expected_columns
from schema.attributes import AttributeDef, all_attributes, catalog_attributes
from services.catalog_service import CatalogService

logger = logging.getLogger(__name__)

# Sample values for scalar columns (catalog template); catalog_id is filled in
CATALOG_SAMPLE = {
    "sku": "SKU-12345",
    "name": "Example Product",
    "description": "This is an example product description.",
    "price": "249.99",
    "cost_price": "100.00",
    "sale_price": "199.99",
    "minimum_price": "150.00",
    "discount_percentage": "20",
    "brand": "Example Brand",
    "supplier_name": "Example Supplier",
    "tags": "example,product,sample",
    "status": "active",
    "featured": "false",
    "weight": "1.5",
    "dimensions": "20x30x10",
    "category": "",
    "category_id": "",
    "category_parent_name": "",
    "catalog_id": "",
    "catalog_name": "",
}

GENERIC_SAMPLES = (
    {
        "sku": "WH-1000",
        "name": "Wireless Headphones",
        "description": "High-quality wireless headphones with noise cancellation.",
        "price": "399.99",
        "cost_price": "200.00",
        "sale_price": "299.99",
        "minimum_price": "250.00",
        "discount_percentage": "25",
        "brand": "SoundCo",
        "supplier_name": "SoundCo Distribution",
        "tags": "headphones,wireless,audio",
        "status": "active",
        "featured": "true",
        "weight": "0.3",
        "dimensions": "18x20x8",
        "category": "Electronics",
        "category_id": "",
        "category_parent_name": "",
        "catalog_id": "1",
        "catalog_name": "",
    },
    {
        "sku": "TS-2000",
        "name": "Cotton T-Shirt",
        "description": "Comfortable cotton t-shirt for everyday wear.",
        "price": "149.99",
        "cost_price": "50.00",
        "sale_price": "99.99",
        "minimum_price": "80.00",
        "discount_percentage": "33",
        "brand": "Basics",
        "supplier_name": "Basics Wholesale",
        "tags": "clothing,t-shirt,cotton",
        "status": "active",
        "featured": "false",
        "weight": "0.2",
        "dimensions": "30x40x2",
        "category": "Clothing",
        "category_id": "",
        "category_parent_name": "Apparel",
        "catalog_id": "1",
        "catalog_name": "",
    },
)

PLACEHOLDER_VALUES = ("Value1", "Value2", "Value3")


@dataclass
class TemplateFile:
    filename: str
    content: bytes
    catalog_name: Optional[str] = None

    @property
    def generic(self) -> bool:
        return self.catalog_name is None


def slugify(text: str) -> str:
    text = re.sub(r"\s+", "_", text.strip().lower())
    return re.sub(r"[^\w\-]", "", text) or "catalog"


def _sample_cell(attr: AttributeDef, delimiter: str, limit: int = 3) -> str:
    values = attr.ordered_values[:limit] if attr.is_multi else attr.ordered_values[:1]
    if not values:
        values = list(PLACEHOLDER_VALUES[:limit if attr.is_multi else 1])
    return delimiter.join(values)


def _render(header: list[str], rows: list[list[str]]) -> bytes:
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(header)
    writer.writerows(rows)
    return buf.getvalue().encode("utf-8")


def _filename(slug: str) -> str:
    return f"product_upload_template_{slug}_{int(time.time() * 1000)}.csv"


# ── Builders ──────────────────────────────────────────────────────────

def build_catalog_template(session: Session, catalog_id: int) -> Optional[TemplateFile]:
    """Template for one catalog, or None when the catalog does not exist."""
    catalog = CatalogService.get_catalog(session, catalog_id)
    if catalog is None:
        return None
    delimiter = config.VALUE_DELIMITER
    attrs = catalog_attributes(session, catalog_id)

    header = expected_columns([a.name for a in attrs])
    sample = dict(CATALOG_SAMPLE, catalog_id=str(catalog.id))
    row = [sample[col] for col in SCALAR_FIELDS]
    row += [_sample_cell(a, delimiter) for a in attrs]
    return TemplateFile(
        filename=_filename(slugify(catalog.name)),
        content=_render(header, [row]),
        catalog_name=catalog.name,
    )


def build_generic_template(session: Optional[Session] = None) -> TemplateFile:
    """
    Generic template.  With a session, every known attribute gets a
    column; without one only the scalar columns are emitted.
    """
    delimiter = config.VALUE_DELIMITER
    attrs = all_attributes(session) if session is not None else []

    header = expected_columns([a.name for a in attrs])
    rows = []
    for sample in GENERIC_SAMPLES:
        row = [sample[col] for col in SCALAR_FIELDS]
        row += [_sample_cell(a, delimiter) for a in attrs
                if attribute_column(a.name) in header]
        rows.append(row)
    return TemplateFile(filename=_filename("generic"), content=_render(header, rows))


def generate_template(
    catalog_id: Optional[int] = None,
    *,
    session_factory: Callable[[], Session] = get_session,
) -> TemplateFile:
    """
    Never fails: catalog template → generic template → scalar-only
    generic template, whichever succeeds first.
    """
    if catalog_id is not None:
        try:
            session = session_factory()
            try:
                tpl = build_catalog_template(session, catalog_id)
            finally:
                session.close()
            if tpl is not None:
                return tpl
            logger.warning(f"Catalog {catalog_id} not found; using generic template")
        except Exception:
            logger.exception(f"Template for catalog {catalog_id} failed; using generic template")

    try:
        session = session_factory()
        try:
            return build_generic_template(session)
        finally:
            session.close()
    except Exception:
        logger.exception("Generic template with attributes failed; emitting scalar columns only")
        return build_generic_template(None)
