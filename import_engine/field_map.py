"""
import_engine.field_map - Column-name ↔ product-attribute mapping.

Scalar columns are stored directly on the Product row (or, for the
category and catalog columns, resolved to one).  Every other expected
column is an attribute column named after the attribute definition it
selects options for.  Shared by the row parser and the template
generator so both agree on column naming.
"""

from __future__ import annotations

# CSV column name  →  Product model attribute (in template order)
SCALAR_FIELDS: dict[str, str] = {
    "sku":                  "sku",
    "name":                 "name",
    "description":          "description",
    "price":                "price",
    "cost_price":           "cost_price",
    "sale_price":           "sale_price",
    "minimum_price":        "minimum_price",
    "discount_percentage":  "discount",
    "brand":                "brand",
    "supplier_name":        "supplier",
    "tags":                 "tags_json",
    "status":               "is_active",
    "featured":             "is_featured",
    "weight":               "weight",
    "dimensions":           "dimensions",
    "category":             "category_id",
    "category_id":          "category_id",
    "category_parent_name": "category_id",
    "catalog_id":           "catalog_id",
    "catalog_name":         "catalog_id",
}

# Alternative headers accepted for scalar columns
COLUMN_ALIASES: dict[str, str] = {
    "product_sku":         "sku",
    "product_name":        "name",
    "product_description": "description",
    "regular_price":       "price",
    "category_name":       "category",
}

REQUIRED_FIELDS = ("sku", "name", "price")

NUMERIC_FIELDS = ("price", "cost_price", "sale_price", "minimum_price",
                  "discount_percentage", "weight")

BOOLEAN_FIELDS = ("featured",)

STATUS_VALUES = frozenset({"active", "draft"})

TRUE_VALUES  = frozenset({"1", "true", "yes", "y"})
FALSE_VALUES = frozenset({"0", "false", "no", "n", ""})

# Attribute columns whose name collides with a scalar column carry this prefix
ATTRIBUTE_PREFIX = "attr_"


def normalize_header(name: str | None) -> str:
    """Strip whitespace and a stray BOM from a header cell."""
    return (name or "").replace("\ufeff", "").strip()


def scalar_field(column: str) -> str | None:
    """Scalar field a header selects, or None for any other column."""
    key = normalize_header(column).casefold()
    key = COLUMN_ALIASES.get(key, key)
    return key if key in SCALAR_FIELDS else None


def attribute_column(attribute_name: str) -> str:
    """
    Column header used for an attribute definition.

    >>> attribute_column("Size")
    'Size'
    >>> attribute_column("Status")
    'attr_Status'
    """
    name = normalize_header(attribute_name)
    if name and scalar_field(name) is not None:
        return ATTRIBUTE_PREFIX + name
    return name


def expected_columns(attribute_names: list[str]) -> list[str]:
    """Ordered list of every column a file for these attributes should carry."""
    cols = list(SCALAR_FIELDS.keys())
    for name in attribute_names:
        col = attribute_column(name)
        if col and col not in cols:
            cols.append(col)
    return cols


def split_values(raw: str | None, delimiter: str) -> list[str]:
    """Split a multi-value cell, trimming tokens and dropping empties."""
    if not raw:
        return []
    return [tok.strip() for tok in raw.split(delimiter) if tok.strip()]
