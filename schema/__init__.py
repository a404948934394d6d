"""
schema - Product attribute definitions and CSV templates.

Public API:
    attributes.applicable_attributes / catalog_attributes / all_attributes
    templates.generate_template(catalog_id=None) → TemplateFile
"""

from schema.attributes import (                     # noqa: F401
    AttributeDef,
    applicable_attributes,
    catalog_attributes,
    category_attributes,
    all_attributes,
)
from schema.templates import TemplateFile, generate_template   # noqa: F401
