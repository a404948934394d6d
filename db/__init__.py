"""
db - Database layer.

Public API:
    init_db()       → create engine + tables
    get_session()   → new Session
    ImportJob, RowError, Catalog, Product, … → ORM models
"""

from db.engine import init_db, get_session          # noqa: F401
from db.models import (                             # noqa: F401
    Base,
    ImportJob,
    RowError,
    Catalog,
    Category,
    Attribute,
    AttributeOption,
    CatalogAttribute,
    CategoryAttribute,
    Product,
    ProductAttribute,
)
