"""
services - Business-logic layer sitting between API/worker and DB.

services.import_service (ImportService) is imported directly by its
callers; it depends on the import engine, which in turn uses the
catalog service re-exported here.
"""

from services.catalog_service import CatalogService   # noqa: F401
from services import upload_store                      # noqa: F401
