"""
import_engine.capacity - Catalog capacity gate for new products.

Capacity is read live for every row that would create a product, so
other writers to the same catalog are taken into account.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from services.catalog_service import CatalogService


@dataclass(frozen=True)
class CapacityStatus:
    catalog_id: int
    capacity: Optional[int]          # None = unlimited
    current_count: int

    @property
    def full(self) -> bool:
        return self.capacity is not None and self.current_count >= self.capacity


class CapacityChecker:

    @staticmethod
    def status(session: Session, catalog_id: int) -> Optional[CapacityStatus]:
        """Current capacity figures, or None when the catalog does not exist."""
        catalog = CatalogService.get_catalog(session, catalog_id)
        if catalog is None:
            return None
        return CapacityStatus(
            catalog_id=catalog_id,
            capacity=catalog.capacity,
            current_count=CatalogService.count_products(session, catalog_id),
        )
