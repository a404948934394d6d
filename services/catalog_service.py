"""
services.catalog_service - Catalog/product persistence used by the importer.

All session management is the caller's responsibility (open before,
close/commit after).  This keeps the service testable and allows
the caller to batch multiple operations in one transaction.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from db.models import Catalog, Category, Product, ProductAttribute

logger = logging.getLogger(__name__)


class CatalogService:

    # ── Read ───────────────────────────────────────────────────────────

    @staticmethod
    def get_catalog(session: Session, catalog_id: int, *,
                    for_update: bool = False) -> Catalog | None:
        """With for_update the catalog row stays locked until the caller commits."""
        return session.get(Catalog, catalog_id, with_for_update=for_update or None)

    @staticmethod
    def find_catalog(session: Session, name: str) -> Catalog | None:
        """Case-insensitive lookup by catalog name."""
        return session.scalars(
            select(Catalog)
            .where(func.lower(Catalog.name) == name.strip().lower())
            .order_by(Catalog.id)
        ).first()

    @staticmethod
    def get_category(session: Session, category_id: int) -> Category | None:
        return session.get(Category, category_id)

    @staticmethod
    def count_products(session: Session, catalog_id: int) -> int:
        return session.scalar(
            select(func.count(Product.id)).where(Product.catalog_id == catalog_id)
        ) or 0

    @staticmethod
    def find_category(session: Session, name: str) -> Category | None:
        """Case-insensitive lookup by category name."""
        return session.scalars(
            select(Category)
            .where(func.lower(Category.name) == name.strip().lower())
            .order_by(Category.id)
        ).first()

    @staticmethod
    def find_product(session: Session, catalog_id: int, sku: str) -> Product | None:
        return session.scalars(
            select(Product).where(Product.catalog_id == catalog_id,
                                  Product.sku == sku)
        ).first()

    # ── Find or create ─────────────────────────────────────────────────

    @staticmethod
    def find_or_create_category(session: Session, name: str,
                                parent_name: Optional[str] = None) -> Category:
        """
        Category by name, created when missing.  A parent name links the
        category under that parent (also created when missing), moving
        an existing category if it sat elsewhere.
        """
        parent = None
        if parent_name and parent_name.strip():
            parent = CatalogService.find_or_create_category(session, parent_name)

        category = CatalogService.find_category(session, name)
        if category is None:
            category = Category(name=name.strip(),
                                parent_id=parent.id if parent else None)
            session.add(category)
            session.flush()
            logger.info(f"Created category {category.id} '{category.name}'")
        elif parent is not None and category.parent_id != parent.id and category.id != parent.id:
            category.parent_id = parent.id
            session.flush()
        return category

    @staticmethod
    def find_or_create_catalog(session: Session, name: str) -> Catalog:
        """Catalog by name, created without a capacity limit when missing."""
        catalog = CatalogService.find_catalog(session, name)
        if catalog is None:
            catalog = Catalog(name=name.strip())
            session.add(catalog)
            session.flush()
            logger.info(f"Created catalog {catalog.id} '{catalog.name}'")
        return catalog

    # ── Create / Update ────────────────────────────────────────────────

    @staticmethod
    def create_product(
        session: Session,
        catalog_id: int,
        values: dict,
        selections: Optional[dict[int, list[int]]] = None,
    ) -> Product:
        """
        Create a Product from column values (Product attribute names)
        and attribute selections {attribute_id: [option_id, …]}.
        """
        product = Product(catalog_id=catalog_id)
        for attr, val in values.items():
            setattr(product, attr, val)
        if product.description is None:
            product.description = ""
        session.add(product)
        session.flush()
        CatalogService._apply_selections(session, product, selections or {})
        session.flush()
        return product

    @staticmethod
    def update_product(
        session: Session,
        product: Product,
        values: dict,
        selections: Optional[dict[int, list[int]]] = None,
    ) -> Product:
        """Overwrite the given columns; replace selections only for listed attributes."""
        for attr, val in values.items():
            if attr == "sku":
                continue
            setattr(product, attr, val)
        CatalogService._apply_selections(session, product, selections or {})
        session.flush()
        return product

    @staticmethod
    def _apply_selections(session: Session, product: Product,
                          selections: dict[int, list[int]]) -> None:
        if not selections:
            return
        for sel in list(product.selections):
            if sel.attribute_id in selections:
                product.selections.remove(sel)
        session.flush()
        for attribute_id, option_ids in selections.items():
            for option_id in option_ids:
                product.selections.append(ProductAttribute(
                    attribute_id=attribute_id, option_id=option_id,
                ))
