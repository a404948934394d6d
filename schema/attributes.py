"""
schema.attributes - Attribute definitions applicable to a catalog/category.

Read-only view over the attribute tables.  The importer resolves CSV
option values against these definitions; the template generator uses
them to build attribute columns.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from db.models import Attribute, Catalog, Category


@dataclass
class AttributeDef:
    id: int
    name: str
    is_multi: bool
    # casefolded option value → (option id, canonical value)
    options: dict[str, tuple[int, str]] = field(default_factory=dict)
    ordered_values: list[str] = field(default_factory=list)

    def resolve(self, value: str) -> Optional[int]:
        hit = self.options.get(value.strip().casefold())
        return hit[0] if hit else None


def _to_def(attr: Attribute) -> AttributeDef:
    d = AttributeDef(id=attr.id, name=attr.name, is_multi=bool(attr.is_multi))
    for opt in attr.options:
        d.options.setdefault(opt.value.casefold(), (opt.id, opt.value))
        d.ordered_values.append(opt.value)
    return d


def catalog_attributes(session: Session, catalog_id: int) -> list[AttributeDef]:
    """Attributes linked to a catalog, in definition order."""
    catalog = session.get(Catalog, catalog_id)
    if catalog is None:
        return []
    return [_to_def(a) for a in catalog.attributes]


def category_attributes(session: Session, category_id: int) -> list[AttributeDef]:
    category = session.get(Category, category_id)
    if category is None:
        return []
    return [_to_def(a) for a in category.attributes]


def all_attributes(session: Session) -> list[AttributeDef]:
    """Every attribute definition (used for the generic template)."""
    rows = session.scalars(select(Attribute).order_by(Attribute.id)).all()
    return [_to_def(a) for a in rows]


def applicable_attributes(
    session: Session,
    catalog_id: Optional[int],
    category_id: Optional[int] = None,
) -> dict[str, AttributeDef]:
    """
    Attribute name → definition for a catalog and optional category.

    Category attributes extend the catalog's set; on a name clash the
    catalog definition wins.
    """
    out: dict[str, AttributeDef] = {}
    if catalog_id is not None:
        for d in catalog_attributes(session, catalog_id):
            out.setdefault(d.name, d)
    if category_id is not None:
        for d in category_attributes(session, category_id):
            out.setdefault(d.name, d)
    return out
