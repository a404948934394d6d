"""
db.models - SQLAlchemy ORM declarations.

Tables
------
import_jobs        - one row per batch product import.  Holds status,
                     counters, the resume checkpoint and the run lease.
import_row_errors  - append-only log of row-scoped problems for a job.
                     Removed together with the job (cascade).

catalogs, categories, attributes, attribute_options, catalog_attributes,
category_attributes, products, product_attributes
                   - the slice of the marketplace catalog the importer
                     reads and writes.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, Column, String, Integer, DateTime, Numeric, Text, ForeignKey,
    Index, UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, relationship


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class Base(DeclarativeBase):
    pass


# ══════════════════════════════════════════════════════════════════════
#  Import jobs
# ══════════════════════════════════════════════════════════════════════

class ImportJob(Base):
    __tablename__ = "import_jobs"

    id          = Column(Integer, primary_key=True, autoincrement=True)
    name        = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    user_id     = Column(Integer, nullable=True, index=True)
    # Plain integer: the catalog may be removed while a job still points at it
    catalog_id  = Column(Integer, nullable=True, index=True)

    status              = Column(String(32), nullable=False, default="pending", index=True)
    processing_strategy = Column(String(32), nullable=False, default="sequential")
    strict_attributes   = Column(Boolean, nullable=False, default=True)

    # ── Source file ────────────────────────────────────────────────────
    file_name          = Column(Text, nullable=True)          # stored path
    file_original_name = Column(String(255), nullable=True)

    # ── Progress ───────────────────────────────────────────────────────
    total_records      = Column(Integer, nullable=False, default=0)
    processed_records  = Column(Integer, nullable=False, default=0)
    success_count      = Column(Integer, nullable=False, default=0)
    error_count        = Column(Integer, nullable=False, default=0)
    last_processed_row = Column(Integer, nullable=False, default=0)

    # ── Retry bookkeeping ──────────────────────────────────────────────
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    last_error  = Column(Text, nullable=True)

    # ── Capacity snapshot taken at start ───────────────────────────────
    catalog_capacity      = Column(Integer, nullable=True)
    catalog_current_count = Column(Integer, nullable=True)

    # ── Header-level issues found on submit (JSON list) ────────────────
    warnings_json = Column(Text, default="[]")

    # ── Single-active-run lease ────────────────────────────────────────
    run_token    = Column(String(32), nullable=True)
    heartbeat_at = Column(DateTime(timezone=True), nullable=True)

    # ── Lifecycle timestamps ───────────────────────────────────────────
    created_at   = Column(DateTime(timezone=True), default=utcnow)
    updated_at   = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    started_at   = Column(DateTime(timezone=True), nullable=True)
    paused_at    = Column(DateTime(timezone=True), nullable=True)
    resumed_at   = Column(DateTime(timezone=True), nullable=True)
    canceled_at  = Column(DateTime(timezone=True), nullable=True)
    failed_at    = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    errors = relationship(
        "RowError", back_populates="job",
        cascade="all, delete-orphan", passive_deletes=True,
        order_by="RowError.id",
    )

    @property
    def warnings(self) -> list[dict]:
        try:
            return json.loads(self.warnings_json or "[]")
        except (json.JSONDecodeError, TypeError):
            return []

    # ── Serialisation ──────────────────────────────────────────────────
    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "userId": self.user_id,
            "catalogId": self.catalog_id,
            "status": self.status,
            "processingStrategy": self.processing_strategy,
            "strictAttributes": bool(self.strict_attributes),
            "fileOriginalName": self.file_original_name,
            "totalRecords": self.total_records or 0,
            "processedRecords": self.processed_records or 0,
            "successCount": self.success_count or 0,
            "errorCount": self.error_count or 0,
            "lastProcessedRow": self.last_processed_row or 0,
            "retryCount": self.retry_count or 0,
            "maxRetries": self.max_retries,
            "lastError": self.last_error,
            "catalogCapacity": self.catalog_capacity,
            "catalogCurrentCount": self.catalog_current_count,
            "warnings": self.warnings,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "startedAt": _iso(self.started_at),
            "pausedAt": _iso(self.paused_at),
            "resumedAt": _iso(self.resumed_at),
            "canceledAt": _iso(self.canceled_at),
            "failedAt": _iso(self.failed_at),
            "completedAt": _iso(self.completed_at),
        }


class RowError(Base):
    __tablename__ = "import_row_errors"

    id         = Column(Integer, primary_key=True, autoincrement=True)
    job_id     = Column(Integer,
                        ForeignKey("import_jobs.id", ondelete="CASCADE"),
                        nullable=False, index=True)
    row_number = Column(Integer, nullable=False)
    error_type = Column(String(32), nullable=False)      # validation | capacity | persistence | system
    message    = Column(Text, nullable=False)
    severity   = Column(String(16), nullable=False, default="error")
    field      = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    job = relationship("ImportJob", back_populates="errors")

    __table_args__ = (
        Index("ix_row_error_job_row", "job_id", "row_number"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "jobId": self.job_id,
            "rowNumber": self.row_number,
            "errorType": self.error_type,
            "message": self.message,
            "severity": self.severity,
            "field": self.field,
            "createdAt": _iso(self.created_at),
        }


# ══════════════════════════════════════════════════════════════════════
#  Catalog
# ══════════════════════════════════════════════════════════════════════

class Catalog(Base):
    __tablename__ = "catalogs"

    id       = Column(Integer, primary_key=True, autoincrement=True)
    name     = Column(String(255), nullable=False)
    capacity = Column(Integer, nullable=True)             # None = unlimited

    products = relationship("Product", back_populates="catalog",
                            passive_deletes=True)
    attributes = relationship("Attribute", secondary="catalog_attributes",
                              order_by="Attribute.id")


class Category(Base):
    __tablename__ = "categories"

    id        = Column(Integer, primary_key=True, autoincrement=True)
    name      = Column(String(255), nullable=False, index=True)
    parent_id = Column(Integer, ForeignKey("categories.id", ondelete="SET NULL"),
                       nullable=True)

    attributes = relationship("Attribute", secondary="category_attributes",
                              order_by="Attribute.id")


class Attribute(Base):
    __tablename__ = "attributes"

    id             = Column(Integer, primary_key=True, autoincrement=True)
    name           = Column(String(200), nullable=False, unique=True)
    display_name   = Column(String(200), nullable=True)
    attribute_type = Column(String(32), nullable=False, default="select")
    is_multi       = Column(Boolean, nullable=False, default=True)

    options = relationship(
        "AttributeOption", back_populates="attribute",
        cascade="all, delete-orphan", order_by="AttributeOption.sort_order",
    )


class AttributeOption(Base):
    __tablename__ = "attribute_options"

    id           = Column(Integer, primary_key=True, autoincrement=True)
    attribute_id = Column(Integer,
                          ForeignKey("attributes.id", ondelete="CASCADE"),
                          nullable=False, index=True)
    value        = Column(String(200), nullable=False)
    sort_order   = Column(Integer, nullable=False, default=0)

    attribute = relationship("Attribute", back_populates="options")


class CatalogAttribute(Base):
    __tablename__ = "catalog_attributes"

    catalog_id   = Column(Integer, ForeignKey("catalogs.id", ondelete="CASCADE"),
                          primary_key=True)
    attribute_id = Column(Integer, ForeignKey("attributes.id", ondelete="CASCADE"),
                          primary_key=True)


class CategoryAttribute(Base):
    __tablename__ = "category_attributes"

    category_id  = Column(Integer, ForeignKey("categories.id", ondelete="CASCADE"),
                          primary_key=True)
    attribute_id = Column(Integer, ForeignKey("attributes.id", ondelete="CASCADE"),
                          primary_key=True)


class Product(Base):
    __tablename__ = "products"

    id            = Column(Integer, primary_key=True, autoincrement=True)
    catalog_id    = Column(Integer, ForeignKey("catalogs.id", ondelete="CASCADE"),
                           nullable=False, index=True)
    category_id   = Column(Integer, ForeignKey("categories.id"), nullable=True)
    sku           = Column(String(200), nullable=False)
    name          = Column(String(255), nullable=False)
    description   = Column(Text, default="")
    price         = Column(Numeric(12, 2), nullable=False)
    cost_price    = Column(Numeric(12, 2), nullable=True)
    sale_price    = Column(Numeric(12, 2), nullable=True)
    minimum_price = Column(Numeric(12, 2), nullable=True)
    discount      = Column(Numeric(5, 2), nullable=True)       # percent
    brand         = Column(String(200), default="")
    supplier      = Column(String(200), default="")
    tags_json     = Column(Text, default="[]")
    is_active     = Column(Boolean, nullable=False, default=True)
    is_featured   = Column(Boolean, nullable=False, default=False)
    weight        = Column(Numeric(10, 3), nullable=True)
    dimensions    = Column(String(100), default="")

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    catalog = relationship("Catalog", back_populates="products")
    selections = relationship(
        "ProductAttribute", back_populates="product",
        cascade="all, delete-orphan", lazy="selectin",
    )

    __table_args__ = (
        UniqueConstraint("catalog_id", "sku", name="uq_product_catalog_sku"),
    )

    @property
    def tags(self) -> list[str]:
        try:
            return json.loads(self.tags_json or "[]")
        except (json.JSONDecodeError, TypeError):
            return []

    def selected_values(self) -> dict[str, list[str]]:
        """Attribute name → selected option values, in option order."""
        out: dict[str, list[str]] = {}
        for sel in sorted(self.selections,
                          key=lambda s: (s.attribute_id, s.option.sort_order)):
            out.setdefault(sel.attribute.name, []).append(sel.option.value)
        return out


class ProductAttribute(Base):
    """One row per selected option of a product attribute."""
    __tablename__ = "product_attributes"

    id           = Column(Integer, primary_key=True, autoincrement=True)
    product_id   = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"),
                          nullable=False, index=True)
    attribute_id = Column(Integer, ForeignKey("attributes.id", ondelete="CASCADE"),
                          nullable=False)
    option_id    = Column(Integer, ForeignKey("attribute_options.id", ondelete="CASCADE"),
                          nullable=False)

    product   = relationship("Product", back_populates="selections")
    attribute = relationship("Attribute", lazy="joined")
    option    = relationship("AttributeOption", lazy="joined")

    __table_args__ = (
        Index("ix_product_attribute_lookup", "product_id", "attribute_id"),
    )
