"""SQLAlchemy async database models for costbook.

Library items with their factor children, the append-only version ledger,
and append-only project rate rows (one row per effective date).
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    Text,
    Uuid,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


# ---------------------------------------------------------------------------
# Hierarchy: divisions -> sections -> assemblies
# ---------------------------------------------------------------------------


class DivisionModel(Base):
    __tablename__ = "divisions"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    code: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class SectionModel(Base):
    __tablename__ = "sections"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    division_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("divisions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    code: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class AssemblyModel(Base):
    __tablename__ = "assemblies"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    section_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("sections.id", ondelete="CASCADE"), nullable=False, index=True
    )
    code: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


# ---------------------------------------------------------------------------
# Library items and factors
# ---------------------------------------------------------------------------


class LibraryItemModel(Base):
    """Catalog entry moving through draft -> confirmed -> actual."""

    __tablename__ = "library_items"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    code: Mapped[str] = mapped_column(Text, nullable=False, index=True)  # DIV.SEC.ASM.NN
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    unit: Mapped[str] = mapped_column(Text, nullable=False, default="")
    specifications: Mapped[str] = mapped_column(Text, nullable=False, default="")
    wastage_percentage: Mapped[Decimal] = mapped_column(
        Numeric(6, 2), nullable=False, default=Decimal("0")
    )
    productivity_notes: Mapped[str] = mapped_column(Text, nullable=False, default="")

    assembly_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("assemblies.id", ondelete="SET NULL"), index=True
    )

    # Lifecycle
    status: Mapped[str] = mapped_column(Text, nullable=False, default="draft", index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    confirmed_by: Mapped[str | None] = mapped_column(Text)
    actual_library_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Soft delete
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    deleted_by: Mapped[str | None] = mapped_column(Text)
    deletion_reason: Mapped[str | None] = mapped_column(Text)

    # Audit
    created_by: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    last_modified: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('draft', 'confirmed', 'actual')", name="check_library_item_status"
        ),
        CheckConstraint("version >= 1", name="check_library_item_version"),
        # Code must be unique among active items
        Index(
            "idx_library_items_active_code",
            "code",
            unique=True,
            postgresql_where=text("is_active = true"),
            sqlite_where=text("is_active = 1"),
        ),
        Index("idx_library_items_assembly_code", "assembly_id", "code"),
    )


class MaterialFactorModel(Base):
    __tablename__ = "material_factors"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    library_item_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("library_items.id", ondelete="CASCADE"), nullable=False, index=True
    )
    material_catalogue_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True))
    material_code: Mapped[str] = mapped_column(Text, nullable=False)
    material_name: Mapped[str] = mapped_column(Text, nullable=False)
    unit: Mapped[str] = mapped_column(Text, nullable=False)
    quantity_per_unit: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    wastage_percentage: Mapped[Decimal] = mapped_column(
        Numeric(6, 2), nullable=False, default=Decimal("0")
    )
    current_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    specifications: Mapped[str | None] = mapped_column(Text)
    grade_standard: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class LaborFactorModel(Base):
    __tablename__ = "labor_factors"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    library_item_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("library_items.id", ondelete="CASCADE"), nullable=False, index=True
    )
    labor_catalogue_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True))
    labor_code: Mapped[str] = mapped_column(Text, nullable=False)
    labor_name: Mapped[str] = mapped_column(Text, nullable=False)
    trade: Mapped[str] = mapped_column(Text, nullable=False, default="General")
    skill_level: Mapped[str] = mapped_column(Text, nullable=False, default="Standard")
    hours_per_unit: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    current_rate: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    qualifications: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class EquipmentFactorModel(Base):
    __tablename__ = "equipment_factors"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    library_item_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("library_items.id", ondelete="CASCADE"), nullable=False, index=True
    )
    equipment_catalogue_id: Mapped[UUID | None] = mapped_column(Uuid(as_uuid=True))
    equipment_code: Mapped[str] = mapped_column(Text, nullable=False)
    equipment_name: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(Text, nullable=False, default="General")
    capacity: Mapped[str | None] = mapped_column(Text)
    hours_per_unit: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    current_rate: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    specifications: Mapped[str | None] = mapped_column(Text)
    power_requirements: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class LibraryItemVersionModel(Base):
    """Immutable snapshot of a library item, written before each mutation."""

    __tablename__ = "library_item_versions"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    library_item_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("library_items.id", ondelete="CASCADE"), nullable=False, index=True
    )
    version_number: Mapped[int] = mapped_column(Integer, nullable=False)
    data: Mapped[dict] = mapped_column(JSON, nullable=False)
    change_note: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_item_versions_item_created", "library_item_id", "created_at"),
    )


class EstimateElementItemModel(Base):
    """Usage of a library item inside an estimate element."""

    __tablename__ = "estimate_element_items"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    element_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    library_item_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("library_items.id", ondelete="CASCADE"), nullable=False, index=True
    )
    project_id: Mapped[str | None] = mapped_column(Text, index=True)
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False, default=Decimal("1"))
    quick_add: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


# ---------------------------------------------------------------------------
# Catalogue reference rates
# ---------------------------------------------------------------------------


class _CatalogueColumns:
    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    item_code: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    unit: Mapped[str | None] = mapped_column(Text)
    rate: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class MaterialCatalogueModel(_CatalogueColumns, Base):
    __tablename__ = "library_catalogues_materials"


class LabourCatalogueModel(_CatalogueColumns, Base):
    __tablename__ = "library_catalogues_labour"


class EquipmentCatalogueModel(_CatalogueColumns, Base):
    __tablename__ = "library_catalogues_equipment"


# ---------------------------------------------------------------------------
# Projects and project rates
# ---------------------------------------------------------------------------


class ProjectModel(Base):
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class ProjectRatesModel(Base):
    """Project rate overrides effective from ``effective_date``.

    Rows are never updated; a change inserts a new row.
    """

    __tablename__ = "project_rates"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    project_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    materials: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    labour: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    equipment: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    effective_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expiry_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_by: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint(
            "expiry_date IS NULL OR expiry_date > effective_date", name="check_rates_valid_period"
        ),
        # "Current rates" lookup
        Index("idx_project_rates_effective", "project_id", "effective_date"),
    )


class RateAuditLogModel(Base):
    """One row per rate change (create / update / import)."""

    __tablename__ = "rate_audit_logs"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    project_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str | None] = mapped_column(Text)
    item_code: Mapped[str | None] = mapped_column(Text, index=True)
    old_value: Mapped[float | None] = mapped_column(Float)
    new_value: Mapped[float | None] = mapped_column(Float)
    reason: Mapped[str | None] = mapped_column(Text)
    user_id: Mapped[str | None] = mapped_column(Text)
    details: Mapped[dict | None] = mapped_column(JSON)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


# ---------------------------------------------------------------------------
# Background jobs
# ---------------------------------------------------------------------------


class BackgroundJobLogModel(Base):
    __tablename__ = "background_job_logs"

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    job_name: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    status: Mapped[str] = mapped_column(Text, nullable=False)  # running, completed, failed
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    duration_ms: Mapped[float | None] = mapped_column(Float)
    error_message: Mapped[str | None] = mapped_column(Text)
    job_metadata: Mapped[dict | None] = mapped_column("metadata", JSON)

    __table_args__ = (
        CheckConstraint(
            "status IN ('running', 'completed', 'failed')", name="check_job_status"
        ),
        Index("idx_job_logs_name_started", "job_name", "started_at"),
    )
