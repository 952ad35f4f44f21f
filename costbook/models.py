"""costbook Pydantic models for type-safe data validation.

Inputs and outputs of the library, rates and job services.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class LibraryItemStatus(str, Enum):
    """Library item lifecycle states."""

    DRAFT = "draft"  # Initial state - factors being added
    CONFIRMED = "confirmed"  # Validated, visible to estimators
    ACTUAL = "actual"  # Part of the Actual Library (production ready)


class RateCategory(str, Enum):
    MATERIALS = "materials"
    LABOUR = "labour"
    EQUIPMENT = "equipment"


ALL_CATEGORIES: tuple[RateCategory, ...] = (
    RateCategory.MATERIALS,
    RateCategory.LABOUR,
    RateCategory.EQUIPMENT,
)


class ConflictResolution(str, Enum):
    """How an import treats codes the target project already prices."""

    OVERWRITE = "overwrite"  # Always take the source value
    SKIP = "skip"  # Keep the target value
    MERGE = "merge"  # Keep the target value and report the discarded one


class ComparisonAction(str, Enum):
    ADD = "add"
    UPDATE = "update"
    REMOVE = "remove"
    UNCHANGED = "unchanged"


class RateSource(str, Enum):
    PROJECT = "project"
    CATALOG = "catalog"
    DEFAULT = "default"


class JobStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Factors
# ---------------------------------------------------------------------------


class MaterialFactor(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID | None = None
    material_catalogue_id: UUID | None = None
    material_code: str
    material_name: str
    unit: str
    quantity_per_unit: Decimal
    wastage_percentage: Decimal = Decimal("0")
    current_price: Decimal | None = None
    specifications: str | None = None
    grade_standard: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("quantity_per_unit")
    @classmethod
    def validate_quantity(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("quantity_per_unit must be greater than 0")
        return v

    @field_validator("wastage_percentage")
    @classmethod
    def validate_wastage(cls, v: Decimal) -> Decimal:
        if v < 0 or v > 100:
            raise ValueError("wastage_percentage must be between 0 and 100")
        return v


def _positive_hours(v: Decimal) -> Decimal:
    if v <= 0:
        raise ValueError("hours_per_unit must be greater than 0")
    return v


class LaborFactor(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID | None = None
    labor_catalogue_id: UUID | None = None
    labor_code: str
    labor_name: str
    trade: str = "General"
    skill_level: str = "Standard"
    hours_per_unit: Decimal
    current_rate: Decimal | None = None
    qualifications: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("hours_per_unit")
    @classmethod
    def validate_hours(cls, v: Decimal) -> Decimal:
        return _positive_hours(v)


class EquipmentFactor(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID | None = None
    equipment_catalogue_id: UUID | None = None
    equipment_code: str
    equipment_name: str
    category: str = "General"
    capacity: str | None = None
    hours_per_unit: Decimal
    current_rate: Decimal | None = None
    specifications: str | None = None
    power_requirements: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("hours_per_unit")
    @classmethod
    def validate_hours(cls, v: Decimal) -> Decimal:
        return _positive_hours(v)


# ---------------------------------------------------------------------------
# Library items
# ---------------------------------------------------------------------------


class LibraryItem(BaseModel):
    """Library catalog entry with its factors."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    name: str
    description: str = ""
    unit: str = ""
    specifications: str = ""
    wastage_percentage: Decimal = Decimal("0")
    productivity_notes: str = ""
    assembly_id: UUID | None = None

    status: LibraryItemStatus = LibraryItemStatus.DRAFT
    version: int = 1
    is_active: bool = False
    confirmed_at: datetime | None = None
    confirmed_by: str | None = None
    actual_library_date: datetime | None = None

    deleted_at: datetime | None = None
    deleted_by: str | None = None
    deletion_reason: str | None = None

    created_by: str | None = None
    created_at: datetime | None = None
    last_modified: datetime | None = None

    materials: list[MaterialFactor] = Field(default_factory=list)
    labor: list[LaborFactor] = Field(default_factory=list)
    equipment: list[EquipmentFactor] = Field(default_factory=list)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def factor_count(self) -> int:
        return len(self.materials) + len(self.labor) + len(self.equipment)


class CreateLibraryItemRequest(BaseModel):
    """Fields accepted when creating a draft. Code is generated when omitted."""

    code: str | None = None
    name: str
    unit: str
    description: str = ""
    specifications: str = ""
    wastage_percentage: Decimal = Decimal("0")
    productivity_notes: str = ""
    assembly_id: UUID | None = None

    @field_validator("wastage_percentage")
    @classmethod
    def validate_wastage(cls, v: Decimal) -> Decimal:
        if v < 0 or v > 100:
            raise ValueError("wastage_percentage must be between 0 and 100")
        return v

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "name": "Concrete C25 slab 150mm",
                "unit": "m2",
                "assembly_id": "550e8400-e29b-41d4-a716-446655440000",
                "wastage_percentage": "5",
            }
        }
    )


# Content fields a version restore may write back
RESTORABLE_FIELDS: frozenset[str] = frozenset(
    {
        "code",
        "name",
        "description",
        "unit",
        "specifications",
        "wastage_percentage",
        "productivity_notes",
        "assembly_id",
    }
)


class LibraryItemUpdate(BaseModel):
    """Partial update of a library item's content.

    Only fields explicitly set are written. Status, activity and deletion
    fields are not accepted here; they change through the lifecycle operations.
    Code, name and unit may be changed but never cleared to null.
    """

    model_config = ConfigDict(extra="forbid")

    code: str | None = None
    name: str | None = None
    description: str | None = None
    unit: str | None = None
    specifications: str | None = None
    wastage_percentage: Decimal | None = None
    productivity_notes: str | None = None
    assembly_id: UUID | None = None

    @field_validator("wastage_percentage")
    @classmethod
    def validate_wastage(cls, v: Decimal | None) -> Decimal | None:
        if v is not None and (v < 0 or v > 100):
            raise ValueError("wastage_percentage must be between 0 and 100")
        return v

    @field_validator("code", "name", "unit")
    @classmethod
    def validate_not_null(cls, v: str | None) -> str | None:
        if v is None:
            raise ValueError("must not be null")
        return v

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class LibraryItemVersion(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    library_item_id: UUID
    version_number: int
    data: dict[str, Any]
    change_note: str | None = None
    created_by: str | None = None
    created_at: datetime


class VersionDifference(BaseModel):
    field: str
    old_value: Any = None
    new_value: Any = None


class VersionComparison(BaseModel):
    version1: LibraryItemVersion
    version2: LibraryItemVersion
    differences: list[VersionDifference] = Field(default_factory=list)


class ItemValidationResult(BaseModel):
    is_valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    required_fields: list[str] = Field(default_factory=list)
    missing_factors: list[str] = Field(default_factory=list)


class BulkOperationResult(BaseModel):
    """Aggregate of a per-item bulk operation. ``successful + failed`` equals the input size."""

    successful: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)
    details: dict[str, int] = Field(default_factory=dict)


class CloneRequest(BaseModel):
    source_id: UUID
    new_name: str
    new_code: str | None = None
    modifications: dict[str, Any] = Field(default_factory=dict)


class QuickAddContext(BaseModel):
    search_term: str
    element_id: str | None = None
    project_id: str | None = None


class QuickAddFromEstimateRequest(BaseModel):
    name: str
    unit: str
    assembly_id: UUID | None = None
    section_id: UUID | None = None
    division_id: UUID | None = None
    material_rate: Decimal | None = None
    labour_rate: Decimal | None = None
    equipment_rate: Decimal | None = None
    quick_add_context: QuickAddContext


SortField = Literal["created_at", "last_modified", "code", "name", "status", "version"]


class LibrarySearchParams(BaseModel):
    query: str | None = None
    status: LibraryItemStatus | None = None
    assembly_id: UUID | None = None
    is_active: bool | None = None
    show_deleted: bool = True
    created_by: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    sort_by: SortField = "created_at"
    sort_order: Literal["asc", "desc"] = "desc"
    limit: int | None = Field(default=None, ge=1)
    offset: int = Field(default=0, ge=0)


class LibrarySearchResult(BaseModel):
    items: list[LibraryItem]
    total: int
    has_more: bool


class LibraryItemStatistics(BaseModel):
    usage_count: int = 0
    last_used_at: datetime | None = None
    projects_used_in: int = 0
    average_quantity: float = 0.0


# ---------------------------------------------------------------------------
# Project rates
# ---------------------------------------------------------------------------


class RateSet(BaseModel):
    """Three code -> rate maps plus the window they apply to."""

    materials: dict[str, float] = Field(default_factory=dict)
    labour: dict[str, float] = Field(default_factory=dict)
    equipment: dict[str, float] = Field(default_factory=dict)
    effective_date: datetime | None = None
    expiry_date: datetime | None = None

    def for_category(self, category: RateCategory | str) -> dict[str, float]:
        return getattr(self, RateCategory(category).value)

    @property
    def total_rates(self) -> int:
        return len(self.materials) + len(self.labour) + len(self.equipment)


class ProjectRates(RateSet):
    """A stored (or synthetic empty) rate row for a project."""

    id: UUID | None = None
    project_id: str
    effective_date: datetime
    created_at: datetime | None = None
    updated_at: datetime | None = None
    created_by: str | None = None


class RateOverride(BaseModel):
    item_code: str
    category: RateCategory
    rate: float
    previous_rate: float | None = None
    item_name: str | None = None
    reason: str | None = None


class BatchRateUpdate(BaseModel):
    project_id: str
    updates: list[RateOverride]
    effective_date: datetime | None = None
    reason: str | None = None


class RateIssue(BaseModel):
    item_code: str
    category: RateCategory
    message: str
    suggested_rate: float | None = None


class RateValidationResult(BaseModel):
    is_valid: bool
    errors: list[RateIssue] = Field(default_factory=list)
    warnings: list[RateIssue] = Field(default_factory=list)


class ChangesSummary(BaseModel):
    materials_changed: int = 0
    labour_changed: int = 0
    equipment_changed: int = 0
    total_changes: int = 0


class RateHistoryEntry(BaseModel):
    id: UUID
    project_id: str
    rates: RateSet
    effective_date: datetime
    expiry_date: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    created_by: str | None = None
    changes_summary: ChangesSummary


class RateImportOptions(BaseModel):
    source_project_id: str
    target_project_id: str
    categories: list[RateCategory] = Field(default_factory=lambda: list(ALL_CATEGORIES))
    effective_date: datetime | None = None
    conflict_resolution: ConflictResolution = ConflictResolution.OVERWRITE


class RateImportResult(BaseModel):
    imported: int = 0
    skipped: int = 0
    errors: int = 0
    details: dict[str, int] = Field(
        default_factory=lambda: {category.value: 0 for category in ALL_CATEGORIES}
    )
    warnings: list[str] = Field(default_factory=list)


class RateComparison(BaseModel):
    """One (code, category) pair across a source and a target project.

    ``action`` names what importing ``source`` into ``target`` would do to the
    target's entry when read from the source side: ``add`` means only the target
    prices the code, ``remove`` means only the source does. Missing rates are
    reported as 0; ``action`` tells an absent rate from an explicit zero.
    """

    item_code: str
    item_name: str
    category: RateCategory
    source_rate: float
    target_rate: float
    difference: float
    percentage_change: float
    action: ComparisonAction


class EffectiveRate(BaseModel):
    item_code: str
    category: RateCategory
    rate: float
    source: RateSource
    effective_date: datetime
    project_rate: float | None = None
    catalog_rate: float | None = None


class RateStatistics(BaseModel):
    project_id: str
    total_rates: int
    category_breakdown: dict[str, int]
    average_rates: dict[str, float]
    last_updated: datetime
    most_recent_changes: list[RateHistoryEntry] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Background jobs
# ---------------------------------------------------------------------------


class JobResult(BaseModel):
    success: bool
    data: Any = None
    error: str | None = None
    executed_at: datetime
    duration_ms: float | None = None


class JobHistoryEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    job_name: str
    status: JobStatus
    started_at: datetime
    completed_at: datetime | None = None
    duration_ms: float | None = None
    error_message: str | None = None
    job_metadata: dict[str, Any] | None = None


class JobNameSummary(BaseModel):
    total: int = 0
    successful: int = 0
    failed: int = 0


class JobSummary(BaseModel):
    total_jobs: int = 0
    successful_jobs: int = 0
    failed_jobs: int = 0
    running_jobs: int = 0
    success_rate: float = 0.0
    avg_duration_seconds: float = 0.0
    by_job_name: dict[str, JobNameSummary] = Field(default_factory=dict)
