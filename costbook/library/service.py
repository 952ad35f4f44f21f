"""Library item lifecycle: draft -> confirmed -> actual.

Every update snapshots the pre-update state into the version ledger and then
increments the item's version. Bulk operations run each item inside its own
savepoint so one failure never affects the others.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import func, inspect, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from costbook.config import AppConfig, get_config
from costbook.db.models import (
    AssemblyModel,
    EquipmentFactorModel,
    EstimateElementItemModel,
    LaborFactorModel,
    LibraryItemModel,
    MaterialFactorModel,
    SectionModel,
    utcnow,
)
from costbook.exceptions import (
    AssemblyResolutionError,
    ConflictError,
    CostbookError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from costbook.library.codes import generate_item_code
from costbook.library.repository import (
    FACTOR_MODELS,
    fetch_item,
    load_factor_models,
    load_item_model,
    search_items,
    to_library_item,
)
from costbook.library.validation import (
    NO_FACTORS_ERROR,
    REQUIRED_FIELDS,
    required_field_errors,
    validate_item,
)
from costbook.library.versions import VersionLedger
from costbook.models import (
    RESTORABLE_FIELDS,
    BulkOperationResult,
    CloneRequest,
    CreateLibraryItemRequest,
    EquipmentFactor,
    ItemValidationResult,
    LaborFactor,
    LibraryItem,
    LibraryItemStatistics,
    LibraryItemStatus,
    LibraryItemUpdate,
    LibraryItemVersion,
    LibrarySearchParams,
    LibrarySearchResult,
    MaterialFactor,
    QuickAddFromEstimateRequest,
    VersionComparison,
)

logger = logging.getLogger(__name__)

QUICK_ADD_NOTES = "Created via quick-add from estimate. Requires review and factor assignment."

# Columns never carried over when a factor row is cloned
_FACTOR_COPY_EXCLUDE = {"id", "library_item_id", "created_at", "updated_at"}


class LibraryManagementService:
    """Create, transition, version and bulk-manage library items.

    Args:
        session: Async session all work runs in. The caller owns the commit.
        actor: User recorded as creator/confirmer/deleter (default from config)
        config: Application config (default: ``get_config()``)
    """

    def __init__(
        self,
        session: AsyncSession,
        actor: str | None = None,
        config: AppConfig | None = None,
    ):
        self.session = session
        self.config = config or get_config()
        self.actor = actor or self.config.default_actor
        self.ledger = VersionLedger(session, self.actor)

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def create_library_item(self, draft: CreateLibraryItemRequest) -> LibraryItem:
        """Create a new draft item. Drafts are not validated."""
        code = draft.code or await generate_item_code(
            self.session, draft.assembly_id, self.config.library
        )

        model = LibraryItemModel(
            code=code,
            name=draft.name,
            description=draft.description or "",
            unit=draft.unit,
            specifications=draft.specifications or "",
            wastage_percentage=draft.wastage_percentage,
            productivity_notes=draft.productivity_notes or "",
            assembly_id=draft.assembly_id,
            status=LibraryItemStatus.DRAFT.value,
            version=1,
            is_active=False,
            created_by=self.actor,
        )
        self.session.add(model)
        try:
            await self.session.flush()
        except SQLAlchemyError as exc:
            raise PersistenceError("Create library item", exc) from exc

        logger.info("Created library item %s (%s)", model.code, model.id)
        return await to_library_item(self.session, model)

    async def get_library_item(self, item_id: UUID) -> LibraryItem:
        return await fetch_item(self.session, item_id)

    async def update_library_item(
        self,
        item_id: UUID,
        updates: LibraryItemUpdate | dict[str, Any],
        expected_version: int | None = None,
        change_note: str | None = None,
    ) -> LibraryItem:
        """Apply a partial update, snapshotting the previous state first.

        Args:
            item_id: Item to update
            updates: Fields to write (only explicitly set fields are applied)
            expected_version: If given, the update fails with ``ConflictError``
                unless the stored version still matches
            change_note: Note stored with the snapshot

        Confirmed and actual items must still carry a code, name, unit and
        assembly after the update.

        Raises:
            NotFoundError: If the item does not exist
            ConflictError: If ``expected_version`` does not match
            ValidationError: If a confirmed/actual item would lose a required field
            PersistenceError: If the write fails
        """
        if isinstance(updates, dict):
            updates = LibraryItemUpdate.model_validate(updates)
        return await self._apply_update(
            item_id,
            updates.changes(),
            change_note=change_note,
            expected_version=expected_version,
        )

    async def delete_library_item(self, item_id: UUID, reason: str | None = None) -> LibraryItem:
        """Soft delete: the item goes inactive and its factors are kept."""
        model = await load_item_model(self.session, item_id)
        if model.deleted_at is not None:
            raise InvalidTransitionError(
                item_id, model.status, "deleted", "Item is already deleted"
            )

        item = await self._apply_update(
            item_id,
            {
                "is_active": False,
                "deleted_at": utcnow(),
                "deleted_by": self.actor,
                "deletion_reason": reason,
            },
            change_note=f"Deleted: {reason}" if reason else "Deleted",
        )
        logger.info("Soft-deleted library item %s", item_id)
        return item

    async def restore_library_item(self, item_id: UUID) -> LibraryItem:
        """Undo a soft delete. Drafts come back inactive, others active."""
        model = await load_item_model(self.session, item_id)
        if model.deleted_at is None:
            raise InvalidTransitionError(
                item_id, model.status, model.status, "Only deleted items can be restored"
            )

        return await self._apply_update(
            item_id,
            {
                "is_active": model.status != LibraryItemStatus.DRAFT.value,
                "deleted_at": None,
                "deleted_by": None,
                "deletion_reason": None,
            },
            change_note="Restored from deletion",
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def validate_library_item(self, item_id: UUID) -> ItemValidationResult:
        item = await fetch_item(self.session, item_id)
        return await validate_item(self.session, item)

    async def confirm_library_item(self, item_id: UUID, notes: str | None = None) -> LibraryItem:
        """Draft -> confirmed. The item must pass every validation rule.

        Raises:
            InvalidTransitionError: If the item is not a live draft
            ValidationError: Listing every failed rule
        """
        model = await self._load_for_transition(item_id, LibraryItemStatus.CONFIRMED)
        if model.status != LibraryItemStatus.DRAFT.value:
            raise InvalidTransitionError(
                item_id, model.status, "confirmed", "Only draft items can be confirmed"
            )

        item = await to_library_item(self.session, model)
        validation = await validate_item(self.session, item)
        if not validation.is_valid:
            raise ValidationError(validation.errors, validation.warnings)

        confirmed = await self._apply_update(
            item_id,
            {
                "status": LibraryItemStatus.CONFIRMED.value,
                "confirmed_at": utcnow(),
                "confirmed_by": self.actor,
                "is_active": True,
                "productivity_notes": _append_note(
                    item.productivity_notes, "Confirmation notes", notes
                ),
            },
            change_note="Status changed to confirmed",
        )
        logger.info("Confirmed library item %s (%s)", confirmed.code, item_id)
        return confirmed

    async def mark_as_actual(self, item_id: UUID, notes: str | None = None) -> LibraryItem:
        """Confirmed -> actual."""
        model = await self._load_for_transition(item_id, LibraryItemStatus.ACTUAL)
        if model.status != LibraryItemStatus.CONFIRMED.value:
            raise InvalidTransitionError(
                item_id, model.status, "actual", "Only confirmed items can be marked as actual"
            )

        return await self._apply_update(
            item_id,
            {
                "status": LibraryItemStatus.ACTUAL.value,
                "actual_library_date": utcnow(),
                "productivity_notes": _append_note(
                    model.productivity_notes, "Actual library notes", notes
                ),
            },
            change_note="Status changed to actual",
        )

    async def revert_to_draft(self, item_id: UUID, reason: str | None = None) -> LibraryItem:
        """Confirmed/actual -> draft, clearing confirmation metadata."""
        model = await self._load_for_transition(item_id, LibraryItemStatus.DRAFT)
        if model.status == LibraryItemStatus.DRAFT.value:
            raise InvalidTransitionError(
                item_id, model.status, "draft", "Item is already a draft"
            )

        return await self._apply_update(
            item_id,
            {
                "status": LibraryItemStatus.DRAFT.value,
                "is_active": False,
                "confirmed_at": None,
                "confirmed_by": None,
                "actual_library_date": None,
                "productivity_notes": _append_note(
                    model.productivity_notes, "Reverted to draft", reason
                ),
            },
            change_note="Status changed to draft",
        )

    # ------------------------------------------------------------------
    # Bulk operations
    # ------------------------------------------------------------------

    async def bulk_update_status(
        self,
        item_ids: Sequence[UUID],
        status: LibraryItemStatus | str,
        notes: str | None = None,
    ) -> BulkOperationResult:
        status = LibraryItemStatus(status)
        transition = {
            LibraryItemStatus.CONFIRMED: self.confirm_library_item,
            LibraryItemStatus.ACTUAL: self.mark_as_actual,
            LibraryItemStatus.DRAFT: self.revert_to_draft,
        }[status]

        result = await self._run_bulk(
            item_ids, lambda item_id: transition(item_id, notes), f"status -> {status.value}"
        )
        result.details = {status.value: result.successful}
        return result

    async def bulk_delete(
        self, item_ids: Sequence[UUID], reason: str | None = None
    ) -> BulkOperationResult:
        return await self._run_bulk(
            item_ids, lambda item_id: self.delete_library_item(item_id, reason), "delete"
        )

    async def bulk_restore(self, item_ids: Sequence[UUID]) -> BulkOperationResult:
        return await self._run_bulk(item_ids, self.restore_library_item, "restore")

    # ------------------------------------------------------------------
    # Cloning
    # ------------------------------------------------------------------

    async def clone_library_item(
        self,
        source_id: UUID,
        new_name: str,
        new_code: str | None = None,
        modifications: dict[str, Any] | None = None,
    ) -> LibraryItem:
        """Copy an item into a new draft, deep-copying its factors.

        The clone always starts as a draft whatever the source status is.
        """
        source = await fetch_item(self.session, source_id)

        fields: dict[str, Any] = {
            "code": new_code,
            "name": new_name,
            "description": source.description,
            "unit": source.unit,
            "specifications": source.specifications,
            "wastage_percentage": source.wastage_percentage,
            "productivity_notes": f"Cloned from {source.code} - {source.name}",
            "assembly_id": source.assembly_id,
        }
        fields.update(modifications or {})

        clone = await self.create_library_item(CreateLibraryItemRequest.model_validate(fields))
        await self._clone_factors(source_id, clone.id)

        logger.info("Cloned library item %s -> %s", source.code, clone.code)
        return await fetch_item(self.session, clone.id)

    async def batch_clone_items(self, requests: Sequence[CloneRequest]) -> BulkOperationResult:
        result = BulkOperationResult()
        for request in requests:
            try:
                async with self.session.begin_nested():
                    await self.clone_library_item(
                        request.source_id,
                        request.new_name,
                        request.new_code,
                        request.modifications,
                    )
                result.successful += 1
            except (CostbookError, SQLAlchemyError, ValueError) as exc:
                result.failed += 1
                result.errors.append(
                    f"Clone {request.source_id} → {request.new_code or 'auto'}: {exc}"
                )
                logger.warning("Batch clone of %s failed: %s", request.source_id, exc)
        return result

    # ------------------------------------------------------------------
    # Versions
    # ------------------------------------------------------------------

    async def create_version_snapshot(
        self, item_id: UUID, change_note: str | None = None
    ) -> UUID | None:
        return await self.ledger.snapshot(item_id, change_note)

    async def get_version_history(self, item_id: UUID) -> list[LibraryItemVersion]:
        return await self.ledger.history(item_id)

    async def restore_from_version(self, item_id: UUID, version_id: UUID) -> LibraryItem:
        """Write a stored version's content back onto the item.

        Exactly one snapshot (of the state being replaced) is written. Identity,
        timestamps, version, lifecycle and deletion fields are not restored.

        Raises:
            NotFoundError: If the version is missing or belongs to another item
            ValidationError: If a confirmed/actual item would lose a required field
        """
        version = await self.ledger.get_version(version_id, item_id)
        restored = LibraryItemUpdate.model_validate(
            {key: value for key, value in version.data.items() if key in RESTORABLE_FIELDS}
        )

        _check_required_fields(await load_item_model(self.session, item_id), restored.changes())

        await self.ledger.snapshot(item_id, f"Restored from version {version.version_number}")
        item = await self._apply_update(item_id, restored.changes(), snapshot=False)

        logger.info("Restored item %s to version %s", item_id, version.version_number)
        return item

    async def compare_versions(
        self, item_id: UUID, version_id1: UUID, version_id2: UUID
    ) -> VersionComparison:
        return await self.ledger.compare(item_id, version_id1, version_id2)

    # ------------------------------------------------------------------
    # Search and statistics
    # ------------------------------------------------------------------

    async def search_library_items(self, params: LibrarySearchParams) -> LibrarySearchResult:
        return await search_items(self.session, params)

    async def get_item_statistics(self, item_id: UUID) -> LibraryItemStatistics:
        """Usage of an item across estimates (zeros when never used)."""
        stmt = select(
            func.count(EstimateElementItemModel.id),
            func.max(EstimateElementItemModel.created_at),
            func.count(func.distinct(EstimateElementItemModel.project_id)),
            func.avg(EstimateElementItemModel.quantity),
        ).where(EstimateElementItemModel.library_item_id == item_id)

        usage_count, last_used_at, projects_used_in, average_quantity = (
            await self.session.execute(stmt)
        ).one()

        if not usage_count:
            return LibraryItemStatistics()

        return LibraryItemStatistics(
            usage_count=usage_count,
            last_used_at=last_used_at,
            projects_used_in=projects_used_in or 0,
            average_quantity=float(average_quantity or 0),
        )

    # ------------------------------------------------------------------
    # Factors
    # ------------------------------------------------------------------

    async def add_material_factor(self, item_id: UUID, factor: MaterialFactor) -> MaterialFactor:
        row = await self._add_factor(item_id, MaterialFactorModel, factor)
        return MaterialFactor.model_validate(row)

    async def add_labor_factor(self, item_id: UUID, factor: LaborFactor) -> LaborFactor:
        row = await self._add_factor(item_id, LaborFactorModel, factor)
        return LaborFactor.model_validate(row)

    async def add_equipment_factor(
        self, item_id: UUID, factor: EquipmentFactor
    ) -> EquipmentFactor:
        row = await self._add_factor(item_id, EquipmentFactorModel, factor)
        return EquipmentFactor.model_validate(row)

    async def remove_material_factor(self, factor_id: UUID) -> None:
        await self._remove_factor(MaterialFactorModel, factor_id, "Material factor")

    async def remove_labor_factor(self, factor_id: UUID) -> None:
        await self._remove_factor(LaborFactorModel, factor_id, "Labor factor")

    async def remove_equipment_factor(self, factor_id: UUID) -> None:
        await self._remove_factor(EquipmentFactorModel, factor_id, "Equipment factor")

    async def get_item_factors(
        self, item_id: UUID
    ) -> tuple[list[MaterialFactor], list[LaborFactor], list[EquipmentFactor]]:
        await load_item_model(self.session, item_id)
        materials, labor, equipment = await load_factor_models(self.session, item_id)
        return (
            [MaterialFactor.model_validate(m) for m in materials],
            [LaborFactor.model_validate(lf) for lf in labor],
            [EquipmentFactor.model_validate(e) for e in equipment],
        )

    # ------------------------------------------------------------------
    # Quick add
    # ------------------------------------------------------------------

    async def quick_add_from_estimate(self, request: QuickAddFromEstimateRequest) -> LibraryItem:
        """Create a minimal draft from an estimate search.

        Resolves an assembly (explicit id, then first in section, then first in
        division), attaches one generic factor per supplied rate and links the
        item to the originating estimate element.

        Raises:
            AssemblyResolutionError: If no assembly can be resolved
        """
        assembly_id = await self._resolve_assembly(request)
        context = request.quick_add_context

        item = await self.create_library_item(
            CreateLibraryItemRequest(
                name=request.name,
                unit=request.unit,
                assembly_id=assembly_id,
                description=f'Quick-added from estimate search: "{context.search_term}"',
                productivity_notes=QUICK_ADD_NOTES,
            )
        )

        library = self.config.library
        if request.material_rate is not None:
            await self.add_material_factor(
                item.id,
                MaterialFactor(
                    material_code=f"{library.generic_material_code}-{item.code}",
                    material_name="Generic Material",
                    unit="unit",
                    quantity_per_unit=1,
                    wastage_percentage=library.quick_add_material_wastage,
                    current_price=request.material_rate,
                    specifications="Quick-add generic material - requires specification",
                ),
            )
        if request.labour_rate is not None:
            await self.add_labor_factor(
                item.id,
                LaborFactor(
                    labor_code=f"{library.generic_labor_code}-{item.code}",
                    labor_name="Generic Labor",
                    trade="General",
                    skill_level="Standard",
                    hours_per_unit=1,
                    current_rate=request.labour_rate,
                    qualifications="Quick-add generic labor - requires specification",
                ),
            )
        if request.equipment_rate is not None:
            await self.add_equipment_factor(
                item.id,
                EquipmentFactor(
                    equipment_code=f"{library.generic_equipment_code}-{item.code}",
                    equipment_name="Generic Equipment",
                    category="General",
                    hours_per_unit=1,
                    current_rate=request.equipment_rate,
                    specifications="Quick-add generic equipment - requires specification",
                ),
            )

        if context.element_id:
            self.session.add(
                EstimateElementItemModel(
                    element_id=context.element_id,
                    library_item_id=item.id,
                    project_id=context.project_id,
                    quantity=1,
                    quick_add=True,
                )
            )
            await self.session.flush()

        logger.info("Quick-added library item %s from '%s'", item.code, context.search_term)
        return await fetch_item(self.session, item.id)

    async def preview_item_code(self, assembly_id: UUID | None = None) -> str:
        """Code the next item created under ``assembly_id`` would receive."""
        return await generate_item_code(self.session, assembly_id, self.config.library)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _apply_update(
        self,
        item_id: UUID,
        changes: dict[str, Any],
        change_note: str | None = None,
        snapshot: bool = True,
        expected_version: int | None = None,
    ) -> LibraryItem:
        model = await load_item_model(
            self.session, item_id, for_update=expected_version is not None
        )
        if expected_version is not None and model.version != expected_version:
            raise ConflictError(item_id, expected_version, model.version)
        _check_required_fields(model, changes)

        if snapshot:
            await self.ledger.record(await to_library_item(self.session, model), change_note)
            model = await load_item_model(self.session, item_id)

        for field, value in changes.items():
            setattr(model, field, value.value if isinstance(value, Enum) else value)
        model.version = model.version + 1
        model.last_modified = utcnow()

        try:
            await self.session.flush()
        except SQLAlchemyError as exc:
            raise PersistenceError("Update library item", exc) from exc

        return await to_library_item(self.session, model)

    async def _load_for_transition(
        self, item_id: UUID, target: LibraryItemStatus
    ) -> LibraryItemModel:
        model = await load_item_model(self.session, item_id)
        if model.deleted_at is not None:
            raise InvalidTransitionError(
                item_id,
                model.status,
                target.value,
                "Deleted items must be restored before changing status",
            )
        return model

    async def _run_bulk(
        self,
        item_ids: Sequence[UUID],
        operation: Callable[[UUID], Awaitable[Any]],
        label: str,
    ) -> BulkOperationResult:
        result = BulkOperationResult()
        for item_id in item_ids:
            try:
                async with self.session.begin_nested():
                    await operation(item_id)
                result.successful += 1
            except (CostbookError, SQLAlchemyError) as exc:
                result.failed += 1
                result.errors.append(f"Item {item_id}: {exc}")
                logger.warning("Bulk %s failed for item %s: %s", label, item_id, exc)
        return result

    async def _clone_factors(self, source_id: UUID, target_id: UUID) -> None:
        for factor_model in FACTOR_MODELS:
            rows = (
                await self.session.execute(
                    select(factor_model).where(factor_model.library_item_id == source_id)
                )
            ).scalars().all()
            column_keys = [
                attr.key
                for attr in inspect(factor_model).column_attrs
                if attr.key not in _FACTOR_COPY_EXCLUDE
            ]
            for row in rows:
                copied = {key: getattr(row, key) for key in column_keys}
                self.session.add(factor_model(library_item_id=target_id, **copied))
        await self.session.flush()

    async def _add_factor(self, item_id: UUID, factor_model: type, factor: Any) -> Any:
        await load_item_model(self.session, item_id)
        row = factor_model(
            library_item_id=item_id,
            **factor.model_dump(exclude={"id", "created_at", "updated_at"}),
        )
        self.session.add(row)
        try:
            await self.session.flush()
        except SQLAlchemyError as exc:
            raise PersistenceError("Add factor", exc) from exc
        return row

    async def _remove_factor(self, factor_model: type, factor_id: UUID, label: str) -> None:
        """Delete one factor row. Confirmed/actual items keep at least one factor.

        Raises:
            NotFoundError: If no factor of this kind has ``factor_id``
            ValidationError: If the last factor of a non-draft item would go
        """
        row = await self.session.get(factor_model, factor_id)
        if row is None:
            raise NotFoundError(label, factor_id)

        item = await load_item_model(self.session, row.library_item_id)
        if item.status != LibraryItemStatus.DRAFT.value:
            remaining = sum(len(rows) for rows in await load_factor_models(self.session, item.id))
            if remaining <= 1:
                raise ValidationError([NO_FACTORS_ERROR])

        try:
            await self.session.delete(row)
            await self.session.flush()
        except SQLAlchemyError as exc:
            raise PersistenceError("Remove factor", exc) from exc

        logger.info("Removed %s %s from item %s", label.lower(), factor_id, item.code)

    async def _resolve_assembly(self, request: QuickAddFromEstimateRequest) -> UUID:
        if request.assembly_id is not None:
            if await self.session.get(AssemblyModel, request.assembly_id) is not None:
                return request.assembly_id

        if request.section_id is not None:
            assembly_id = (
                await self.session.execute(
                    select(AssemblyModel.id)
                    .where(AssemblyModel.section_id == request.section_id)
                    .order_by(AssemblyModel.sort_order, AssemblyModel.code)
                    .limit(1)
                )
            ).scalar_one_or_none()
            if assembly_id is not None:
                return assembly_id

        if request.division_id is not None:
            assembly_id = (
                await self.session.execute(
                    select(AssemblyModel.id)
                    .join(SectionModel, SectionModel.id == AssemblyModel.section_id)
                    .where(SectionModel.division_id == request.division_id)
                    .order_by(
                        SectionModel.sort_order,
                        SectionModel.code,
                        AssemblyModel.sort_order,
                        AssemblyModel.code,
                    )
                    .limit(1)
                )
            ).scalar_one_or_none()
            if assembly_id is not None:
                return assembly_id

        raise AssemblyResolutionError()


def _check_required_fields(model: LibraryItemModel, changes: dict[str, Any]) -> None:
    """Reject changes that would leave a non-draft item without a required field."""
    if model.status == LibraryItemStatus.DRAFT.value or not changes.keys() & set(REQUIRED_FIELDS):
        return

    merged = {field: getattr(model, field) for field in REQUIRED_FIELDS}
    merged.update({field: changes[field] for field in REQUIRED_FIELDS if field in changes})
    errors = required_field_errors(LibraryItem.model_construct(**merged))
    if errors:
        raise ValidationError(errors)


def _append_note(existing: str | None, label: str, note: str | None) -> str:
    if not note:
        return existing or ""
    return f"{existing or ''}\n{label}: {note}"
