"""Confirmation checks for library items.

``check_item`` is a pure rule set over facts already collected;
``validate_item`` gathers those facts from the database.
"""

from __future__ import annotations

from sqlalchemy import exists, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from costbook.db.models import LibraryItemModel
from costbook.library.repository import FACTOR_MODELS
from costbook.models import ItemValidationResult, LibraryItem

REQUIRED_FIELDS = ["code", "name", "unit", "assembly_id"]
FACTOR_KINDS = ["material", "labour", "equipment"]
NO_FACTORS_ERROR = "Item must have at least one factor (material, labour, or equipment)"


def required_field_errors(item: LibraryItem) -> list[str]:
    """Errors for the fields every confirmed or actual item must carry."""
    errors: list[str] = []
    if not (item.code or "").strip():
        errors.append("Item code is required")
    if not (item.name or "").strip():
        errors.append("Item name is required")
    if not (item.unit or "").strip():
        errors.append("Item unit is required")
    if item.assembly_id is None:
        errors.append("Assembly assignment is required")
    return errors


def check_item(item: LibraryItem, has_factors: bool, duplicate_count: int) -> ItemValidationResult:
    """Evaluate every confirmation rule. Rules never short-circuit."""
    errors = required_field_errors(item)
    warnings: list[str] = []

    if not has_factors:
        errors.append(NO_FACTORS_ERROR)

    if duplicate_count > 0:
        errors.append("Item code already exists")

    if not (item.description or "").strip():
        warnings.append("Description is recommended for better item identification")
    if not (item.specifications or "").strip():
        warnings.append("Specifications help with accurate estimating")

    return ItemValidationResult(
        is_valid=not errors,
        errors=errors,
        warnings=warnings,
        required_fields=list(REQUIRED_FIELDS),
        missing_factors=[] if has_factors else list(FACTOR_KINDS),
    )


async def item_has_factors(session: AsyncSession, item_id) -> bool:
    """True if any factor table holds a row for the item (one OR'd EXISTS query)."""
    stmt = select(
        or_(
            *(
                exists().where(factor_model.library_item_id == item_id)
                for factor_model in FACTOR_MODELS
            )
        )
    )
    return bool((await session.execute(stmt)).scalar())


async def count_active_duplicates(session: AsyncSession, item: LibraryItem) -> int:
    """Count other active items already using this item's code."""
    if not item.code:
        return 0
    stmt = (
        select(func.count())
        .select_from(LibraryItemModel)
        .where(
            LibraryItemModel.code == item.code,
            LibraryItemModel.is_active.is_(True),
            LibraryItemModel.id != item.id,
        )
    )
    return (await session.execute(stmt)).scalar_one()


async def validate_item(session: AsyncSession, item: LibraryItem) -> ItemValidationResult:
    has_factors = await item_has_factors(session, item.id)
    duplicate_count = await count_active_duplicates(session, item)
    return check_item(item, has_factors, duplicate_count)
