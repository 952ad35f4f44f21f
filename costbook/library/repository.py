"""Database queries for library items and their factors."""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from costbook.db.models import (
    EquipmentFactorModel,
    LaborFactorModel,
    LibraryItemModel,
    MaterialFactorModel,
)
from costbook.exceptions import NotFoundError
from costbook.models import (
    EquipmentFactor,
    LaborFactor,
    LibraryItem,
    LibrarySearchParams,
    LibrarySearchResult,
    MaterialFactor,
)

FACTOR_MODELS = (MaterialFactorModel, LaborFactorModel, EquipmentFactorModel)


async def load_item_model(
    session: AsyncSession, item_id: UUID, for_update: bool = False
) -> LibraryItemModel:
    """Load the ORM row for ``item_id``, refreshing any cached identity.

    Raises:
        NotFoundError: If no item has this id
    """
    model = await session.get(
        LibraryItemModel,
        item_id,
        populate_existing=True,
        with_for_update=for_update or None,
    )
    if model is None:
        raise NotFoundError("Library item", item_id)
    return model


async def load_factor_models(
    session: AsyncSession, item_id: UUID
) -> tuple[list[MaterialFactorModel], list[LaborFactorModel], list[EquipmentFactorModel]]:
    """Return the material, labor and equipment factor rows of an item."""
    loaded = []
    for factor_model in FACTOR_MODELS:
        result = await session.execute(
            select(factor_model)
            .where(factor_model.library_item_id == item_id)
            .order_by(factor_model.created_at.asc(), factor_model.id.asc())
        )
        loaded.append(list(result.scalars().all()))
    materials, labor, equipment = loaded
    return materials, labor, equipment


async def to_library_item(session: AsyncSession, model: LibraryItemModel) -> LibraryItem:
    """Convert an ORM row into a ``LibraryItem`` with its factors attached."""
    materials, labor, equipment = await load_factor_models(session, model.id)

    item = LibraryItem.model_validate(model)
    item.materials = [MaterialFactor.model_validate(m) for m in materials]
    item.labor = [LaborFactor.model_validate(lf) for lf in labor]
    item.equipment = [EquipmentFactor.model_validate(e) for e in equipment]
    return item


async def fetch_item(session: AsyncSession, item_id: UUID) -> LibraryItem:
    model = await load_item_model(session, item_id)
    return await to_library_item(session, model)


_SORT_COLUMNS = {
    "created_at": LibraryItemModel.created_at,
    "last_modified": LibraryItemModel.last_modified,
    "code": LibraryItemModel.code,
    "name": LibraryItemModel.name,
    "status": LibraryItemModel.status,
    "version": LibraryItemModel.version,
}


async def search_items(
    session: AsyncSession, params: LibrarySearchParams
) -> LibrarySearchResult:
    """Filter, sort and page library items.

    The text query matches code, name or description case-insensitively.
    """
    conditions = []

    if params.query:
        pattern = f"%{params.query}%"
        conditions.append(
            or_(
                LibraryItemModel.code.ilike(pattern),
                LibraryItemModel.name.ilike(pattern),
                LibraryItemModel.description.ilike(pattern),
            )
        )
    if params.status is not None:
        conditions.append(LibraryItemModel.status == params.status.value)
    if params.assembly_id is not None:
        conditions.append(LibraryItemModel.assembly_id == params.assembly_id)
    if params.is_active is not None:
        conditions.append(LibraryItemModel.is_active.is_(params.is_active))
    if not params.show_deleted:
        conditions.append(LibraryItemModel.deleted_at.is_(None))
    if params.created_by:
        conditions.append(LibraryItemModel.created_by == params.created_by)
    if params.date_from is not None:
        conditions.append(LibraryItemModel.created_at >= params.date_from)
    if params.date_to is not None:
        conditions.append(LibraryItemModel.created_at <= params.date_to)

    count_stmt = select(func.count()).select_from(LibraryItemModel).where(*conditions)
    total = (await session.execute(count_stmt)).scalar_one()

    sort_column = _SORT_COLUMNS[params.sort_by]
    order = sort_column.asc() if params.sort_order == "asc" else sort_column.desc()

    stmt = (
        select(LibraryItemModel)
        .where(*conditions)
        .order_by(order, LibraryItemModel.id.asc())
        .offset(params.offset)
    )
    if params.limit is not None:
        stmt = stmt.limit(params.limit)

    rows = (await session.execute(stmt)).scalars().all()
    items = [await to_library_item(session, row) for row in rows]

    return LibrarySearchResult(
        items=items,
        total=total,
        has_more=params.offset + len(items) < total,
    )
