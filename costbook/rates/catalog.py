"""Catalogue reference rates and descriptions."""

from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from costbook.db.models import (
    EquipmentCatalogueModel,
    LabourCatalogueModel,
    MaterialCatalogueModel,
)
from costbook.models import RateCategory

CATALOGUE_MODELS = {
    RateCategory.MATERIALS: MaterialCatalogueModel,
    RateCategory.LABOUR: LabourCatalogueModel,
    RateCategory.EQUIPMENT: EquipmentCatalogueModel,
}


async def get_catalog_rate(
    session: AsyncSession, category: RateCategory, item_code: str
) -> float | None:
    """Reference rate for ``item_code``, or None if the catalogue has none."""
    model = CATALOGUE_MODELS[RateCategory(category)]
    rate = (
        await session.execute(select(model.rate).where(model.item_code == item_code))
    ).scalar_one_or_none()
    return float(rate) if rate is not None else None


async def get_catalog_rates(
    session: AsyncSession, category: RateCategory, item_codes: Iterable[str]
) -> dict[str, float]:
    """Reference rates for many codes in one query. Codes without a rate are omitted."""
    codes = list(item_codes)
    if not codes:
        return {}
    model = CATALOGUE_MODELS[RateCategory(category)]
    rows = await session.execute(
        select(model.item_code, model.rate).where(model.item_code.in_(codes))
    )
    return {code: float(rate) for code, rate in rows.all() if rate is not None}


async def get_item_names(
    session: AsyncSession, category: RateCategory, item_codes: Iterable[str]
) -> dict[str, str]:
    """Catalogue descriptions keyed by code; unknown codes map to themselves."""
    codes = list(item_codes)
    names = {code: code for code in codes}
    if not codes:
        return names
    model = CATALOGUE_MODELS[RateCategory(category)]
    rows = await session.execute(
        select(model.item_code, model.description).where(model.item_code.in_(codes))
    )
    for code, description in rows.all():
        if description:
            names[code] = description
    return names
