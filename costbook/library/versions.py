"""Append-only version ledger for library items.

Snapshots hold the full serialized item (factors included) as it was before
a mutation, tagged with the version number the item had at that moment.
"""

from __future__ import annotations

import json
import logging
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from costbook.db.models import LibraryItemVersionModel
from costbook.exceptions import NotFoundError
from costbook.library.repository import fetch_item
from costbook.models import (
    LibraryItem,
    LibraryItemVersion,
    VersionComparison,
    VersionDifference,
)

logger = logging.getLogger(__name__)


class VersionLedger:
    """Snapshot log keyed by library item."""

    def __init__(self, session: AsyncSession, actor: str):
        self.session = session
        self.actor = actor

    async def snapshot(self, item_id: UUID, change_note: str | None = None) -> UUID | None:
        """Snapshot the current state of ``item_id``."""
        item = await fetch_item(self.session, item_id)
        return await self.record(item, change_note)

    async def record(self, item: LibraryItem, change_note: str | None = None) -> UUID | None:
        """Write a snapshot of ``item`` inside a savepoint.

        A failed write is logged and rolled back to the savepoint; the caller's
        mutation carries on without it.

        Returns:
            The new version id, or None if the write failed
        """
        try:
            async with self.session.begin_nested():
                version = LibraryItemVersionModel(
                    library_item_id=item.id,
                    version_number=item.version,
                    data=item.model_dump(mode="json"),
                    change_note=change_note,
                    created_by=self.actor,
                )
                self.session.add(version)
                await self.session.flush()
        except SQLAlchemyError:
            logger.warning(
                "Version snapshot failed for item %s (version %s)",
                item.id,
                item.version,
                exc_info=True,
            )
            return None

        return version.id

    async def history(self, item_id: UUID) -> list[LibraryItemVersion]:
        """Return every snapshot of the item, newest first."""
        stmt = (
            select(LibraryItemVersionModel)
            .where(LibraryItemVersionModel.library_item_id == item_id)
            .order_by(
                LibraryItemVersionModel.version_number.desc(),
                LibraryItemVersionModel.created_at.desc(),
            )
        )
        rows = (await self.session.execute(stmt)).scalars().all()
        return [LibraryItemVersion.model_validate(row) for row in rows]

    async def get_version(self, version_id: UUID, item_id: UUID | None = None) -> LibraryItemVersion:
        """Load one snapshot.

        Raises:
            NotFoundError: If the version is absent or belongs to another item
        """
        row = await self.session.get(LibraryItemVersionModel, version_id)
        if row is None or (item_id is not None and row.library_item_id != item_id):
            raise NotFoundError("Library item version", version_id)
        return LibraryItemVersion.model_validate(row)

    async def compare(
        self, item_id: UUID, version_id1: UUID, version_id2: UUID
    ) -> VersionComparison:
        version1 = await self.get_version(version_id1, item_id)
        version2 = await self.get_version(version_id2, item_id)
        return VersionComparison(
            version1=version1,
            version2=version2,
            differences=find_differences(version1.data, version2.data),
        )


def find_differences(old: dict[str, Any], new: dict[str, Any]) -> list[VersionDifference]:
    """Field-level differences between two serialized item states."""
    differences = []
    for key in sorted(set(old) | set(new)):
        old_value = old.get(key)
        new_value = new.get(key)
        if json.dumps(old_value, sort_keys=True) != json.dumps(new_value, sort_keys=True):
            differences.append(
                VersionDifference(field=key, old_value=old_value, new_value=new_value)
            )
    return differences
