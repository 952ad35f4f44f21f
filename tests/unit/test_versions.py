"""Tests for the library item version ledger."""

from __future__ import annotations

import logging
from uuid import uuid4

import pytest
from sqlalchemy import text

from costbook.exceptions import NotFoundError, ValidationError
from costbook.library.versions import find_differences
from costbook.models import LibraryItemStatus


class TestFindDifferences:
    def test_reports_changed_added_and_removed_keys(self):
        old = {"name": "Slab", "unit": "m2", "notes": "x"}
        new = {"name": "Slab 200", "unit": "m2", "code": "0001"}

        differences = {d.field: (d.old_value, d.new_value) for d in find_differences(old, new)}

        assert differences == {
            "name": ("Slab", "Slab 200"),
            "notes": ("x", None),
            "code": (None, "0001"),
        }

    def test_nested_values_compare_structurally(self):
        old = {"materials": [{"code": "A", "qty": "1"}]}
        new = {"materials": [{"qty": "1", "code": "A"}]}

        assert find_differences(old, new) == []


@pytest.mark.asyncio
async def test_update_snapshots_previous_state(make_item, library_service):
    item = await make_item(name="Original name")

    await library_service.update_library_item(item.id, {"name": "New name"}, change_note="Rename")

    history = await library_service.get_version_history(item.id)
    assert len(history) == 1
    assert history[0].version_number == 1
    assert history[0].data["name"] == "Original name"
    assert history[0].change_note == "Rename"
    assert history[0].created_by == "estimator@example.com"
    # Factors are part of the snapshot
    assert history[0].data["materials"][0]["material_code"] == "CON-C30"


@pytest.mark.asyncio
async def test_failed_snapshot_does_not_block_update(
    make_item, library_service, db_session, caplog
):
    item = await make_item(name="Before")
    await db_session.execute(text("DROP TABLE library_item_versions"))

    with caplog.at_level(logging.WARNING, logger="costbook.library.versions"):
        updated = await library_service.update_library_item(item.id, {"name": "After"})

    assert updated.name == "After"
    assert updated.version == 2
    assert "Version snapshot failed" in caplog.text
    stored = await library_service.get_library_item(item.id)
    assert stored.name == "After"


@pytest.mark.asyncio
async def test_history_is_newest_first(make_item, library_service):
    item = await make_item()
    await library_service.update_library_item(item.id, {"name": "Second"})
    await library_service.update_library_item(item.id, {"name": "Third"})
    await library_service.confirm_library_item(item.id)

    history = await library_service.get_version_history(item.id)

    assert [v.version_number for v in history] == [3, 2, 1]
    assert history[0].data["name"] == "Third"
    assert history[0].change_note == "Status changed to confirmed"


@pytest.mark.asyncio
async def test_manual_snapshot_does_not_bump_version(make_item, library_service):
    item = await make_item()

    version_id = await library_service.create_version_snapshot(item.id, "Before review")

    assert version_id is not None
    stored = await library_service.get_library_item(item.id)
    assert stored.version == 1
    history = await library_service.get_version_history(item.id)
    assert history[0].id == version_id


@pytest.mark.asyncio
async def test_restore_from_version(make_item, library_service):
    item = await make_item(name="Original name", unit="m2")
    await library_service.update_library_item(item.id, {"name": "Changed", "unit": "m3"})
    original = (await library_service.get_version_history(item.id))[-1]

    restored = await library_service.restore_from_version(item.id, original.id)

    assert restored.name == "Original name"
    assert restored.unit == "m2"
    assert restored.version == 3

    history = await library_service.get_version_history(item.id)
    assert len(history) == 2
    assert history[0].change_note == "Restored from version 1"
    assert history[0].data["name"] == "Changed"


@pytest.mark.asyncio
async def test_restore_twice_converges_with_one_snapshot_each(make_item, library_service):
    item = await make_item(name="Original name")
    await library_service.update_library_item(item.id, {"name": "Changed"})
    original = (await library_service.get_version_history(item.id))[-1]

    first = await library_service.restore_from_version(item.id, original.id)
    second = await library_service.restore_from_version(item.id, original.id)

    assert first.name == second.name == "Original name"
    history = await library_service.get_version_history(item.id)
    assert len(history) == 3


@pytest.mark.asyncio
async def test_restore_keeps_lifecycle_state(make_item, library_service):
    item = await make_item()
    snapshot_id = await library_service.create_version_snapshot(item.id)
    await library_service.confirm_library_item(item.id)

    restored = await library_service.restore_from_version(item.id, snapshot_id)

    assert restored.status == LibraryItemStatus.CONFIRMED
    assert restored.is_active is True


@pytest.mark.asyncio
async def test_restore_cannot_strip_confirmed_item(make_item, library_service, hierarchy):
    item = await make_item(assembly_id=None, code="FLAT-1")
    await library_service.update_library_item(item.id, {"assembly_id": hierarchy.assembly.id})
    unassigned = (await library_service.get_version_history(item.id))[-1]
    await library_service.confirm_library_item(item.id)

    with pytest.raises(ValidationError, match="Assembly assignment is required"):
        await library_service.restore_from_version(item.id, unassigned.id)

    stored = await library_service.get_library_item(item.id)
    assert stored.assembly_id == hierarchy.assembly.id
    assert len(await library_service.get_version_history(item.id)) == 2


@pytest.mark.asyncio
async def test_compare_versions(make_item, library_service):
    item = await make_item(name="Alpha")
    await library_service.update_library_item(item.id, {"name": "Beta"})
    await library_service.update_library_item(item.id, {"name": "Gamma"})
    newer, older = (await library_service.get_version_history(item.id))[:2]

    comparison = await library_service.compare_versions(item.id, older.id, newer.id)

    fields = {d.field: (d.old_value, d.new_value) for d in comparison.differences}
    assert fields["name"] == ("Alpha", "Beta")
    assert fields["version"] == (1, 2)


@pytest.mark.asyncio
async def test_version_of_another_item_is_not_found(make_item, library_service):
    first = await make_item(name="First")
    second = await make_item(name="Second")
    version_id = await library_service.create_version_snapshot(first.id)

    with pytest.raises(NotFoundError):
        await library_service.restore_from_version(second.id, version_id)

    with pytest.raises(NotFoundError):
        await library_service.compare_versions(second.id, version_id, version_id)


@pytest.mark.asyncio
async def test_unknown_version_is_not_found(make_item, library_service):
    item = await make_item()

    with pytest.raises(NotFoundError):
        await library_service.restore_from_version(item.id, uuid4())
