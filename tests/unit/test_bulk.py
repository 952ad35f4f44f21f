"""Tests for bulk library operations."""

from __future__ import annotations

from uuid import uuid4

import pytest

from costbook.models import CloneRequest, LibraryItemStatus


@pytest.mark.asyncio
async def test_bulk_confirm_counts_each_item(make_item, library_service):
    good = [await make_item(name=f"Item {n}") for n in range(3)]
    bare = await make_item(name="No factors", with_factor=False)
    ids = [item.id for item in good] + [bare.id]

    result = await library_service.bulk_update_status(ids, LibraryItemStatus.CONFIRMED)

    assert result.successful == 3
    assert result.failed == 1
    assert result.successful + result.failed == len(ids)
    assert result.details == {"confirmed": 3}
    assert len(result.errors) == 1
    assert result.errors[0].startswith(f"Item {bare.id}: Item validation failed")

    for item in good:
        stored = await library_service.get_library_item(item.id)
        assert stored.status == LibraryItemStatus.CONFIRMED
    stored_bare = await library_service.get_library_item(bare.id)
    assert stored_bare.status == LibraryItemStatus.DRAFT
    assert stored_bare.version == 1


@pytest.mark.asyncio
async def test_bulk_failure_does_not_roll_back_earlier_items(make_item, library_service):
    first = await make_item(name="First")
    second = await make_item(name="Second")
    missing = uuid4()

    result = await library_service.bulk_update_status(
        [first.id, missing, second.id], "confirmed", notes="Batch review"
    )

    assert result.successful == 2
    assert result.failed == 1
    assert str(missing) in result.errors[0]
    stored = await library_service.get_library_item(first.id)
    assert stored.status == LibraryItemStatus.CONFIRMED
    assert "Confirmation notes: Batch review" in stored.productivity_notes


@pytest.mark.asyncio
async def test_bulk_mark_actual_rejects_drafts(make_item, library_service):
    confirmed = await make_item(name="Confirmed")
    draft = await make_item(name="Draft")
    await library_service.confirm_library_item(confirmed.id)

    result = await library_service.bulk_update_status(
        [confirmed.id, draft.id], LibraryItemStatus.ACTUAL
    )

    assert result.successful == 1
    assert result.failed == 1
    assert "Only confirmed items can be marked as actual" in result.errors[0]
    assert result.details == {"actual": 1}


@pytest.mark.asyncio
async def test_bulk_delete_and_restore(make_item, library_service):
    items = [await make_item(name=f"Item {n}") for n in range(2)]
    ids = [item.id for item in items]

    deleted = await library_service.bulk_delete(ids, reason="Superseded")
    assert deleted.successful == 2
    assert deleted.failed == 0

    again = await library_service.bulk_delete(ids)
    assert again.successful == 0
    assert again.failed == 2
    assert all("already deleted" in error for error in again.errors)

    restored = await library_service.bulk_restore(ids + [uuid4()])
    assert restored.successful == 2
    assert restored.failed == 1
    for item_id in ids:
        assert not (await library_service.get_library_item(item_id)).is_deleted


@pytest.mark.asyncio
async def test_empty_bulk_is_a_no_op(library_service):
    result = await library_service.bulk_delete([])

    assert result.successful == 0
    assert result.failed == 0
    assert result.errors == []


@pytest.mark.asyncio
async def test_batch_clone(make_item, library_service):
    source = await make_item(name="Source")

    result = await library_service.batch_clone_items(
        [
            CloneRequest(source_id=source.id, new_name="Copy A", new_code="CLONE-A"),
            CloneRequest(source_id=uuid4(), new_name="Orphan", new_code="CLONE-X"),
            CloneRequest(source_id=source.id, new_name="Copy B"),
        ]
    )

    assert result.successful == 2
    assert result.failed == 1
    assert result.errors[0].startswith("Clone ")
    assert "→ CLONE-X" in result.errors[0]
