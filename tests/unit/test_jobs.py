"""Tests for remote job wrappers and the job log."""

from __future__ import annotations

import json
from datetime import timedelta
from uuid import uuid4

import httpx
import pytest
from sqlalchemy import select

from costbook.config import JobsConfig
from costbook.db.models import (
    BackgroundJobLogModel,
    EstimateElementItemModel,
    ProjectModel,
    utcnow,
)
from costbook.jobs import BackgroundJobService, FunctionsClient
from costbook.models import JobStatus


def _client(handler) -> FunctionsClient:
    return FunctionsClient(
        base_url="https://functions.example.com/v1",
        api_key="secret",
        transport=httpx.MockTransport(handler),
    )


async def _log_rows(db_session):
    result = await db_session.execute(
        select(BackgroundJobLogModel).order_by(BackgroundJobLogModel.started_at)
    )
    return result.scalars().all()


class TestFunctionsClient:
    def test_requires_url(self):
        with pytest.raises(ValueError, match="FUNCTIONS_URL"):
            FunctionsClient.from_config(JobsConfig())

    @pytest.mark.asyncio
    async def test_invoke_posts_json_with_bearer(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"ok": True})

        async with _client(handler) as client:
            data = await client.invoke("capture-price-snapshot", {"projectId": "P1"})

        assert data == {"ok": True}
        assert seen["url"] == "https://functions.example.com/v1/capture-price-snapshot"
        assert seen["auth"] == "Bearer secret"
        assert seen["body"] == {"projectId": "P1"}

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        async with _client(lambda request: httpx.Response(500)) as client:
            with pytest.raises(httpx.HTTPStatusError):
                await client.invoke("aggregate-library-popularity")


@pytest.mark.asyncio
async def test_successful_job_is_logged(db_session, app_config):
    service = BackgroundJobService(
        db_session, _client(lambda request: httpx.Response(200, json={"items": 12})), app_config
    )

    result = await service.run_popularity_aggregation()

    assert result.success is True
    assert result.data == {"items": 12}
    assert result.duration_ms is not None

    [row] = await _log_rows(db_session)
    assert row.job_name == "popularity-aggregation"
    assert row.status == "completed"
    assert row.completed_at is not None
    assert row.error_message is None


@pytest.mark.asyncio
async def test_failed_job_returns_result_instead_of_raising(db_session, app_config):
    service = BackgroundJobService(
        db_session, _client(lambda request: httpx.Response(503)), app_config
    )

    result = await service.capture_price_snapshot("P1")

    assert result.success is False
    assert "503" in result.error
    [row] = await _log_rows(db_session)
    assert row.status == "failed"
    assert row.job_metadata == {"project_id": "P1"}


@pytest.mark.asyncio
async def test_missing_client_fails_gracefully(db_session, app_config):
    service = BackgroundJobService(db_session, config=app_config)

    result = await service.run_popularity_aggregation()

    assert result.success is False
    assert result.error == "Functions client is not configured"


@pytest.mark.asyncio
async def test_price_snapshots_for_active_projects(db_session, app_config):
    db_session.add_all(
        [
            ProjectModel(id="P1", name="Tower"),
            ProjectModel(id="P2", name="Bridge"),
            ProjectModel(id="P3", name="Archived", is_active=False),
        ]
    )
    await db_session.flush()

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if body["projectId"] == "P2":
            return httpx.Response(500)
        return httpx.Response(200, json={"snapshot": body["projectId"]})

    service = BackgroundJobService(db_session, _client(handler), app_config)

    result = await service.run_price_snapshots()

    assert result.success is False
    assert result.data["processed"] == 2
    assert result.data["successful"] == 1
    assert result.data["failed"] == 1
    assert [r["project_id"] for r in result.data["results"]] == ["P1", "P2"]

    rows = await _log_rows(db_session)
    names = sorted(row.job_name for row in rows)
    assert names == ["price-snapshot", "price-snapshot", "price-snapshots"]


@pytest.mark.asyncio
async def test_complex_factors_body(db_session, app_config):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(json.loads(request.content))
        return httpx.Response(200, json={"total": 10})

    item_id = uuid4()
    service = BackgroundJobService(db_session, _client(handler), app_config)

    result = await service.calculate_complex_factors(
        [item_id], "P1", {"overhead_percentage": 12}
    )

    assert result.success
    assert seen == {
        "libraryItemIds": [str(item_id)],
        "projectId": "P1",
        "options": {"overhead_percentage": 12},
    }


@pytest.mark.asyncio
async def test_history_and_summary(db_session, app_config):
    now = utcnow()
    db_session.add_all(
        [
            BackgroundJobLogModel(
                job_name="price-snapshots", status="completed", started_at=now, duration_ms=2000
            ),
            BackgroundJobLogModel(
                job_name="price-snapshots", status="failed", started_at=now, duration_ms=1000
            ),
            BackgroundJobLogModel(job_name="popularity-aggregation", status="running", started_at=now),
            BackgroundJobLogModel(
                job_name="popularity-aggregation",
                status="completed",
                started_at=now - timedelta(days=30),
                duration_ms=500,
            ),
        ]
    )
    await db_session.flush()
    service = BackgroundJobService(db_session, config=app_config)

    history = await service.get_job_history("price-snapshots")
    assert len(history) == 2
    assert {entry.status for entry in history} == {JobStatus.COMPLETED, JobStatus.FAILED}

    summary = await service.get_job_summary(days_back=7)
    assert summary.total_jobs == 3
    assert summary.successful_jobs == 1
    assert summary.failed_jobs == 1
    assert summary.running_jobs == 1
    assert summary.success_rate == 50.0
    assert summary.avg_duration_seconds == 1.5
    assert summary.by_job_name["price-snapshots"].total == 2


@pytest.mark.asyncio
async def test_cleanup_old_logs(db_session, app_config):
    now = utcnow()
    db_session.add_all(
        [
            BackgroundJobLogModel(job_name="old", status="completed", started_at=now - timedelta(days=45)),
            BackgroundJobLogModel(job_name="new", status="completed", started_at=now),
        ]
    )
    await db_session.flush()
    service = BackgroundJobService(db_session, config=app_config)

    removed = await service.cleanup_old_logs()

    assert removed == 1
    assert [row.job_name for row in await _log_rows(db_session)] == ["new"]


@pytest.mark.asyncio
async def test_track_usage_feeds_statistics(make_item, library_service, db_session, app_config):
    item = await make_item()
    service = BackgroundJobService(db_session, config=app_config)

    await service.track_library_item_usage(item.id, "P1", "element-9", quantity=3)

    link = (await db_session.execute(select(EstimateElementItemModel))).scalar_one()
    assert link.quantity == 3
    assert link.quick_add is False
    stats = await library_service.get_item_statistics(item.id)
    assert stats.usage_count == 1
