"""Background job wrappers.

Each run invokes a remote function and records a ``background_job_logs`` row.
Runs never raise: failures come back as ``JobResult(success=False)``.
Scheduling is left to an external caller (cron, the CLI).
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from datetime import timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

import httpx
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from costbook.config import AppConfig, get_config
from costbook.db.models import (
    BackgroundJobLogModel,
    EstimateElementItemModel,
    ProjectModel,
    utcnow,
)
from costbook.jobs.client import FunctionsClient
from costbook.models import (
    JobHistoryEntry,
    JobNameSummary,
    JobResult,
    JobStatus,
    JobSummary,
)

logger = logging.getLogger(__name__)

POPULARITY_FUNCTION = "aggregate-library-popularity"
SNAPSHOT_FUNCTION = "capture-price-snapshot"
COMPLEX_FACTORS_FUNCTION = "calculate-complex-factors"


class BackgroundJobService:
    """Run remote jobs and keep their execution log."""

    def __init__(
        self,
        session: AsyncSession,
        client: FunctionsClient | None = None,
        config: AppConfig | None = None,
    ):
        self.session = session
        self.client = client
        self.config = config or get_config()

    async def run_popularity_aggregation(self) -> JobResult:
        return await self._run("popularity-aggregation", POPULARITY_FUNCTION)

    async def capture_price_snapshot(
        self, project_id: str, include_all_items: bool = False
    ) -> JobResult:
        return await self._run(
            "price-snapshot",
            SNAPSHOT_FUNCTION,
            body={"projectId": project_id, "includeAllItems": include_all_items},
            metadata={"project_id": project_id},
        )

    async def run_price_snapshots(self) -> JobResult:
        """Capture a price snapshot for every active project, one at a time.

        ``success`` is True only if every project succeeded.
        """
        started = time.perf_counter()
        executed_at = utcnow()
        log_row = await self._start_log("price-snapshots")

        try:
            async with self.session.begin_nested():
                projects = (
                    await self.session.execute(
                        select(ProjectModel.id, ProjectModel.name)
                        .where(ProjectModel.is_active.is_(True))
                        .order_by(ProjectModel.id)
                    )
                ).all()
        except SQLAlchemyError as exc:
            logger.error("Price snapshots job could not load projects: %s", exc)
            duration_ms = _elapsed_ms(started)
            await self._finish_log(log_row, JobStatus.FAILED, duration_ms, str(exc))
            return JobResult(
                success=False, error=str(exc), executed_at=executed_at, duration_ms=duration_ms
            )

        results = []
        successful = 0
        failed = 0
        for project_id, project_name in projects:
            result = await self.capture_price_snapshot(project_id)
            if result.success:
                successful += 1
            else:
                failed += 1
            results.append(
                {
                    "project_id": project_id,
                    "project_name": project_name,
                    "success": result.success,
                    "error": result.error,
                }
            )

        duration_ms = _elapsed_ms(started)
        data = {
            "processed": len(projects),
            "successful": successful,
            "failed": failed,
            "results": results,
        }
        await self._finish_log(
            log_row,
            JobStatus.COMPLETED if failed == 0 else JobStatus.FAILED,
            duration_ms,
            f"{failed} project snapshot(s) failed" if failed else None,
            metadata={"processed": len(projects), "successful": successful, "failed": failed},
        )
        logger.info(
            "Price snapshots completed in %.0fms: %d successful, %d failed",
            duration_ms,
            successful,
            failed,
        )
        return JobResult(
            success=failed == 0, data=data, executed_at=executed_at, duration_ms=duration_ms
        )

    async def calculate_complex_factors(
        self,
        library_item_ids: Sequence[UUID | str],
        project_id: str,
        options: dict[str, Any] | None = None,
    ) -> JobResult:
        """Ask the remote calculator for indirect costs, overheads, contingency, etc.

        Recognised options include include_indirect_costs, overhead_percentage,
        contingency_percentage, bulk_discount_percentage and
        location_adjustment_factor; they are passed through untouched.
        """
        item_ids = [str(item_id) for item_id in library_item_ids]
        return await self._run(
            "complex-factors",
            COMPLEX_FACTORS_FUNCTION,
            body={"libraryItemIds": item_ids, "projectId": project_id, "options": options or {}},
            metadata={"project_id": project_id, "item_count": len(item_ids)},
        )

    async def get_job_history(
        self, job_name: str | None = None, limit: int = 50
    ) -> list[JobHistoryEntry]:
        stmt = select(BackgroundJobLogModel)
        if job_name:
            stmt = stmt.where(BackgroundJobLogModel.job_name == job_name)
        stmt = stmt.order_by(BackgroundJobLogModel.started_at.desc()).limit(limit)
        rows = (await self.session.execute(stmt)).scalars().all()
        return [JobHistoryEntry.model_validate(row) for row in rows]

    async def get_job_summary(self, days_back: int = 7) -> JobSummary:
        """Totals, success rate and average duration over the last ``days_back`` days."""
        since = utcnow() - timedelta(days=days_back)
        rows = (
            await self.session.execute(
                select(BackgroundJobLogModel).where(BackgroundJobLogModel.started_at >= since)
            )
        ).scalars().all()

        summary = JobSummary()
        durations = []
        for row in rows:
            per_job = summary.by_job_name.setdefault(row.job_name, JobNameSummary())
            per_job.total += 1
            summary.total_jobs += 1
            if row.status == JobStatus.COMPLETED.value:
                summary.successful_jobs += 1
                per_job.successful += 1
            elif row.status == JobStatus.FAILED.value:
                summary.failed_jobs += 1
                per_job.failed += 1
            else:
                summary.running_jobs += 1
            if row.duration_ms is not None:
                durations.append(row.duration_ms)

        finished = summary.successful_jobs + summary.failed_jobs
        if finished:
            summary.success_rate = round(summary.successful_jobs / finished * 100, 2)
        if durations:
            summary.avg_duration_seconds = round(sum(durations) / len(durations) / 1000, 3)
        return summary

    async def cleanup_old_logs(self, retention_days: int | None = None) -> int:
        """Delete job log rows older than the retention period. Returns rows removed."""
        days = retention_days if retention_days is not None else self.config.jobs.log_retention_days
        cutoff = utcnow() - timedelta(days=days)
        result = await self.session.execute(
            delete(BackgroundJobLogModel).where(BackgroundJobLogModel.started_at < cutoff)
        )
        logger.info("Removed %d job log rows older than %d days", result.rowcount, days)
        return result.rowcount

    async def track_library_item_usage(
        self,
        library_item_id: UUID,
        project_id: str,
        element_id: str | None = None,
        quantity: Decimal | float = 1,
    ) -> None:
        """Record that an item was used in an estimate (feeds item statistics)."""
        self.session.add(
            EstimateElementItemModel(
                element_id=element_id or "",
                library_item_id=library_item_id,
                project_id=project_id,
                quantity=Decimal(str(quantity)),
                quick_add=False,
            )
        )
        await self.session.flush()

    async def _run(
        self,
        job_name: str,
        function_name: str,
        body: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> JobResult:
        started = time.perf_counter()
        executed_at = utcnow()
        log_row = await self._start_log(job_name, metadata)

        try:
            if self.client is None:
                raise ValueError("Functions client is not configured")
            data = await self.client.invoke(function_name, body)
        except (httpx.HTTPError, ValueError) as exc:
            duration_ms = _elapsed_ms(started)
            error = str(exc) or exc.__class__.__name__
            logger.error("Job %s failed after %.0fms: %s", job_name, duration_ms, error)
            await self._finish_log(log_row, JobStatus.FAILED, duration_ms, error)
            return JobResult(
                success=False, error=error, executed_at=executed_at, duration_ms=duration_ms
            )

        duration_ms = _elapsed_ms(started)
        logger.info("Job %s completed in %.0fms", job_name, duration_ms)
        await self._finish_log(log_row, JobStatus.COMPLETED, duration_ms)
        return JobResult(
            success=True, data=data, executed_at=executed_at, duration_ms=duration_ms
        )

    async def _start_log(
        self, job_name: str, metadata: dict[str, Any] | None = None
    ) -> BackgroundJobLogModel:
        row = BackgroundJobLogModel(
            job_name=job_name,
            status=JobStatus.RUNNING.value,
            started_at=utcnow(),
            job_metadata=metadata,
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def _finish_log(
        self,
        row: BackgroundJobLogModel,
        status: JobStatus,
        duration_ms: float,
        error_message: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        row.status = status.value
        row.completed_at = utcnow()
        row.duration_ms = duration_ms
        row.error_message = error_message
        if metadata:
            row.job_metadata = {**(row.job_metadata or {}), **metadata}
        await self.session.flush()


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000
