"""Project-specific rate overrides.

Rates are stored as an append-only series of rows per project. The "current"
rates are the newest row whose effective date is on or before the query date.
Every change inserts a new row and writes rate audit log entries. Only rows
scheduled for a future effective date may be deleted.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from costbook.config import AppConfig, get_config
from costbook.core.audit_logger import log_rate_change
from costbook.db.models import ProjectRatesModel, utcnow
from costbook.exceptions import (
    NotFoundError,
    PersistenceError,
    RateValidationError,
    RatesInEffectError,
)
from costbook.models import (
    ALL_CATEGORIES,
    BatchRateUpdate,
    EffectiveRate,
    ProjectRates,
    RateCategory,
    RateComparison,
    RateHistoryEntry,
    RateImportOptions,
    RateImportResult,
    RateSet,
    RateSource,
    RateStatistics,
    RateValidationResult,
)
from costbook.rates.catalog import get_catalog_rate, get_catalog_rates, get_item_names
from costbook.rates.reconcile import (
    compare_rate_sets,
    count_changes,
    merge_rate_sets,
    validate_rate_set,
)

logger = logging.getLogger(__name__)


def _to_project_rates(row: ProjectRatesModel) -> ProjectRates:
    return ProjectRates(
        id=row.id,
        project_id=row.project_id,
        materials=row.materials or {},
        labour=row.labour or {},
        equipment=row.equipment or {},
        effective_date=row.effective_date,
        expiry_date=row.expiry_date,
        created_at=row.created_at,
        updated_at=row.updated_at,
        created_by=row.created_by,
    )


def _rate_set(row: ProjectRatesModel) -> RateSet:
    return RateSet(
        materials=row.materials or {},
        labour=row.labour or {},
        equipment=row.equipment or {},
    )


class ProjectRatesService:
    """Read, set, compare and import project rate overrides."""

    def __init__(
        self,
        session: AsyncSession,
        actor: str | None = None,
        config: AppConfig | None = None,
    ):
        self.session = session
        self.config = config or get_config()
        self.actor = actor or self.config.default_actor

    async def get_current_rates(
        self, project_id: str, as_of: datetime | None = None
    ) -> ProjectRates:
        """Newest rates effective on ``as_of`` (default now).

        A project without rates gets an empty snapshot rather than an error.
        """
        query_date = as_of or utcnow()
        stmt = (
            select(ProjectRatesModel)
            .where(
                ProjectRatesModel.project_id == project_id,
                ProjectRatesModel.effective_date <= query_date,
            )
            .order_by(
                ProjectRatesModel.effective_date.desc(),
                ProjectRatesModel.created_at.desc(),
            )
            .limit(1)
        )
        row = (await self.session.execute(stmt)).scalar_one_or_none()
        if row is None:
            return ProjectRates(project_id=project_id, effective_date=query_date)
        return _to_project_rates(row)

    async def validate_rates(self, rates: RateSet) -> RateValidationResult:
        catalog_rates = {
            category: await get_catalog_rates(
                self.session, category, rates.for_category(category).keys()
            )
            for category in ALL_CATEGORIES
        }
        return validate_rate_set(rates, catalog_rates, self.config.rates)

    async def set_project_rates(
        self,
        project_id: str,
        rates: RateSet,
        reason: str | None = None,
        action: str = "create",
    ) -> ProjectRates:
        """Validate and store a complete rate set as a new row.

        Raises:
            RateValidationError: If any rate is negative
            PersistenceError: If the insert fails
        """
        validation = await self.validate_rates(rates)
        if not validation.is_valid:
            raise RateValidationError(validation.errors)
        for warning in validation.warnings:
            logger.warning(
                "Rate warning project=%s %s:%s %s",
                project_id,
                warning.category.value,
                warning.item_code,
                warning.message,
            )

        row = ProjectRatesModel(
            project_id=project_id,
            materials=dict(rates.materials),
            labour=dict(rates.labour),
            equipment=dict(rates.equipment),
            effective_date=rates.effective_date or utcnow(),
            expiry_date=rates.expiry_date,
            created_by=self.actor,
        )
        self.session.add(row)
        try:
            await self.session.flush()
        except SQLAlchemyError as exc:
            raise PersistenceError("Save project rates", exc) from exc

        await log_rate_change(
            self.session,
            project_id,
            action,
            self.actor,
            reason=reason,
            details={
                "rates_id": str(row.id),
                "materials": len(rates.materials),
                "labour": len(rates.labour),
                "equipment": len(rates.equipment),
            },
        )
        return _to_project_rates(row)

    async def update_rate_override(
        self,
        project_id: str,
        category: RateCategory | str,
        item_code: str,
        rate: float,
        reason: str | None = None,
    ) -> ProjectRates:
        """Change one code's rate, carrying every other current rate forward."""
        category = RateCategory(category)
        current = await self.get_current_rates(project_id)
        previous_rate = current.for_category(category).get(item_code)

        updated = RateSet(
            materials=dict(current.materials),
            labour=dict(current.labour),
            equipment=dict(current.equipment),
        )
        updated.for_category(category)[item_code] = rate

        saved = await self.set_project_rates(project_id, updated, reason=reason, action="update")
        await log_rate_change(
            self.session,
            project_id,
            "update",
            self.actor,
            category=category.value,
            item_code=item_code,
            old_value=previous_rate,
            new_value=rate,
            reason=reason,
        )
        return saved

    async def batch_update_rates(self, batch: BatchRateUpdate) -> ProjectRates:
        """Apply many overrides as a single new rate row."""
        current = await self.get_current_rates(batch.project_id)
        updated = RateSet(
            materials=dict(current.materials),
            labour=dict(current.labour),
            equipment=dict(current.equipment),
            effective_date=batch.effective_date,
        )
        previous = {
            (update.category, update.item_code): updated.for_category(update.category).get(
                update.item_code
            )
            for update in batch.updates
        }
        for update in batch.updates:
            updated.for_category(update.category)[update.item_code] = update.rate

        saved = await self.set_project_rates(
            batch.project_id, updated, reason=batch.reason, action="update"
        )
        for update in batch.updates:
            await log_rate_change(
                self.session,
                batch.project_id,
                "update",
                self.actor,
                category=update.category.value,
                item_code=update.item_code,
                old_value=previous[(update.category, update.item_code)],
                new_value=update.rate,
                reason=update.reason or batch.reason,
            )
        return saved

    async def get_rate_history(
        self,
        project_id: str,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        limit: int | None = None,
    ) -> list[RateHistoryEntry]:
        """Rate rows newest first, each with counts of what changed from the row before."""
        stmt = select(ProjectRatesModel).where(ProjectRatesModel.project_id == project_id)
        if start_date is not None:
            stmt = stmt.where(ProjectRatesModel.effective_date >= start_date)
        if end_date is not None:
            stmt = stmt.where(ProjectRatesModel.effective_date <= end_date)
        stmt = stmt.order_by(
            ProjectRatesModel.effective_date.desc(), ProjectRatesModel.created_at.desc()
        )
        if limit:
            stmt = stmt.limit(limit)

        rows = list((await self.session.execute(stmt)).scalars().all())
        if not rows:
            return []

        predecessor = await self._previous_row(rows[-1])
        entries = []
        for index, row in enumerate(rows):
            previous = rows[index + 1] if index + 1 < len(rows) else predecessor
            entries.append(
                RateHistoryEntry(
                    id=row.id,
                    project_id=row.project_id,
                    rates=_rate_set(row),
                    effective_date=row.effective_date,
                    expiry_date=row.expiry_date,
                    created_at=row.created_at,
                    updated_at=row.updated_at,
                    created_by=row.created_by,
                    changes_summary=count_changes(
                        _rate_set(previous) if previous is not None else None, _rate_set(row)
                    ),
                )
            )
        return entries

    async def compare_project_rates(
        self, source_project_id: str, target_project_id: str
    ) -> list[RateComparison]:
        source = await self.get_current_rates(source_project_id)
        target = await self.get_current_rates(target_project_id)

        item_names = {}
        for category in ALL_CATEGORIES:
            codes = set(source.for_category(category)) | set(target.for_category(category))
            item_names[category] = await get_item_names(self.session, category, codes)

        return compare_rate_sets(source, target, item_names)

    async def import_rates_from_project(self, options: RateImportOptions) -> RateImportResult:
        """Copy rates from one project into another.

        The merged map is written as one new row, only when something was
        imported. If that write fails the exception is re-raised with the
        result (``imported`` moved to ``errors``, per-category
        ``details`` zeroed) attached as ``exc.result``.
        """
        source = await self.get_current_rates(options.source_project_id)
        target = await self.get_current_rates(options.target_project_id)

        merged, result = merge_rate_sets(
            source, target, options.categories, options.conflict_resolution
        )
        merged.effective_date = options.effective_date or utcnow()
        merged.expiry_date = None

        if result.imported > 0:
            try:
                async with self.session.begin_nested():
                    await self.set_project_rates(
                        options.target_project_id,
                        merged,
                        reason=f"Imported from project {options.source_project_id}",
                        action="import",
                    )
            except (RateValidationError, PersistenceError) as exc:
                result.errors = result.imported
                result.imported = 0
                result.details = {category: 0 for category in result.details}
                exc.result = result
                logger.error(
                    "Rate import %s -> %s failed: %s",
                    options.source_project_id,
                    options.target_project_id,
                    exc,
                )
                raise

        logger.info(
            "Imported rates %s -> %s: imported=%d skipped=%d",
            options.source_project_id,
            options.target_project_id,
            result.imported,
            result.skipped,
        )
        return result

    async def delete_future_rates(
        self, project_id: str, effective_date: datetime, reason: str | None = None
    ) -> int:
        """Delete rate rows scheduled for ``effective_date`` that are not yet in effect.

        Rows whose effective date has been reached are rate history and stay.

        Returns:
            Number of rows deleted

        Raises:
            RatesInEffectError: If ``effective_date`` is not in the future
            NotFoundError: If the project has no rows for ``effective_date``
            PersistenceError: If the delete fails
        """
        if effective_date <= utcnow():
            raise RatesInEffectError(project_id, effective_date.isoformat())

        rows = (
            await self.session.execute(
                select(ProjectRatesModel).where(
                    ProjectRatesModel.project_id == project_id,
                    ProjectRatesModel.effective_date == effective_date,
                )
            )
        ).scalars().all()
        if not rows:
            raise NotFoundError("Project rates", f"{project_id}@{effective_date.isoformat()}")

        try:
            for row in rows:
                await self.session.delete(row)
            await self.session.flush()
        except SQLAlchemyError as exc:
            raise PersistenceError("Delete project rates", exc) from exc

        await log_rate_change(
            self.session,
            project_id,
            "delete",
            self.actor,
            reason=reason,
            details={
                "rates_ids": [str(row.id) for row in rows],
                "effective_date": effective_date.isoformat(),
            },
        )
        logger.info(
            "Deleted %d scheduled rate row(s) for project %s effective %s",
            len(rows),
            project_id,
            effective_date.isoformat(),
        )
        return len(rows)

    async def get_effective_rate(
        self,
        project_id: str,
        category: RateCategory | str,
        item_code: str,
        as_of: datetime | None = None,
    ) -> EffectiveRate:
        """Project override, else catalogue rate, else 0, tagged with its source."""
        category = RateCategory(category)
        query_date = as_of or utcnow()
        project_rates = (await self.get_current_rates(project_id, query_date)).for_category(category)
        project_rate = project_rates.get(item_code)
        catalog_rate = await get_catalog_rate(self.session, category, item_code)

        if item_code in project_rates:
            rate, source = project_rate, RateSource.PROJECT
        elif catalog_rate is not None:
            rate, source = catalog_rate, RateSource.CATALOG
        else:
            rate, source = 0.0, RateSource.DEFAULT

        return EffectiveRate(
            item_code=item_code,
            category=category,
            rate=rate,
            source=source,
            effective_date=query_date,
            project_rate=project_rate,
            catalog_rate=catalog_rate,
        )

    async def get_rate_statistics(self, project_id: str) -> RateStatistics:
        rates = await self.get_current_rates(project_id)
        history = await self.get_rate_history(project_id, limit=5)

        breakdown = {}
        averages = {}
        for category in ALL_CATEGORIES:
            values = list(rates.for_category(category).values())
            breakdown[category.value] = len(values)
            averages[category.value] = sum(values) / len(values) if values else 0.0

        return RateStatistics(
            project_id=project_id,
            total_rates=rates.total_rates,
            category_breakdown=breakdown,
            average_rates=averages,
            last_updated=rates.effective_date,
            most_recent_changes=history,
        )

    async def _previous_row(self, row: ProjectRatesModel) -> ProjectRatesModel | None:
        stmt = (
            select(ProjectRatesModel)
            .where(
                ProjectRatesModel.project_id == row.project_id,
                ProjectRatesModel.id != row.id,
                or_(
                    ProjectRatesModel.effective_date < row.effective_date,
                    and_(
                        ProjectRatesModel.effective_date == row.effective_date,
                        ProjectRatesModel.created_at < row.created_at,
                    ),
                ),
            )
            .order_by(
                ProjectRatesModel.effective_date.desc(), ProjectRatesModel.created_at.desc()
            )
            .limit(1)
        )
        return (await self.session.execute(stmt)).scalar_one_or_none()
