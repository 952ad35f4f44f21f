"""Rate audit trail writer."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from costbook.db.models import RateAuditLogModel

logger = logging.getLogger(__name__)


async def log_rate_change(
    session: AsyncSession,
    project_id: str,
    action: str,
    actor: str,
    category: str | None = None,
    item_code: str | None = None,
    old_value: float | None = None,
    new_value: float | None = None,
    reason: str | None = None,
    details: dict[str, Any] | None = None,
) -> RateAuditLogModel:
    """Record a rate change in the audit trail.

    Args:
        session: Session the entry joins. The caller owns the commit.
        project_id: Project whose rates changed
        action: "create", "update", "import" or "delete"
        actor: User or process making the change
        category: materials / labour / equipment (None for whole-set changes)
        item_code: Affected item code (None for whole-set changes)
        old_value: Previous rate, if any
        new_value: New rate, if any
        reason: Free-text reason supplied by the caller
        details: Additional structured details
    """
    entry = RateAuditLogModel(
        project_id=project_id,
        action=action,
        category=category,
        item_code=item_code,
        old_value=old_value,
        new_value=new_value,
        reason=reason,
        user_id=actor,
        details=details,
    )

    session.add(entry)

    logger.info(
        "rate %s project=%s category=%s code=%s %s -> %s",
        action,
        project_id,
        category,
        item_code,
        old_value,
        new_value,
    )
    return entry
