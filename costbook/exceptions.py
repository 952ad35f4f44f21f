"""Typed exceptions raised by the costbook services.

    CostbookError (base)
    |
    +-- ValidationError          item failed confirmation checks
    +-- InvalidTransitionError   status guard failed
    +-- NotFoundError            item/version/assembly absent
    +-- AssemblyResolutionError  quick-add could not resolve an assembly
    +-- ConflictError            expected_version did not match
    +-- PersistenceError         store call failed
    +-- RateValidationError      rate set rejected
    +-- RatesInEffectError       rate row already effective, cannot be deleted

Every class carries a machine-readable ``code`` so callers (CLI, API layers)
can branch on type rather than on message text.
"""

from __future__ import annotations

from typing import Any


class CostbookError(Exception):
    """Base exception for all costbook errors."""

    code: str = "COSTBOOK_ERROR"


class ValidationError(CostbookError):
    """Library item failed validation. Lists every violated rule."""

    code: str = "VALIDATION_FAILED"

    def __init__(self, errors: list[str], warnings: list[str] | None = None):
        self.errors = list(errors)
        self.warnings = list(warnings or [])
        super().__init__(f"Item validation failed: {', '.join(self.errors)}")


class InvalidTransitionError(CostbookError):
    """Requested status change is not allowed from the current state."""

    code: str = "INVALID_TRANSITION"

    def __init__(self, item_id: Any, from_status: str, to_status: str, reason: str):
        self.item_id = item_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(reason)


class NotFoundError(CostbookError):
    """Referenced entity does not exist."""

    code: str = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: Any):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")


class AssemblyResolutionError(CostbookError):
    code: str = "ASSEMBLY_UNRESOLVED"

    def __init__(self, message: str = "Could not determine assembly for quick add item"):
        super().__init__(message)


class ConflictError(CostbookError):
    """Item was modified by someone else since it was read."""

    code: str = "VERSION_CONFLICT"

    def __init__(self, item_id: Any, expected_version: int, actual_version: int):
        self.item_id = item_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Version conflict on item {item_id}: "
            f"expected {expected_version}, found {actual_version}"
        )


class PersistenceError(CostbookError):
    """Underlying store call failed. The original error is kept on ``cause``."""

    code: str = "PERSISTENCE_FAILED"

    def __init__(self, operation: str, cause: BaseException):
        self.operation = operation
        self.cause = cause
        # Set by rate import when the write fails after tallying
        self.result: Any = None
        super().__init__(f"{operation} failed: {cause}")


class RateValidationError(CostbookError):
    """Rate set contains values that cannot be stored (e.g. negative rates)."""

    code: str = "RATE_VALIDATION_FAILED"

    def __init__(self, errors: list[Any]):
        self.errors = list(errors)
        self.result: Any = None
        messages = ", ".join(
            f"{getattr(e.category, 'value', e.category)}:{e.item_code} {e.message}"
            for e in self.errors
        )
        super().__init__(f"Rate validation failed: {messages}")


class RatesInEffectError(CostbookError):
    """Rates that are already effective are history and cannot be deleted."""

    code: str = "RATES_IN_EFFECT"

    def __init__(self, project_id: str, effective_date: Any):
        self.project_id = project_id
        self.effective_date = effective_date
        super().__init__(
            f"Rates for project {project_id} effective {effective_date} are already "
            "in effect and cannot be deleted"
        )
