"""Project rate overrides and cross-project reconciliation."""

from costbook.rates.reconcile import (
    compare_rate_sets,
    count_changes,
    merge_rate_sets,
    validate_rate_set,
)
from costbook.rates.service import ProjectRatesService

__all__ = [
    "ProjectRatesService",
    "compare_rate_sets",
    "count_changes",
    "merge_rate_sets",
    "validate_rate_set",
]
