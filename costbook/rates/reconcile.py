"""Pure rate-set reconciliation: validation, comparison and import merge.

Nothing here touches the database; catalogue rates and item names are passed
in by the caller.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence

from costbook.config import RatesConfig
from costbook.models import (
    ALL_CATEGORIES,
    ChangesSummary,
    ComparisonAction,
    ConflictResolution,
    RateCategory,
    RateComparison,
    RateImportResult,
    RateIssue,
    RateSet,
    RateValidationResult,
)

CatalogRates = Mapping[RateCategory, Mapping[str, float]]


def validate_rate_set(
    rates: RateSet,
    catalog_rates: CatalogRates | None = None,
    config: RatesConfig | None = None,
) -> RateValidationResult:
    """Reject negative rates; warn on very high rates or large catalogue deviation."""
    config = config or RatesConfig()
    catalog_rates = catalog_rates or {}
    errors: list[RateIssue] = []
    warnings: list[RateIssue] = []

    for category in ALL_CATEGORIES:
        reference = catalog_rates.get(category, {})
        for item_code, rate in rates.for_category(category).items():
            if rate < 0:
                errors.append(
                    RateIssue(
                        item_code=item_code,
                        category=category,
                        message="Rate cannot be negative",
                        suggested_rate=0,
                    )
                )

            if rate > config.max_rate:
                warnings.append(
                    RateIssue(
                        item_code=item_code,
                        category=category,
                        message="Rate seems unusually high, please verify",
                    )
                )

            catalog_rate = reference.get(item_code)
            if catalog_rate and abs(rate - catalog_rate) > catalog_rate * config.catalog_variance_multiplier:
                warnings.append(
                    RateIssue(
                        item_code=item_code,
                        category=category,
                        message=f"Rate varies significantly from catalog rate ({catalog_rate})",
                    )
                )

    return RateValidationResult(is_valid=not errors, errors=errors, warnings=warnings)


def compare_rate_sets(
    source: RateSet,
    target: RateSet,
    item_names: Mapping[RateCategory, Mapping[str, str]] | None = None,
) -> list[RateComparison]:
    """Compare every (code, category) pair present in either rate set.

    Missing rates count as 0 for ``difference``. ``add`` means only the target
    has the code, ``remove`` means only the source has it.
    """
    item_names = item_names or {}
    all_codes = set()
    for category in ALL_CATEGORIES:
        all_codes.update(source.for_category(category))
        all_codes.update(target.for_category(category))

    comparisons = []
    for item_code in sorted(all_codes):
        for category in ALL_CATEGORIES:
            source_items = source.for_category(category)
            target_items = target.for_category(category)
            in_source = item_code in source_items
            in_target = item_code in target_items
            if not (in_source or in_target):
                continue

            source_rate = source_items.get(item_code, 0.0)
            target_rate = target_items.get(item_code, 0.0)
            difference = target_rate - source_rate
            percentage_change = (difference / source_rate) * 100 if source_rate > 0 else 0.0

            if not in_source:
                action = ComparisonAction.ADD
            elif not in_target:
                action = ComparisonAction.REMOVE
            elif source_rate == target_rate:
                action = ComparisonAction.UNCHANGED
            else:
                action = ComparisonAction.UPDATE

            comparisons.append(
                RateComparison(
                    item_code=item_code,
                    item_name=item_names.get(category, {}).get(item_code, item_code),
                    category=category,
                    source_rate=source_rate,
                    target_rate=target_rate,
                    difference=difference,
                    percentage_change=percentage_change,
                    action=action,
                )
            )

    return comparisons


def merge_rate_sets(
    source: RateSet,
    target: RateSet,
    categories: Sequence[RateCategory],
    conflict_resolution: ConflictResolution,
) -> tuple[RateSet, RateImportResult]:
    """Fold ``source`` into a copy of ``target``.

    Returns the merged rate set and the tally. ``target`` is not modified.
    """
    merged = RateSet(
        materials=dict(target.materials),
        labour=dict(target.labour),
        equipment=dict(target.equipment),
    )
    result = RateImportResult()

    for category in categories:
        category = RateCategory(category)
        merged_items = merged.for_category(category)

        for item_code, rate in source.for_category(category).items():
            has_existing = item_code in merged_items

            if conflict_resolution == ConflictResolution.SKIP and has_existing:
                result.skipped += 1
                continue
            if conflict_resolution == ConflictResolution.MERGE and has_existing:
                existing = merged_items[item_code]
                if existing != rate:
                    result.warnings.append(
                        f"{category.value}:{item_code} - keeping existing rate {existing} instead of {rate}"
                    )
                    result.skipped += 1
                    continue

            merged_items[item_code] = rate
            result.imported += 1
            result.details[category.value] += 1

    return merged, result


def count_changes(previous: RateSet | None, current: RateSet) -> ChangesSummary:
    """Per-category count of codes added, removed or repriced since ``previous``."""
    counts = {}
    for category in ALL_CATEGORIES:
        now = current.for_category(category)
        before = previous.for_category(category) if previous is not None else {}
        changed = {code for code in now if code not in before or before[code] != now[code]}
        changed.update(code for code in before if code not in now)
        counts[category.value] = len(changed)

    return ChangesSummary(
        materials_changed=counts["materials"],
        labour_changed=counts["labour"],
        equipment_changed=counts["equipment"],
        total_changes=sum(counts.values()),
    )
