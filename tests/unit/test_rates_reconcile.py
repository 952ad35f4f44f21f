"""Tests for rate validation, comparison and import merging."""

from __future__ import annotations

import pytest

from costbook.config import RatesConfig
from costbook.models import (
    ComparisonAction,
    ConflictResolution,
    RateCategory,
    RateSet,
)
from costbook.rates.reconcile import (
    compare_rate_sets,
    count_changes,
    merge_rate_sets,
    validate_rate_set,
)

MATERIALS = RateCategory.MATERIALS
LABOUR = RateCategory.LABOUR


class TestValidateRateSet:
    def test_negative_rate_is_an_error(self):
        result = validate_rate_set(RateSet(materials={"C1": -5.0}))

        assert not result.is_valid
        assert len(result.errors) == 1
        assert result.errors[0].message == "Rate cannot be negative"
        assert result.errors[0].suggested_rate == 0
        assert result.errors[0].category == MATERIALS

    def test_high_rate_is_a_warning(self):
        result = validate_rate_set(
            RateSet(labour={"L1": 1500.0}), config=RatesConfig(max_rate=1000.0)
        )

        assert result.is_valid
        assert [w.message for w in result.warnings] == ["Rate seems unusually high, please verify"]

    def test_catalog_deviation(self):
        catalog = {MATERIALS: {"C1": 10.0, "C2": 10.0}}

        result = validate_rate_set(
            RateSet(materials={"C1": 61.0, "C2": 60.0}), catalog_rates=catalog
        )

        assert result.is_valid
        assert len(result.warnings) == 1
        assert result.warnings[0].item_code == "C1"
        assert result.warnings[0].message == "Rate varies significantly from catalog rate (10.0)"

    def test_zero_catalog_rate_is_ignored(self):
        result = validate_rate_set(
            RateSet(materials={"C1": 500.0}), catalog_rates={MATERIALS: {"C1": 0.0}}
        )

        assert result.warnings == []


class TestCompareRateSets:
    def test_actions_and_percentages(self):
        source = RateSet(materials={"C1": 100.0, "C2": 50.0, "C3": 20.0})
        target = RateSet(materials={"C1": 120.0, "C2": 50.0, "C4": 10.0})

        rows = {row.item_code: row for row in compare_rate_sets(source, target)}

        assert rows["C1"].action == ComparisonAction.UPDATE
        assert rows["C1"].difference == pytest.approx(20.0)
        assert rows["C1"].percentage_change == pytest.approx(20.0)
        assert rows["C2"].action == ComparisonAction.UNCHANGED
        assert rows["C3"].action == ComparisonAction.REMOVE
        assert rows["C3"].target_rate == 0.0
        assert rows["C4"].action == ComparisonAction.ADD
        assert rows["C4"].source_rate == 0.0
        # No percentage against a zero source
        assert rows["C4"].percentage_change == 0.0

    def test_explicit_zero_is_not_absent(self):
        source = RateSet(labour={"L1": 0.0})
        target = RateSet(labour={"L1": 0.0})

        [row] = compare_rate_sets(source, target)

        assert row.action == ComparisonAction.UNCHANGED

    def test_code_in_several_categories(self):
        source = RateSet(materials={"X": 1.0}, equipment={"X": 2.0})
        target = RateSet(materials={"X": 1.0})

        rows = compare_rate_sets(source, target)

        assert [(row.category, row.action) for row in rows] == [
            (RateCategory.MATERIALS, ComparisonAction.UNCHANGED),
            (RateCategory.EQUIPMENT, ComparisonAction.REMOVE),
        ]

    def test_item_names(self):
        source = RateSet(materials={"C1": 1.0, "C9": 1.0})

        rows = compare_rate_sets(source, RateSet(), {MATERIALS: {"C1": "Concrete"}})

        assert [row.item_name for row in rows] == ["Concrete", "C9"]


class TestMergeRateSets:
    source = RateSet(materials={"C1": 120.0, "C2": 50.0}, labour={"L1": 30.0})
    target = RateSet(materials={"C1": 100.0})

    def test_overwrite(self):
        merged, result = merge_rate_sets(
            self.source, self.target, [MATERIALS, LABOUR], ConflictResolution.OVERWRITE
        )

        assert merged.materials == {"C1": 120.0, "C2": 50.0}
        assert merged.labour == {"L1": 30.0}
        assert result.imported == 3
        assert result.skipped == 0
        assert result.details == {"materials": 2, "labour": 1, "equipment": 0}

    def test_skip_keeps_existing(self):
        merged, result = merge_rate_sets(
            self.source, self.target, [MATERIALS], ConflictResolution.SKIP
        )

        assert merged.materials == {"C1": 100.0, "C2": 50.0}
        assert merged.labour == {}
        assert result.imported == 1
        assert result.skipped == 1
        assert result.warnings == []

    def test_merge_warns_about_kept_rate(self):
        merged, result = merge_rate_sets(
            self.source, self.target, [MATERIALS], ConflictResolution.MERGE
        )

        assert merged.materials == {"C1": 100.0, "C2": 50.0}
        assert result.skipped == 1
        assert result.warnings == ["materials:C1 - keeping existing rate 100.0 instead of 120.0"]

    def test_merge_imports_equal_values(self):
        _, result = merge_rate_sets(
            RateSet(materials={"C1": 100.0}),
            self.target,
            [MATERIALS],
            ConflictResolution.MERGE,
        )

        assert result.imported == 1
        assert result.skipped == 0

    def test_target_is_not_modified(self):
        merge_rate_sets(self.source, self.target, [MATERIALS], ConflictResolution.OVERWRITE)

        assert self.target.materials == {"C1": 100.0}


def test_count_changes():
    previous = RateSet(materials={"C1": 1.0, "C2": 2.0}, labour={"L1": 5.0})
    current = RateSet(materials={"C1": 1.5, "C3": 3.0}, labour={"L1": 5.0})

    summary = count_changes(previous, current)

    assert summary.materials_changed == 3
    assert summary.labour_changed == 0
    assert summary.total_changes == 3


def test_count_changes_from_nothing():
    summary = count_changes(None, RateSet(equipment={"E1": 1.0, "E2": 2.0}))

    assert summary.equipment_changed == 2
    assert summary.total_changes == 2
