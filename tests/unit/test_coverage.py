"""Unit tests for the coverage gate."""

import copy
import random

import pytest

from feature_orchestrator.coverage import (
    GAP_MISSING_E2E,
    GAP_MISSING_TEST,
    CoverageGate,
    classify_gaps,
    evaluate,
)
from feature_orchestrator.errors import InvalidInput
from feature_orchestrator.orchestrator_logging import observability_hooks


class TestGateDecisions:
    """Test cases for pass/fail decisions."""

    def test_full_coverage_passes(self, sample_checklist, full_coverage):
        """Test that complete coverage passes."""
        result = evaluate(sample_checklist, full_coverage)
        assert result.status == "pass"
        assert result.passed
        assert result.missing == []
        assert result.e2e_missing == []

    def test_missing_item_fails(self, sample_checklist, full_coverage):
        """Four of five items tested with AC5 absent fails with missing=[AC5]."""
        coverage = copy.deepcopy(full_coverage)
        del coverage["per_item"]["AC5"]
        coverage["items_with_tests"] = 4

        result = evaluate(sample_checklist, coverage)
        assert result.status == "fail"
        assert result.missing == ["AC5"]
        assert "AC5" in result.reason

    def test_item_keys_match_like_tags(self, sample_checklist, full_coverage):
        """Test that per-item keys ignore case and a leading @, as tag matching does."""
        coverage = copy.deepcopy(full_coverage)
        per_item = coverage["per_item"]
        per_item["ac1"] = per_item.pop("AC1")
        per_item["@AC2"] = per_item.pop("AC2")
        per_item[" Ac5 "] = per_item.pop("AC5")

        result = evaluate(sample_checklist, coverage)
        assert result.status == "pass"
        assert result.missing == []
        assert result.e2e_missing == []

    def test_exact_key_wins_over_normalized(self, sample_checklist, full_coverage):
        """Test that an exact id match is preferred to a case-folded one."""
        coverage = copy.deepcopy(full_coverage)
        coverage["per_item"]["ac2"] = {"tests": []}

        assert evaluate(sample_checklist, coverage).passed

    def test_blockers_fail(self, sample_checklist, full_coverage):
        """Test that any blocker fails the gate."""
        coverage = copy.deepcopy(full_coverage)
        coverage["blockers"] = ["Test DB unavailable"]
        result = evaluate(sample_checklist, coverage)
        assert result.status == "fail"
        assert result.blockers == ["Test DB unavailable"]
        assert "Test DB unavailable" in result.reason

    def test_count_mismatch_fails(self, sample_checklist, full_coverage):
        """Test that inconsistent declared counts fail even with full per-item coverage."""
        coverage = copy.deepcopy(full_coverage)
        coverage["items_with_tests"] = 4
        result = evaluate(sample_checklist, coverage)
        assert result.status == "fail"
        assert result.missing == []
        assert "4 of 5" in result.reason

    def test_e2e_item_without_e2e_test_fails(self, sample_checklist, full_coverage):
        """Test that E2E-hinted items need an E2E test."""
        coverage = copy.deepcopy(full_coverage)
        coverage["per_item"]["AC2"] = {"tests": [{"test_id": "submit unit", "test_type": "unit"}]}
        result = evaluate(sample_checklist, coverage)
        assert result.status == "fail"
        assert result.e2e_missing == ["AC2"]
        assert result.missing == []

    def test_e2e_tag_forms(self, sample_checklist, full_coverage):
        """Test that 'e2e' and '@E2E' tags both count."""
        coverage = copy.deepcopy(full_coverage)
        coverage["per_item"]["AC2"] = {"tests": [{"test_id": "a", "tags": ["E2E"]}]}
        coverage["per_item"]["AC5"] = {"tests": [{"test_id": "b", "tags": ["@E2E"]}]}
        assert evaluate(sample_checklist, coverage).passed

    def test_skipped_only_counts_as_untested(self, sample_checklist, full_coverage):
        """Test that a skipped entry does not count as coverage."""
        coverage = copy.deepcopy(full_coverage)
        coverage["per_item"]["AC3"]["status"] = "skipped"
        result = evaluate(sample_checklist, coverage)
        assert result.missing == ["AC3"]
        assert result.status == "fail"

    def test_missing_in_checklist_order(self, sample_checklist):
        """Test that missing ids follow checklist order."""
        coverage = {"per_item": {"AC3": {"tests": ["x"]}}, "total_items": 5, "items_with_tests": 1}
        result = evaluate(sample_checklist, coverage)
        assert result.missing == ["AC1", "AC2", "AC4", "AC5"]

    def test_wrapped_checklist(self, sample_checklist, full_coverage):
        """Test the original {"checklist": [...]} shape."""
        assert evaluate({"checklist": sample_checklist}, full_coverage).passed

    def test_gate_event_emitted(self, sample_checklist, full_coverage):
        """Test that gate decisions are observable."""
        events = []
        observability_hooks.register_hook("coverage_gate_evaluated", lambda **data: events.append(data))
        CoverageGate("feat-x").evaluate(sample_checklist, full_coverage)
        assert events[0]["status"] == "pass"
        assert events[0]["feature_id"] == "feat-x"


class TestMalformedInput:
    """Test cases for malformed gate input."""

    def test_missing_total_items(self, sample_checklist):
        """Test that total_items is required."""
        with pytest.raises(InvalidInput):
            evaluate(sample_checklist, {"per_item": {}, "items_with_tests": 0})

    def test_tests_not_a_list(self, sample_checklist):
        """Test that tests must be a list."""
        coverage = {"per_item": {"AC1": {"tests": 3}}, "total_items": 5, "items_with_tests": 1}
        with pytest.raises(InvalidInput):
            evaluate(sample_checklist, coverage)

    def test_bad_checklist(self, full_coverage):
        """Test that a malformed checklist is rejected."""
        with pytest.raises(InvalidInput):
            evaluate("AC1, AC2", full_coverage)


class TestGapClassification:
    """Test cases for the advisory gap classifier."""

    def test_classify_gaps(self, sample_checklist, full_coverage):
        """Test missing test and missing E2E causes."""
        coverage = copy.deepcopy(full_coverage)
        del coverage["per_item"]["AC1"]
        coverage["per_item"]["AC5"] = {"tests": ["confirmation unit"]}
        coverage["items_with_tests"] = 4

        result = evaluate(sample_checklist, coverage)
        assert classify_gaps(result, sample_checklist) == {
            "AC1": GAP_MISSING_TEST,
            "AC5": GAP_MISSING_E2E,
        }

    def test_no_gaps_when_passing(self, sample_checklist, full_coverage):
        """Test that a passing gate has no gaps."""
        assert classify_gaps(evaluate(sample_checklist, full_coverage)) == {}


def _random_case(rng):
    """Build a random checklist and a self-consistent coverage record."""
    size = rng.randint(1, 12)
    checklist = []
    per_item = {}
    for index in range(size):
        item_id = f"AC{index + 1}"
        hints = rng.sample(["E2E", "unit", "integration"], rng.randint(0, 2))
        checklist.append({"id": item_id, "verification_hint": hints})
        roll = rng.random()
        if roll < 0.2:
            continue
        tests = []
        for test_index in range(rng.randint(0, 3)):
            test = {"test_id": f"{item_id}-t{test_index}"}
            if rng.random() < 0.4:
                test["test_type"] = "e2e"
            elif rng.random() < 0.3:
                test["tags"] = [rng.choice(["@e2e", "E2E", "@smoke"])]
            tests.append(test)
        entry = {"tests": tests}
        if tests and rng.random() < 0.1:
            entry["status"] = "skipped"
        per_item[item_id] = entry

    tested = sum(1 for entry in per_item.values() if entry["tests"] and entry.get("status") != "skipped")
    blockers = ["env down"] if rng.random() < 0.1 else []
    coverage = {"per_item": per_item, "total_items": size, "items_with_tests": tested, "blockers": blockers}
    return checklist, coverage


def _has_e2e(test):
    if (test.get("test_type") or "").lower() == "e2e":
        return True
    return any(tag.lstrip("@").lower() == "e2e" for tag in test.get("tags", []))


class TestGateProperties:
    """Randomized checks of the gate's invariants."""

    @pytest.mark.parametrize("seed", range(200))
    def test_pass_iff_conditions(self, seed):
        """Gate passes exactly when counts agree, no blockers and all E2E items have E2E tests."""
        rng = random.Random(seed)
        checklist, coverage = _random_case(rng)
        result = evaluate(checklist, coverage)

        e2e_ok = all(
            any(_has_e2e(test) for test in coverage["per_item"].get(item["id"], {}).get("tests", []))
            for item in checklist
            if "E2E" in item["verification_hint"]
        )
        expected = (
            coverage["items_with_tests"] == coverage["total_items"]
            and not coverage["blockers"]
            and e2e_ok
        )
        assert result.passed == expected

    @pytest.mark.parametrize("seed", range(200))
    def test_missing_is_exactly_untested_items(self, seed):
        """``missing`` lists exactly the items without usable tests, in checklist order."""
        rng = random.Random(seed)
        checklist, coverage = _random_case(rng)
        result = evaluate(checklist, coverage)

        expected = []
        for item in checklist:
            entry = coverage["per_item"].get(item["id"])
            if entry is None or not entry["tests"] or entry.get("status") == "skipped":
                expected.append(item["id"])
        assert result.missing == expected
        assert not set(result.missing) & set(result.e2e_missing)
