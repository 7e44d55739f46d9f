"""Test result correlator.

Maps executed test outcomes back onto checklist items through their tags and
classifies each failure with an ordered, pluggable rule table.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .models import (
    ChecklistItem,
    CorrelationResult,
    FailureCategory,
    FailureRecord,
    ItemResult,
    ItemStatus,
    OutcomeStatus,
    TestOutcome,
    normalize_tag,
    parse_checklist,
    parse_outcomes,
)
from .orchestrator_logging import observability_hooks

logger = logging.getLogger("feature_orchestrator.correlator")


@dataclass(frozen=True)
class FailureRule:
    """Assigns ``category`` when any pattern occurs in the error text."""

    category: str
    patterns: Tuple[str, ...]

    def matches(self, error_text: str) -> bool:
        lowered = error_text.lower()
        return any(pattern.lower() in lowered for pattern in self.patterns)


DEFAULT_FAILURE_RULES: Tuple[FailureRule, ...] = (
    FailureRule(FailureCategory.FRONTEND.value, ("timeout", "selector")),
    FailureRule(FailureCategory.BACKEND.value, ("api", "fetch", "network")),
    FailureRule(FailureCategory.ASSERTION.value, ("expect",)),
)

SUGGESTED_FIXES: Dict[str, str] = {
    FailureCategory.FRONTEND.value: (
        "Element not found or not ready. Check that the component renders and the selector is accurate."
    ),
    FailureCategory.BACKEND.value: (
        "API call failed. Check that the backend endpoint is working and returns the expected data."
    ),
    FailureCategory.ASSERTION.value: (
        "Assertion failed. Check whether the actual behavior matches the expected behavior."
    ),
    FailureCategory.UNKNOWN.value: "Unknown error. Review the error message and stack trace for details.",
}


def suggest_fix(category: Optional[str]) -> str:
    """Canned remediation hint for a failure category."""
    return SUGGESTED_FIXES.get(category or "", SUGGESTED_FIXES[FailureCategory.UNKNOWN.value])


class FailureClassifier:
    """Ordered rule table: the first matching rule wins, otherwise ``unknown``."""

    def __init__(self, rules: Optional[Sequence[FailureRule]] = None):
        self.rules: Tuple[FailureRule, ...] = tuple(rules) if rules is not None else DEFAULT_FAILURE_RULES

    @classmethod
    def with_extra_rules(cls, extra: Iterable[FailureRule | Tuple[str, Sequence[str]]]) -> "FailureClassifier":
        """Classifier whose ``extra`` rules are tried before the defaults."""
        rules: List[FailureRule] = []
        for rule in extra:
            if not isinstance(rule, FailureRule):
                category, patterns = rule
                rule = FailureRule(category, tuple(patterns))
            rules.append(rule)
        rules.extend(DEFAULT_FAILURE_RULES)
        return cls(rules)

    def classify(self, error_text: Optional[str]) -> str:
        if error_text:
            for rule in self.rules:
                if rule.matches(error_text):
                    return rule.category
        return FailureCategory.UNKNOWN.value

    def rank(self, category: str) -> int:
        """Position of the first rule for ``category``; unknown sorts last."""
        for index, rule in enumerate(self.rules):
            if rule.category == category:
                return index
        return len(self.rules)

    def dominant(self, categories: Iterable[str]) -> Optional[str]:
        """Most frequent category, ties broken by rule order."""
        counts = Counter(categories)
        if not counts:
            return None
        return min(counts, key=lambda category: (-counts[category], self.rank(category)))


def _as_checklist(checklist: Any) -> List[ChecklistItem]:
    if isinstance(checklist, list) and all(isinstance(item, ChecklistItem) for item in checklist):
        return list(checklist)
    return parse_checklist(checklist)


def correlate(
    outcomes: Any,
    checklist: Any,
    *,
    feature_id: Optional[str] = None,
    classifier: Optional[FailureClassifier] = None,
) -> CorrelationResult:
    """Aggregate ``outcomes`` per checklist item.

    An outcome belongs to every checklist item whose id appears among its
    tags (leading ``@`` and case ignored). When ``feature_id`` is given, only
    outcomes also tagged with the feature id are considered. Per item, any
    failure makes the item ``failed``; otherwise any pass makes it
    ``passed``; skipped-only or untagged items are ``not_tested``.
    """
    items = _as_checklist(checklist)
    results = parse_outcomes(outcomes)
    classifier = classifier or FailureClassifier()

    if feature_id:
        results = [outcome for outcome in results if outcome.has_tag(feature_id)]

    by_tag: Dict[str, str] = {normalize_tag(item.id): item.id for item in items}
    matched: Dict[str, List[TestOutcome]] = {item.id: [] for item in items}
    failures: List[FailureRecord] = []
    categories: Dict[str, List[str]] = {item.id: [] for item in items}

    for outcome in results:
        item_ids: List[str] = []
        for tag in outcome.tags:
            item_id = by_tag.get(normalize_tag(tag))
            if item_id is not None and item_id not in item_ids:
                item_ids.append(item_id)
        for item_id in item_ids:
            matched[item_id].append(outcome)

        if outcome.status == OutcomeStatus.FAILED:
            category = classifier.classify(outcome.error_text)
            failures.append(FailureRecord(
                test_id=outcome.id,
                category=category,
                checklist_ids=item_ids,
                error_text=outcome.error_text,
            ))
            for item_id in item_ids:
                categories[item_id].append(category)

    item_results: Dict[str, ItemResult] = {}
    for item in items:
        tests = matched[item.id]
        passed = sum(1 for outcome in tests if outcome.status == OutcomeStatus.PASSED)
        failed = sum(1 for outcome in tests if outcome.status == OutcomeStatus.FAILED)
        skipped = sum(1 for outcome in tests if outcome.status == OutcomeStatus.SKIPPED)
        if failed:
            status = ItemStatus.FAILED
        elif passed:
            status = ItemStatus.PASSED
        else:
            status = ItemStatus.NOT_TESTED
        item_results[item.id] = ItemResult(
            checklist_id=item.id,
            status=status,
            tests=[outcome.id for outcome in tests],
            passed=passed,
            failed=failed,
            skipped=skipped,
            dominant_category=classifier.dominant(categories[item.id]) if failed else None,
        )

    result = CorrelationResult(items=item_results, failures=failures)
    observability_hooks.log_workflow_event(
        "results_correlated",
        feature_id=feature_id,
        outcomes=len(results),
        **result.summary(),
    )
    return result


class TestResultCorrelator:
    """Correlator bound to a failure classifier."""

    __test__ = False

    def __init__(self, classifier: Optional[FailureClassifier] = None):
        self.classifier = classifier or FailureClassifier()

    def correlate(self, outcomes: Any, checklist: Any, *, feature_id: Optional[str] = None) -> CorrelationResult:
        return correlate(outcomes, checklist, feature_id=feature_id, classifier=self.classifier)

    def classify(self, error_text: Optional[str]) -> str:
        return self.classifier.classify(error_text)
