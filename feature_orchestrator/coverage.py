"""Coverage gate.

Decides whether a feature's tests cover every acceptance criterion before
verification may run. A failing gate is returned as data; only malformed
input raises.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

from .models import (
    ChecklistItem,
    CoverageEntry,
    CoverageRecord,
    GateResult,
    normalize_tag,
    parse_checklist,
)
from .orchestrator_logging import log_gate_decision

logger = logging.getLogger("feature_orchestrator.coverage")

GATE_PASS = "pass"
GATE_FAIL = "fail"

GAP_MISSING_TEST = "missing_test"
GAP_MISSING_E2E = "missing_e2e"


def _as_checklist(checklist: Any) -> List[ChecklistItem]:
    if isinstance(checklist, list) and all(isinstance(item, ChecklistItem) for item in checklist):
        return list(checklist)
    return parse_checklist(checklist)


def _as_record(record: Any) -> CoverageRecord:
    if isinstance(record, CoverageRecord):
        return record
    return CoverageRecord.from_dict(record)


def _entry_for(record: CoverageRecord, by_tag: Dict[str, CoverageEntry], item_id: str) -> Optional[CoverageEntry]:
    entry = record.per_item.get(item_id)
    if entry is None:
        entry = by_tag.get(normalize_tag(item_id))
    return entry


def _has_e2e_test(entry: Optional[CoverageEntry]) -> bool:
    return entry is not None and entry.has_tests and any(test.is_e2e for test in entry.tests)


def _build_reason(record: CoverageRecord, missing: List[str], e2e_missing: List[str]) -> str:
    if not missing and not e2e_missing and not record.blockers and record.items_with_tests == record.total_items:
        return f"All {record.total_items} checklist items have tests"
    parts: List[str] = []
    if record.items_with_tests != record.total_items:
        parts.append(f"{record.items_with_tests} of {record.total_items} items have tests")
    if missing:
        parts.append(f"no tests for {', '.join(missing)}")
    if e2e_missing:
        parts.append(f"no E2E test for {', '.join(e2e_missing)}")
    if record.blockers:
        parts.append(f"blockers: {'; '.join(record.blockers)}")
    return "; ".join(parts)


def evaluate(checklist: Any, coverage: Any, *, feature_id: Optional[str] = None) -> GateResult:
    """Evaluate ``coverage`` against ``checklist``.

    The gate passes only when the declared counts agree, there are no
    blockers, every checklist item has at least one usable test and every
    E2E-hinted item has an E2E test. ``missing`` and ``e2e_missing`` follow
    checklist order and are disjoint: an item with no tests at all is only
    reported in ``missing``.

    Raises :class:`InvalidInput` for a malformed checklist or coverage record.
    """
    items = _as_checklist(checklist)
    record = _as_record(coverage)

    # ids are matched the way the correlator matches tags: case and a leading @ are ignored
    by_tag: Dict[str, CoverageEntry] = {}
    for key, entry in record.per_item.items():
        by_tag.setdefault(normalize_tag(key), entry)

    missing: List[str] = []
    e2e_missing: List[str] = []
    for item in items:
        entry = _entry_for(record, by_tag, item.id)
        if entry is None or not entry.has_tests:
            missing.append(item.id)
        elif item.requires_e2e and not _has_e2e_test(entry):
            e2e_missing.append(item.id)

    passed = (
        record.items_with_tests == record.total_items
        and not record.blockers
        and not missing
        and not e2e_missing
    )
    result = GateResult(
        status=GATE_PASS if passed else GATE_FAIL,
        missing=missing,
        e2e_missing=e2e_missing,
        blockers=list(record.blockers),
        reason=_build_reason(record, missing, e2e_missing),
    )

    log_gate_decision(feature_id, result.status, missing, e2e_missing=e2e_missing, blockers=result.blockers)
    if not result.passed:
        logger.info(f"Coverage gate failed for {feature_id or 'feature'}: {result.reason}")
    return result


def classify_gaps(result: GateResult, checklist: Sequence[ChecklistItem] | Any = None) -> Dict[str, str]:
    """Map each gap in ``result`` to its suggested cause.

    Ordered by ``checklist`` when given, otherwise missing tests first.
    """
    gaps: Dict[str, str] = {item_id: GAP_MISSING_TEST for item_id in result.missing}
    for item_id in result.e2e_missing:
        gaps.setdefault(item_id, GAP_MISSING_E2E)
    if checklist is None:
        return gaps
    ordered = {item.id: gaps[item.id] for item in _as_checklist(checklist) if item.id in gaps}
    for item_id, cause in gaps.items():
        ordered.setdefault(item_id, cause)
    return ordered


class CoverageGate:
    """Coverage gate bound to a feature id, for logging."""

    def __init__(self, feature_id: Optional[str] = None):
        self.feature_id = feature_id

    def evaluate(self, checklist: Any, coverage: Any) -> GateResult:
        return evaluate(checklist, coverage, feature_id=self.feature_id)

    def classify_gaps(self, result: GateResult, checklist: Any = None) -> Dict[str, str]:
        return classify_gaps(result, checklist)
