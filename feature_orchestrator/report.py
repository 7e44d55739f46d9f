"""Final orchestrator report rendering."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .artifacts import ArtifactRepository
from .errors import ArtifactNotFound, InvalidArtifactContent
from .models import Artifact, ArtifactType, FeatureState
from .state_machine import StateMachine
from .storage import utc_now

logger = logging.getLogger("feature_orchestrator.report")

REPORT_NAME = "orchestrator-report.md"
REPORT_SOURCES = ("spec.json", "checklist.json", "plan.json", "test-coverage.json", "results.json")


def _count(value: Any) -> int:
    return len(value) if isinstance(value, (list, dict)) else 0


def _checklist_items(checklist: Any) -> List[Any]:
    if isinstance(checklist, dict):
        checklist = checklist.get("checklist")
    return checklist if isinstance(checklist, list) else []


def _results_summary(results: Any) -> Dict[str, int]:
    if isinstance(results, dict) and isinstance(results.get("summary"), dict):
        return {key: int(value) for key, value in results["summary"].items() if isinstance(value, int)}
    if isinstance(results, dict):
        results = results.get("results", results.get("outcomes"))
    summary = {"total": 0, "passed": 0, "failed": 0, "skipped": 0}
    for outcome in results if isinstance(results, list) else []:
        summary["total"] += 1
        status = outcome.get("status") if isinstance(outcome, dict) else None
        if status in summary:
            summary[status] += 1
    return summary


def render_report(state: FeatureState, artifacts: Dict[str, Any], generated_at: Optional[str] = None) -> str:
    """Render the Markdown report from ``state`` and parsed artifacts.

    ``artifacts`` maps artifact names to parsed JSON; absent entries render
    as not yet produced.
    """
    spec = artifacts.get("spec.json")
    checklist = artifacts.get("checklist.json")
    plan = artifacts.get("plan.json")
    coverage = artifacts.get("test-coverage.json")
    results = artifacts.get("results.json")

    lines: List[str] = [
        f"# Orchestrator Report: {state.title or state.feature_id}",
        "",
        "## Feature Information",
        "",
        f"- **Feature ID**: {state.feature_id}",
        f"- **Status**: {state.status.value}",
        f"- **Current Phase**: {state.phase.value}",
        f"- **Implementation Scope**: {state.scope.mode.value}",
        f"- **Iterations**: {state.iteration}/{state.max_iterations}",
        "",
        "## Phases Completed",
        "",
    ]
    lines.extend(f"- [x] {phase}" for phase in state.phases_completed)
    if not state.phases_completed:
        lines.append("- None yet")

    lines.extend(["", "## Specification", ""])
    if isinstance(spec, dict):
        lines.append(f"- **Title**: {spec.get('title', state.title or state.feature_id)}")
        lines.append(f"- **User Stories**: {_count(spec.get('user_stories'))}")
    else:
        lines.append("Not yet created")

    lines.extend(["", "## Acceptance Criteria", ""])
    if checklist is not None:
        items = _checklist_items(checklist)
        lines.append(f"- **Total Criteria**: {len(items)}")
        e2e = sum(
            1 for item in items
            if isinstance(item, dict) and "E2E" in (item.get("verification_hint") or item.get("verification") or [])
        )
        lines.append(f"- **E2E Criteria**: {e2e}")
    else:
        lines.append("Not yet created")

    lines.extend(["", "## Implementation Plan", ""])
    if isinstance(plan, dict):
        areas = plan.get("areas") if isinstance(plan.get("areas"), dict) else {}
        lines.append(f"- **Scope**: {plan.get('implementation_scope', state.scope.mode.value)}")
        for area in sorted(areas):
            tasks = areas[area].get("tasks") if isinstance(areas[area], dict) else None
            lines.append(f"- **{area.capitalize()} Tasks**: {_count(tasks)}")
    else:
        lines.append("Not yet created")

    lines.extend(["", "## Test Coverage", ""])
    if isinstance(coverage, dict):
        lines.append(f"- **Items With Tests**: {coverage.get('items_with_tests', 0)}/{coverage.get('total_items', 0)}")
        blockers = coverage.get("blockers") or []
        lines.append(f"- **Blockers**: {len(blockers)}")
    else:
        lines.append("Not yet determined")

    lines.extend(["", "## Test Results", ""])
    if results is not None:
        summary = _results_summary(results)
        for key in ("total", "passed", "failed", "skipped", "not_tested"):
            if key in summary:
                lines.append(f"- **{key.replace('_', ' ').capitalize()}**: {summary[key]}")
    else:
        lines.append("Not yet run")

    lines.extend(["", "## Errors", ""])
    lines.extend(f"- {error}" for error in state.errors)
    if not state.errors:
        lines.append("No errors")

    lines.extend(["", "---", f"Generated: {generated_at or utc_now()}", ""])
    return "\n".join(lines)


def load_report_sources(artifacts: ArtifactRepository, feature_id: str) -> Dict[str, Any]:
    """Parsed report inputs; missing or unparsable artifacts are left out."""
    sources: Dict[str, Any] = {}
    for name in REPORT_SOURCES:
        try:
            sources[name] = artifacts.get_structured(feature_id, name)
        except ArtifactNotFound:
            continue
        except InvalidArtifactContent as e:
            logger.warning(f"Ignoring {name} in report for {feature_id}: {e}")
    return sources


def generate_report(states: StateMachine, artifacts: ArtifactRepository, feature_id: str) -> Artifact:
    """Render the report for ``feature_id`` and save it as an artifact."""
    state = states.get(feature_id)
    report = render_report(state, load_report_sources(artifacts, feature_id))
    artifact = artifacts.save(feature_id, REPORT_NAME, report, ArtifactType.DOCUMENT)
    artifact.content = report
    return artifact
