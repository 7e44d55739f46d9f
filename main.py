"""MCP server exposing the feature orchestrator engine."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from mcp.server.fastmcp import FastMCP

from feature_orchestrator.config import LOG_LEVEL_ENV, OrchestratorConfig, load_config
from feature_orchestrator.correlator import FailureClassifier, correlate
from feature_orchestrator.coverage import classify_gaps, evaluate
from feature_orchestrator.errors import ConfigError
from feature_orchestrator.feedback import FeedbackRouter
from feature_orchestrator.models import ArtifactType
from feature_orchestrator.orchestrator_logging import performance_monitor, setup_logging
from feature_orchestrator.report import generate_report as _generate_report
from feature_orchestrator.test_runs import TestRunStore
from feature_orchestrator.workspace import WorkspaceStore, generate_feature_id as _generate_feature_id

mcp = FastMCP("feature-orchestrator")

logger = logging.getLogger("feature_orchestrator.server")


@dataclass
class Engine:
    config: OrchestratorConfig
    store: WorkspaceStore
    test_runs: TestRunStore
    classifier: FailureClassifier
    router: FeedbackRouter


def _engine(root: Optional[str] = None) -> Engine:
    config = load_config(root)
    if config.failure_rules:
        classifier = FailureClassifier.with_extra_rules(config.failure_rules)
    else:
        classifier = FailureClassifier()
    store = WorkspaceStore(config.workspaces_dir, max_iterations=config.max_iterations)
    return Engine(
        config=config,
        store=store,
        test_runs=TestRunStore(config.workspaces_dir, classifier),
        classifier=classifier,
        router=FeedbackRouter(config.routes),
    )


def _parse_json_argument(value: Any, name: str) -> Any:
    """Accept either already-decoded JSON or a JSON string."""
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError as e:
            raise ValueError(f"'{name}' is not valid JSON: {e}") from e
    return value


# ----------------------------------------------------------------------
# Workspaces
# ----------------------------------------------------------------------


@mcp.tool()
def create_workspace(
    feature_id: str,
    title: Optional[str] = None,
    scope: str = "full",
    scope_notes: Optional[str] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a new feature workspace with its initial state.
    Use generate_feature_id first to obtain a unique feature id."""

    engine = _engine(root)
    info = engine.store.create(feature_id, title=title, scope=scope, scope_notes=scope_notes)
    return {
        "success": True,
        "feature_id": feature_id,
        "workspace_path": info.root_path,
        "state": info.state.to_dict(),
    }


@mcp.tool()
def list_workspaces(status: Optional[str] = None, root: Optional[str] = None) -> Dict[str, Any]:
    """List feature workspaces, most recently modified first. Filter by status or pass 'all'."""

    engine = _engine(root)
    workspaces = engine.store.list(status)
    return {
        "workspaces": [
            {
                "feature_id": info.feature_id,
                "title": info.state.title,
                "phase": info.state.phase.value,
                "status": info.state.status.value,
                "iteration": info.state.iteration,
                "modified_at": info.modified_at,
            }
            for info in workspaces
        ],
        "total": len(workspaces),
    }


@mcp.tool()
def get_workspace(feature_id: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Return workspace metadata, the current state and the artifact listing."""

    return _engine(root).store.get(feature_id).to_dict()


@mcp.tool()
def delete_workspace(feature_id: str, confirm: bool = False, root: Optional[str] = None) -> Dict[str, Any]:
    """Delete a feature workspace and all its artifacts. Requires confirm=True."""

    path = _engine(root).store.delete(feature_id, confirm=confirm)
    return {"success": True, "feature_id": feature_id, "deleted_path": path}


@mcp.tool()
def generate_feature_id(short_name: str) -> Dict[str, str]:
    """Generate a unique feature id of the form feat-<short-name>-<timestamp>."""

    return {"feature_id": _generate_feature_id(short_name)}


# ----------------------------------------------------------------------
# State
# ----------------------------------------------------------------------


@mcp.tool()
def get_state(feature_id: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Read the orchestration state of a feature."""

    return _engine(root).store.states.get(feature_id).to_dict()


@mcp.tool()
def update_state(
    feature_id: str,
    phase: Optional[str] = None,
    status: Optional[str] = None,
    increment_iteration: bool = False,
    add_error: Optional[str] = None,
    mark_phase_completed: Optional[str] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Update the feature state. Fields apply in order: phase, status,
    increment_iteration, add_error, mark_phase_completed. Invalid phase
    changes are rejected without modifying the state."""

    state = _engine(root).store.states.update(
        feature_id,
        phase=phase,
        status=status,
        increment_iteration=increment_iteration,
        add_error=add_error,
        mark_phase_completed=mark_phase_completed,
    )
    return {"success": True, "state": state.to_dict()}


@mcp.tool()
def set_scope(feature_id: str, scope: str, notes: Optional[str] = None, root: Optional[str] = None) -> Dict[str, Any]:
    """Set the implementation scope: 'full' or 'frontend_only'."""

    state = _engine(root).store.states.set_scope(feature_id, scope, notes=notes)
    return {"success": True, "feature_id": feature_id, "scope": state.scope.to_dict()}


# ----------------------------------------------------------------------
# Artifacts
# ----------------------------------------------------------------------


@mcp.tool()
def save_artifact(
    feature_id: str,
    name: str,
    content: str,
    type: str = "structured",
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Save an artifact to the feature workspace. Structured artifacts must be
    a JSON object or array; type is one of structured, document or text."""

    artifact = _engine(root).store.artifacts.save(feature_id, name, content, ArtifactType.parse(type))
    return {"success": True, **artifact.to_dict()}


@mcp.tool()
def get_artifact(feature_id: str, name: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Read an artifact exactly as it was saved."""

    return _engine(root).store.artifacts.get(feature_id, name).to_dict()


@mcp.tool()
def list_artifacts(feature_id: str, root: Optional[str] = None) -> Dict[str, Any]:
    """List the artifacts of a feature workspace."""

    artifacts = _engine(root).store.artifacts.list(feature_id)
    return {"feature_id": feature_id, "artifacts": [artifact.to_dict() for artifact in artifacts]}


# ----------------------------------------------------------------------
# Configuration
# ----------------------------------------------------------------------


@mcp.tool()
def get_config(root: Optional[str] = None) -> Dict[str, Any]:
    """Return the orchestrator configuration and where it was loaded from."""

    config = load_config(root)
    return {
        "exists": config.exists,
        "config_path": str(config.config_path),
        "config": config.to_dict(),
    }


@mcp.tool()
def get_metrics(operation: Optional[str] = None) -> Dict[str, Any]:
    """Return timing totals for engine operations since the server started.

    ``operation`` is a metric name such as ``update_state_duration``.
    """

    return {
        "metrics": performance_monitor.summary(operation),
        "max_samples": performance_monitor.max_samples,
    }


# ----------------------------------------------------------------------
# Gate, correlation and feedback
# ----------------------------------------------------------------------


@mcp.tool()
def evaluate_coverage(
    feature_id: str,
    checklist: Optional[Any] = None,
    coverage: Optional[Any] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Run the coverage gate. Reads checklist.json and test-coverage.json from the
    workspace unless the checklist or coverage record is passed directly."""

    engine = _engine(root)
    artifacts = engine.store.artifacts
    if checklist is None:
        checklist = artifacts.get_structured(feature_id, "checklist.json")
    if coverage is None:
        coverage = artifacts.get_structured(feature_id, "test-coverage.json")
    checklist = _parse_json_argument(checklist, "checklist")
    result = evaluate(checklist, _parse_json_argument(coverage, "coverage"), feature_id=feature_id)
    return {**result.to_dict(), "gaps": classify_gaps(result, checklist)}


@mcp.tool()
def correlate_results(
    feature_id: str,
    outcomes: Optional[Any] = None,
    run_id: Optional[str] = None,
    filter_by_feature: bool = False,
    save: bool = True,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Map test outcomes onto checklist items. Outcomes come from the argument,
    or from a recorded test run when run_id is given. Saves results.json."""

    engine = _engine(root)
    artifacts = engine.store.artifacts
    if outcomes is None and run_id is None:
        raise ValueError("Provide either 'outcomes' or 'run_id'")
    if outcomes is None:
        outcomes = engine.test_runs.get(feature_id, run_id).outcomes
    else:
        outcomes = _parse_json_argument(outcomes, "outcomes")

    checklist = artifacts.get_structured(feature_id, "checklist.json")
    result = correlate(
        outcomes,
        checklist,
        feature_id=feature_id if filter_by_feature else None,
        classifier=engine.classifier,
    )
    data = result.to_dict()
    if run_id:
        data["run_id"] = run_id
    if save:
        artifacts.save_structured(feature_id, "results.json", data)
    return data


@mcp.tool()
def route_feedback(
    checklist_id: str,
    category: str,
    iteration: int,
    max_iterations: int,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Decide which collaborator should address a failing checklist item."""

    return _engine(root).router.route(checklist_id, category, iteration, max_iterations).to_dict()


# ----------------------------------------------------------------------
# Test runs
# ----------------------------------------------------------------------


@mcp.tool()
def record_test_run(
    feature_id: str,
    outcomes: Any,
    run_id: Optional[str] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Persist the outcomes of a test execution as a new test run."""

    run = _engine(root).test_runs.record(feature_id, _parse_json_argument(outcomes, "outcomes"), run_id=run_id)
    return {"success": True, "run_id": run.run_id, "summary": run.summary()}


@mcp.tool()
def get_test_run(feature_id: str, run_id: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Return a recorded test run with all of its outcomes."""

    return _engine(root).test_runs.get(feature_id, run_id).to_dict()


@mcp.tool()
def list_test_runs(feature_id: str, root: Optional[str] = None) -> Dict[str, Any]:
    """List recorded test runs, newest first."""

    runs = _engine(root).test_runs.list(feature_id)
    summaries: List[Dict[str, Any]] = [
        {"run_id": run.run_id, "created_at": run.created_at, "summary": run.summary()}
        for run in runs
    ]
    return {"feature_id": feature_id, "runs": summaries}


@mcp.tool()
def analyze_failure(feature_id: str, run_id: str, test_id: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Categorize a failed test and suggest a fix."""

    return _engine(root).test_runs.analyze_failure(feature_id, run_id, test_id)


# ----------------------------------------------------------------------
# Reporting
# ----------------------------------------------------------------------


@mcp.tool()
def generate_report(feature_id: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Generate the final orchestrator report and save it as orchestrator-report.md."""

    engine = _engine(root)
    artifact = _generate_report(engine.store.states, engine.store.artifacts, feature_id)
    return {
        "success": True,
        "feature_id": feature_id,
        "report_path": artifact.path,
        "report": artifact.content,
    }


@mcp.resource("feature-orchestrator://workspaces")
def resource_workspaces() -> str:
    """Resource view listing feature workspaces and their phases."""

    try:
        workspaces = _engine(None).store.list()
    except ConfigError as e:
        return f"Configuration error: {e}"

    if not workspaces:
        return "No feature workspaces have been created yet."

    lines = ["Feature Workspaces"]
    for info in workspaces:
        lines.append("")
        lines.append(f"- {info.feature_id}: {info.state.title or '(untitled)'}")
        lines.append(f"  Phase: {info.state.phase.value} ({info.state.status.value})")
        lines.append(f"  Iteration: {info.state.iteration}/{info.state.max_iterations}")
    return "\n".join(lines)


def main() -> None:
    try:
        config = load_config()
        level = config.log_level
    except ConfigError as e:
        level = "INFO"
        logger.warning(f"Ignoring invalid configuration at startup: {e}")
    setup_logging(level)
    logger.info(f"Starting feature-orchestrator MCP server (log level from {LOG_LEVEL_ENV} or config: {level})")
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
