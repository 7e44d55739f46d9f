"""Orchestration loop.

Drives one feature through its phases: each phase calls the matching
collaborator, persists what it returns through the artifact repository and
moves the state machine forward. The coverage gate runs before verification;
failed verification is correlated, routed and sent back into implementation
or test writing until it passes or the iteration budget runs out.

Collaborators are plain callables that take a :class:`PhaseContext` and
return a mapping of artifact name to content. The test executor instead
returns a list of test outcome dicts.

Each call runs in a daemon thread. A call that overruns the phase timeout is
not killed: its context is marked cancelled and the feature fails. Long
running collaborators should poll ``context.cancelled`` and stop without
writing further artifacts once it is set.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, NoReturn, Optional

from .artifacts import ArtifactRepository
from .config import OrchestratorConfig
from .correlator import FailureClassifier, correlate
from .coverage import GAP_MISSING_TEST, classify_gaps, evaluate
from .errors import (
    COLLABORATOR_FAILURE,
    COVERAGE_GATE_FAILURE,
    FEATURE_PAUSED,
    ITERATION_LIMIT_EXCEEDED,
    PHASE_TIMEOUT,
    USER_ESCALATION,
    VERIFICATION_FAILURE,
    OrchestratorError,
)
from .feedback import FeedbackRouter
from .locking import feature_lock
from .models import (
    ArtifactType,
    Collaborator,
    FeatureState,
    FeatureStatus,
    Phase,
    PHASE_ORDER,
    PhaseHalt,
    RouteDecision,
    TERMINAL_STATUSES,
    parse_outcomes,
)
from .orchestrator_logging import log_error_with_context, log_operation, observability_hooks
from .report import generate_report
from .state_machine import StateMachine, iteration_limit_message
from .test_runs import TestRunStore
from .workspace import WorkspaceStore

logger = logging.getLogger("feature_orchestrator.workflow")

CollaboratorFn = Callable[["PhaseContext"], Any]

CHECKLIST_ARTIFACT = "checklist.json"
COVERAGE_ARTIFACT = "test-coverage.json"
RESULTS_ARTIFACT = "results.json"
FEEDBACK_ARTIFACT = "feedback.json"

IMPLEMENTERS = (Collaborator.FRONTEND_IMPLEMENTER, Collaborator.BACKEND_IMPLEMENTER)


@dataclass
class PhaseContext:
    """Everything a collaborator may read for one call."""

    feature_id: str
    phase: Phase
    state: FeatureState
    workspace_path: Path
    artifacts: ArtifactRepository
    config: OrchestratorConfig
    remediation: List[RouteDecision] = field(default_factory=list)
    gaps: Dict[str, str] = field(default_factory=dict)
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def cancelled(self) -> bool:
        """True once the loop has given up on this call."""
        return self.cancel_event.is_set()

    def read(self, name: str) -> Any:
        """Parsed JSON content of an artifact in this workspace."""
        return self.artifacts.get_structured(self.feature_id, name)


@dataclass
class Collaborators:
    """External workers, one per phase. Missing collaborators are skipped."""

    spec_writer: Optional[CollaboratorFn] = None
    docs_auditor: Optional[CollaboratorFn] = None
    planner: Optional[CollaboratorFn] = None
    test_designer: Optional[CollaboratorFn] = None
    frontend_implementer: Optional[CollaboratorFn] = None
    backend_implementer: Optional[CollaboratorFn] = None
    test_writer: Optional[CollaboratorFn] = None
    test_executor: Optional[CollaboratorFn] = None


@dataclass
class LoopResult:
    feature_id: str
    phase: Phase
    status: FeatureStatus
    iteration: int
    halt: Optional[PhaseHalt] = None

    @property
    def completed(self) -> bool:
        return self.status == FeatureStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feature_id": self.feature_id,
            "phase": self.phase.value,
            "status": self.status.value,
            "iteration": self.iteration,
            "halt": self.halt.to_dict() if self.halt else None,
        }


class _Halt(Exception):
    """Internal signal carrying a :class:`PhaseHalt` out of a phase handler."""

    def __init__(self, halt: PhaseHalt):
        super().__init__(halt.message)
        self.halt = halt


class OrchestrationLoop:
    """Run the phase loop for a feature."""

    def __init__(
        self,
        store: WorkspaceStore,
        collaborators: Collaborators,
        config: OrchestratorConfig,
    ):
        self.store = store
        self.collaborators = collaborators
        self.config = config
        self.states: StateMachine = store.states
        self.artifacts: ArtifactRepository = store.artifacts
        if config.failure_rules:
            self.classifier = FailureClassifier.with_extra_rules(config.failure_rules)
        else:
            self.classifier = FailureClassifier()
        self.router = FeedbackRouter(config.routes)
        self.test_runs = TestRunStore(store.workspaces_dir, self.classifier)

        self._remediation: List[RouteDecision] = []
        self._gaps: Dict[str, str] = {}
        self._handlers: Dict[Phase, Callable[[FeatureState], None]] = {
            Phase.INITIALIZATION: self._run_initialization,
            Phase.SPEC: self._simple_phase("spec_writer"),
            Phase.DOCS_AUDIT: self._simple_phase("docs_auditor"),
            Phase.PLANNING: self._simple_phase("planner"),
            Phase.TEST_IDEATION: self._simple_phase("test_designer"),
            Phase.IMPLEMENTATION: self._run_implementation,
            Phase.TEST_IMPLEMENTATION: self._simple_phase("test_writer"),
            Phase.COVERAGE_VALIDATION: self._run_coverage_validation,
            Phase.VERIFICATION: self._run_verification,
            Phase.FINALIZATION: self._run_finalization,
        }

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self, feature_id: str) -> LoopResult:
        """Drive ``feature_id`` until it completes, fails or halts.

        A feature escalated to the paused phase is resumed in the phase it
        was paused from. A feature whose status alone was set to paused
        halts without calling anything until its status is set back. A
        feature that is already completed or failed is returned unchanged.
        """
        self.store.get(feature_id)
        self._remediation = []
        self._gaps = {}

        with feature_lock(self.store.workspaces_dir, feature_id, timeout=self.config.lock_timeout_seconds):
            state = self.states.get(feature_id)
            if state.status == FeatureStatus.PAUSED and state.phase != Phase.PAUSED:
                message = f"{FEATURE_PAUSED}: {feature_id} is paused in {state.phase.value}"
                logger.info(message)
                return self._result(feature_id, PhaseHalt(phase=state.phase.value, kind=FEATURE_PAUSED, message=message))
            if state.phase == Phase.PAUSED and state.status not in TERMINAL_STATUSES:
                logger.info(f"Resuming {feature_id} in {state.paused_from.value if state.paused_from else '?'}")
                state = self.states.update(feature_id, phase=state.paused_from)

            while state.status not in TERMINAL_STATUSES:
                handler = self._handlers.get(state.phase)
                if handler is None:
                    break
                try:
                    with log_operation("run_phase", feature_id=feature_id, phase=state.phase.value):
                        handler(state)
                except _Halt as halt:
                    observability_hooks.log_workflow_event(
                        "orchestration_halted",
                        feature_id=feature_id,
                        **halt.halt.to_dict(),
                    )
                    return self._result(feature_id, halt.halt)
                state = self.states.get(feature_id)

        return self._result(feature_id, None)

    def _result(self, feature_id: str, halt: Optional[PhaseHalt]) -> LoopResult:
        state = self.states.get(feature_id)
        return LoopResult(
            feature_id=feature_id,
            phase=state.phase,
            status=state.status,
            iteration=state.iteration,
            halt=halt,
        )

    # ------------------------------------------------------------------
    # Collaborator calls
    # ------------------------------------------------------------------

    def _context(self, state: FeatureState) -> PhaseContext:
        return PhaseContext(
            feature_id=state.feature_id,
            phase=state.phase,
            state=state,
            workspace_path=self.store.path_for(state.feature_id),
            artifacts=self.artifacts,
            config=self.config,
            remediation=list(self._remediation),
            gaps=dict(self._gaps),
        )

    def _call(self, name: str, state: FeatureState) -> Any:
        """Invoke a collaborator under the phase timeout.

        Timeouts and collaborator exceptions fail the feature and halt the
        loop. Returns ``None`` when no collaborator is configured.
        """
        collaborator = getattr(self.collaborators, name)
        if collaborator is None:
            logger.debug(f"No {name} configured; skipping")
            return None

        timeout = self.config.phase_timeout_seconds
        context = self._context(state)
        outcome: Dict[str, Any] = {}

        def target() -> None:
            try:
                outcome["result"] = collaborator(context)
            except Exception as e:
                outcome["error"] = e

        worker = threading.Thread(target=target, name=f"collaborator-{name}", daemon=True)
        worker.start()
        worker.join(timeout)

        if worker.is_alive():
            context.cancel_event.set()
            self._fail(state, PHASE_TIMEOUT, f"{PHASE_TIMEOUT}: {state.phase.value} exceeded {timeout:g}s")

        error = outcome.get("error")
        if error is not None:
            log_error_with_context(error, {
                "operation": "call_collaborator",
                "feature_id": state.feature_id,
                "phase": state.phase.value,
                "collaborator": name,
            })
            self._fail(state, COLLABORATOR_FAILURE,
                       f"{COLLABORATOR_FAILURE}: {name} failed in {state.phase.value}: {error}")
        return outcome.get("result")

    def _save_outputs(self, name: str, state: FeatureState, outputs: Any) -> None:
        if outputs is None:
            return
        if not isinstance(outputs, dict):
            self._fail(state, COLLABORATOR_FAILURE,
                       f"{COLLABORATOR_FAILURE}: {name} returned {type(outputs).__name__}, expected a mapping")
        for artifact_name, content in outputs.items():
            try:
                if isinstance(content, str):
                    self.artifacts.save(state.feature_id, artifact_name, content, ArtifactType.from_name(artifact_name))
                else:
                    self.artifacts.save_structured(state.feature_id, artifact_name, content)
            except (OrchestratorError, TypeError, ValueError, OSError) as e:
                # json.dumps raises TypeError on content it cannot encode
                self._fail(state, COLLABORATOR_FAILURE,
                           f"{COLLABORATOR_FAILURE}: {name} produced an invalid artifact {artifact_name}: {e}")

    def _fail(self, state: FeatureState, kind: str, message: str, checklist_ids: Optional[List[str]] = None) -> NoReturn:
        self.states.update(state.feature_id, phase=Phase.FAILED, add_error=message)
        logger.error(f"Feature {state.feature_id} failed in {state.phase.value}: {message}")
        raise _Halt(PhaseHalt(phase=state.phase.value, kind=kind, message=message, checklist_ids=checklist_ids or []))

    def _advance(self, state: FeatureState, dest: Phase) -> None:
        self.states.update(state.feature_id, phase=dest, mark_phase_completed=state.phase)

    def _next_phase(self, phase: Phase) -> Phase:
        return PHASE_ORDER[PHASE_ORDER.index(phase) + 1]

    # ------------------------------------------------------------------
    # Phase handlers
    # ------------------------------------------------------------------

    def _run_initialization(self, state: FeatureState) -> None:
        self._advance(state, Phase.SPEC)

    def _simple_phase(self, collaborator: str) -> Callable[[FeatureState], None]:
        def handler(state: FeatureState) -> None:
            self._save_outputs(collaborator, state, self._call(collaborator, state))
            self._advance(state, self._next_phase(state.phase))
        return handler

    def _run_implementation(self, state: FeatureState) -> None:
        targets = {decision.target for decision in self._remediation}

        if not state.scope.skip_backend and (not self._remediation or Collaborator.BACKEND_IMPLEMENTER in targets):
            self._save_outputs("backend_implementer", state, self._call("backend_implementer", state))
        elif state.scope.skip_backend:
            logger.info(f"Skipping backend implementation for {state.feature_id} (frontend-only scope)")

        if not self._remediation or Collaborator.FRONTEND_IMPLEMENTER in targets:
            self._save_outputs("frontend_implementer", state, self._call("frontend_implementer", state))

        self._advance(state, Phase.TEST_IMPLEMENTATION)

    def _run_coverage_validation(self, state: FeatureState) -> None:
        try:
            checklist = self.artifacts.get_structured(state.feature_id, CHECKLIST_ARTIFACT)
            coverage = self.artifacts.get_structured(state.feature_id, COVERAGE_ARTIFACT)
            result = evaluate(checklist, coverage, feature_id=state.feature_id)
        except OrchestratorError as e:
            self._fail(state, COVERAGE_GATE_FAILURE, f"{COVERAGE_GATE_FAILURE}: cannot evaluate coverage: {e}")

        if result.passed:
            self._gaps = {}
            self._advance(state, Phase.VERIFICATION)
            return

        self._gaps = classify_gaps(result, checklist)
        gap_ids = list(self._gaps)
        self._remediation = [
            RouteDecision(
                checklist_id=item_id,
                category=cause,
                target=Collaborator.TEST_WRITER,
                reason="missing tests" if cause == GAP_MISSING_TEST else "missing E2E test",
            )
            for item_id, cause in self._gaps.items()
        ]
        updated = self.states.update(
            state.feature_id,
            add_error=f"{COVERAGE_GATE_FAILURE}: {result.reason}",
            increment_iteration=True,
        )
        if updated.status == FeatureStatus.FAILED:
            raise _Halt(PhaseHalt(
                phase=state.phase.value,
                kind=ITERATION_LIMIT_EXCEEDED,
                message=iteration_limit_message(updated.max_iterations),
                checklist_ids=gap_ids,
            ))
        self.states.update(state.feature_id, phase=Phase.TEST_IMPLEMENTATION)

    def _run_verification(self, state: FeatureState) -> None:
        raw = self._call("test_executor", state)
        if raw is None:
            raw = []
        try:
            outcomes = parse_outcomes(raw)
            run = self.test_runs.record(state.feature_id, outcomes)
            checklist = self.artifacts.get_structured(state.feature_id, CHECKLIST_ARTIFACT)
            correlation = correlate(outcomes, checklist, classifier=self.classifier)
        except OrchestratorError as e:
            self._fail(state, VERIFICATION_FAILURE, f"{VERIFICATION_FAILURE}: cannot correlate results: {e}")

        results = correlation.to_dict()
        results["run_id"] = run.run_id
        self.artifacts.save_structured(state.feature_id, RESULTS_ARTIFACT, results)

        if correlation.all_passed:
            self._remediation = []
            self._advance(state, Phase.FINALIZATION)
            return

        decisions = self.router.route_failures(correlation, state.iteration, state.max_iterations)
        self.artifacts.save_structured(
            state.feature_id,
            FEEDBACK_ARTIFACT,
            {"iteration": state.iteration, "decisions": [decision.to_dict() for decision in decisions]},
        )
        failing = [decision.checklist_id for decision in decisions]

        escalated = [decision for decision in decisions if decision.escalated]
        if escalated:
            message = (
                f"{USER_ESCALATION}: {', '.join(failing)} still failing after "
                f"{state.iteration}/{state.max_iterations} iterations"
            )
            self.states.update(state.feature_id, phase=Phase.PAUSED, add_error=message)
            raise _Halt(PhaseHalt(phase=state.phase.value, kind=USER_ESCALATION, message=message, checklist_ids=failing))

        updated = self.states.update(
            state.feature_id,
            add_error=f"{VERIFICATION_FAILURE}: {', '.join(failing)}",
            increment_iteration=True,
        )
        if updated.status == FeatureStatus.FAILED:
            raise _Halt(PhaseHalt(
                phase=state.phase.value,
                kind=ITERATION_LIMIT_EXCEEDED,
                message=iteration_limit_message(updated.max_iterations),
                checklist_ids=failing,
            ))

        self._remediation = decisions
        self._gaps = {}
        if any(decision.target in IMPLEMENTERS for decision in decisions):
            self.states.update(state.feature_id, phase=Phase.IMPLEMENTATION)
        else:
            self.states.update(state.feature_id, phase=Phase.TEST_IMPLEMENTATION)

    def _run_finalization(self, state: FeatureState) -> None:
        self._advance(state, Phase.COMPLETED)
        generate_report(self.states, self.artifacts, state.feature_id)
