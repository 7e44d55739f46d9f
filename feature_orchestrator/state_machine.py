"""Feature phase state machine.

The phase graph is a closed transition table driven by the ``transitions``
library. ``StateMachine`` owns the persisted :class:`FeatureState` of every
feature: all mutation goes through :meth:`StateMachine.update` and
:meth:`StateMachine.set_scope`, which validate the request against the graph
before anything is written.

Usage:
    machine = StateMachine(workspaces_dir)
    machine.update("feat-x", phase="spec", mark_phase_completed="initialization")
    machine.update("feat-x", increment_iteration=True)
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from transitions import Machine, MachineError

from .errors import (
    ITERATION_LIMIT_EXCEEDED,
    InvalidInput,
    InvalidTransition,
    StateCorrupt,
    StateNotFound,
)
from .models import (
    PHASE_ORDER,
    TERMINAL_PHASES,
    TERMINAL_STATUSES,
    FeatureState,
    FeatureStatus,
    Phase,
    Scope,
    ScopeMode,
)
from .orchestrator_logging import log_error_with_context, log_performance, log_phase_transition
from .storage import atomic_write_json, read_json, utc_now

logger = logging.getLogger("feature_orchestrator.state")

STATE_FILE = "state.json"
SCOPE_FILE = "scope.json"

STATES = [phase.value for phase in Phase]

WORKING_PHASES = [phase for phase in Phase if phase not in TERMINAL_PHASES and phase != Phase.PAUSED]


def _build_transitions() -> List[Dict[str, object]]:
    transitions: List[Dict[str, object]] = []

    # Forward path
    for source, dest in zip(PHASE_ORDER, PHASE_ORDER[1:]):
        transitions.append({"trigger": "advance", "source": source.value, "dest": dest.value})

    # Feedback loop back into implementation or test writing
    for source in (Phase.COVERAGE_VALIDATION, Phase.VERIFICATION):
        transitions.append({
            "trigger": "rework_implementation",
            "source": source.value,
            "dest": Phase.IMPLEMENTATION.value,
        })
        transitions.append({
            "trigger": "rework_tests",
            "source": source.value,
            "dest": Phase.TEST_IMPLEMENTATION.value,
        })

    # Side edges from any non-terminal phase
    for source in WORKING_PHASES:
        transitions.append({"trigger": "fail", "source": source.value, "dest": Phase.FAILED.value})
        transitions.append({"trigger": "pause", "source": source.value, "dest": Phase.PAUSED.value})
    transitions.append({"trigger": "fail", "source": Phase.PAUSED.value, "dest": Phase.FAILED.value})

    # Resume only to the phase that was paused
    for dest in WORKING_PHASES:
        transitions.append({
            "trigger": f"resume_{dest.value}",
            "source": Phase.PAUSED.value,
            "dest": dest.value,
            "conditions": "is_resume_target",
        })

    return transitions


TRANSITIONS = _build_transitions()


def _build_trigger_lookup() -> Dict[Tuple[str, str], str]:
    """Build lookup from (source, dest) -> trigger name."""
    lookup: Dict[Tuple[str, str], str] = {}
    for t in TRANSITIONS:
        key = (str(t["source"]), str(t["dest"]))
        if key not in lookup:
            lookup[key] = str(t["trigger"])
    return lookup


TRIGGER_FOR = _build_trigger_lookup()

# Status implied by entering a phase
_PHASE_STATUS = {
    Phase.COMPLETED: FeatureStatus.COMPLETED,
    Phase.FAILED: FeatureStatus.FAILED,
    Phase.PAUSED: FeatureStatus.PAUSED,
}


def iteration_limit_message(max_iterations: int) -> str:
    return f"{ITERATION_LIMIT_EXCEEDED}: reached maximum of {max_iterations} iterations"


class PhaseMachine:
    """Phase graph for a single feature, wrapping a ``transitions`` machine."""

    def __init__(self, phase: Phase, paused_from: Optional[Phase] = None, feature_id: str = ""):
        self.feature_id = feature_id
        self.paused_from = paused_from
        self.machine = Machine(
            model=self,
            states=STATES,
            transitions=TRANSITIONS,
            initial=Phase.parse(phase).value,
            auto_transitions=False,
            send_event=True,
            after_state_change="on_state_change",
        )

    @property
    def phase(self) -> Phase:
        return Phase(self.state)

    def is_resume_target(self, event) -> bool:
        return self.paused_from is not None and event.transition.dest == self.paused_from.value

    def on_state_change(self, event) -> None:
        source = Phase(event.transition.source)
        dest = Phase(event.transition.dest)
        if dest == Phase.PAUSED:
            self.paused_from = source
        elif source == Phase.PAUSED:
            self.paused_from = None
        logger.info(f"[FSM] {self.feature_id}: {source.value} -> {dest.value} ({event.event.name})")

    def allowed_targets(self) -> List[Phase]:
        """Phases reachable from the current one in a single step."""
        return [phase for phase in Phase if self.can_move_to(phase)]

    def can_move_to(self, dest: Phase) -> bool:
        trigger = TRIGGER_FOR.get((self.state, Phase.parse(dest).value))
        if trigger is None:
            return False
        if trigger.startswith("resume_"):
            return self.paused_from is not None and self.paused_from.value == Phase.parse(dest).value
        return True

    def move_to(self, dest: Phase | str) -> Phase:
        """Transition to ``dest`` or raise :class:`InvalidTransition`."""
        dest = Phase.parse(dest)
        if dest.value == self.state:
            return self.phase
        source = self.state
        trigger = TRIGGER_FOR.get((source, dest.value))
        if trigger is None:
            raise InvalidTransition(f"Cannot move from '{source}' to '{dest.value}'")
        try:
            moved = self.trigger(trigger)
        except MachineError as e:
            raise InvalidTransition(f"Cannot move from '{source}' to '{dest.value}': {e.value}") from e
        if not moved or self.state != dest.value:
            expected = self.paused_from.value if self.paused_from else "nothing"
            raise InvalidTransition(
                f"Cannot resume '{dest.value}' from '{source}'; the feature was paused in '{expected}'"
            )
        return self.phase


def build_initial_state(
    feature_id: str,
    *,
    title: Optional[str] = None,
    scope: Optional[Scope] = None,
    max_iterations: int = 5,
) -> FeatureState:
    if max_iterations < 1:
        raise InvalidInput("max_iterations must be at least 1")
    now = utc_now()
    return FeatureState(
        feature_id=feature_id,
        title=title,
        phase=Phase.INITIALIZATION,
        status=FeatureStatus.IN_PROGRESS,
        scope=scope or Scope(),
        iteration=0,
        max_iterations=max_iterations,
        created_at=now,
        updated_at=now,
    )


class StateMachine:
    """Persisted feature state with controlled mutation operations."""

    def __init__(self, workspaces_dir: Path | str):
        self.workspaces_dir = Path(workspaces_dir)

    def state_path(self, feature_id: str) -> Path:
        return self.workspaces_dir / feature_id / STATE_FILE

    def scope_path(self, feature_id: str) -> Path:
        return self.workspaces_dir / feature_id / SCOPE_FILE

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, feature_id: str) -> FeatureState:
        """Read the current state.

        Raises :class:`StateNotFound` if no state file exists and
        :class:`StateCorrupt` if it cannot be parsed.
        """
        path = self.state_path(feature_id)
        if not path.is_file():
            raise StateNotFound(feature_id)
        try:
            data = read_json(path)
        except (OSError, ValueError) as e:
            raise StateCorrupt(feature_id, str(e)) from e
        state = FeatureState.from_dict(data)
        if state.feature_id != feature_id:
            raise StateCorrupt(feature_id, f"state belongs to '{state.feature_id}'")
        return state

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def write(self, state: FeatureState) -> None:
        """Persist ``state`` atomically. Used for initial state creation."""
        atomic_write_json(self.state_path(state.feature_id), state.to_dict())

    @log_performance("update_state")
    def update(
        self,
        feature_id: str,
        *,
        phase: Optional[Phase | str] = None,
        status: Optional[FeatureStatus | str] = None,
        increment_iteration: bool = False,
        add_error: Optional[str] = None,
        mark_phase_completed: Optional[Phase | str] = None,
    ) -> FeatureState:
        """Apply each supplied field, in order, and persist the result.

        Invalid phase or status changes raise :class:`InvalidTransition`
        and leave the stored state untouched. Reaching the iteration limit
        is not an error: the feature is failed and the limit message is
        appended to its error list.
        """
        state = self.get(feature_id)
        previous_phase = state.phase

        try:
            if phase is not None:
                self._apply_phase(state, Phase.parse(phase))
            if status is not None:
                self._apply_status(state, FeatureStatus.parse(status))
            if increment_iteration:
                self._apply_increment(state)
            if add_error:
                state.errors.append(add_error)
            if mark_phase_completed is not None:
                completed = Phase.parse(mark_phase_completed).value
                if completed not in state.phases_completed:
                    state.phases_completed.append(completed)
        except (InvalidTransition, InvalidInput) as e:
            log_error_with_context(e, {
                "operation": "update_state",
                "feature_id": feature_id,
                "phase": state.phase.value,
                "requested_phase": str(phase) if phase is not None else None,
            })
            raise

        state.updated_at = utc_now()
        self.write(state)

        if state.phase != previous_phase:
            log_phase_transition(feature_id, previous_phase.value, state.phase.value, status=state.status.value)
        return state

    def set_scope(self, feature_id: str, scope: Scope | ScopeMode | str, notes: Optional[str] = None) -> FeatureState:
        """Replace the feature scope together with the state update."""
        if not isinstance(scope, Scope):
            scope = Scope(mode=ScopeMode.parse(scope), notes=notes)
        state = self.get(feature_id)
        state.scope = scope
        state.updated_at = utc_now()
        self.write(state)
        atomic_write_json(self.scope_path(feature_id), scope.to_dict())
        logger.info(f"Scope for {feature_id} set to {scope.mode.value}")
        return state

    # ------------------------------------------------------------------
    # Field rules
    # ------------------------------------------------------------------

    def _apply_phase(self, state: FeatureState, dest: Phase) -> None:
        if dest == state.phase:
            return
        if state.status in TERMINAL_STATUSES:
            raise InvalidTransition(
                f"Feature '{state.feature_id}' is {state.status.value}; cannot move to '{dest.value}'"
            )
        machine = PhaseMachine(state.phase, paused_from=state.paused_from, feature_id=state.feature_id)
        machine.move_to(dest)
        state.phase = machine.phase
        state.paused_from = machine.paused_from
        state.status = _PHASE_STATUS.get(state.phase, FeatureStatus.IN_PROGRESS)

    def _apply_status(self, state: FeatureState, status: FeatureStatus) -> None:
        if status == state.status:
            return
        if state.status in TERMINAL_STATUSES:
            raise InvalidTransition(
                f"Feature '{state.feature_id}' is {state.status.value}; cannot change status to '{status.value}'"
            )
        state.status = status

    def _apply_increment(self, state: FeatureState) -> None:
        if state.iteration < state.max_iterations:
            state.iteration += 1
            return
        if state.status in TERMINAL_STATUSES:
            return
        state.status = FeatureStatus.FAILED
        state.errors.append(iteration_limit_message(state.max_iterations))
        logger.warning(
            f"Feature {state.feature_id} exceeded {state.max_iterations} iterations in phase {state.phase.value}"
        )
