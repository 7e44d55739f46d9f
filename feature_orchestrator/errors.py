"""Error taxonomy for the feature orchestrator.

Every engine error derives from :class:`OrchestratorError` and from the
builtin exception closest to its meaning, so callers can catch either.
"""

from __future__ import annotations


class OrchestratorError(Exception):
    """Base class for all engine errors."""

    kind = "OrchestratorError"


class InvalidInput(OrchestratorError, ValueError):
    """Raised when an operation receives malformed input."""

    kind = "InvalidInput"


class WorkspaceNotFound(OrchestratorError, FileNotFoundError):
    kind = "WorkspaceNotFound"

    def __init__(self, feature_id: str):
        super().__init__(f"Workspace not found: {feature_id}")
        self.feature_id = feature_id


class WorkspaceAlreadyExists(OrchestratorError, FileExistsError):
    kind = "WorkspaceAlreadyExists"

    def __init__(self, feature_id: str):
        super().__init__(f"Workspace already exists: {feature_id}")
        self.feature_id = feature_id


class DeletionNotConfirmed(OrchestratorError, ValueError):
    kind = "DeletionNotConfirmed"

    def __init__(self, feature_id: str):
        super().__init__(f"Must confirm deletion of '{feature_id}' by setting confirm=True")
        self.feature_id = feature_id


class ArtifactNotFound(OrchestratorError, FileNotFoundError):
    kind = "ArtifactNotFound"

    def __init__(self, feature_id: str, name: str):
        super().__init__(f"Artifact not found: {name} (feature {feature_id})")
        self.feature_id = feature_id
        self.name = name


class InvalidArtifactContent(OrchestratorError, ValueError):
    kind = "InvalidArtifactContent"


class InvalidArtifactName(OrchestratorError, ValueError):
    kind = "InvalidArtifactName"


class StateNotFound(OrchestratorError, FileNotFoundError):
    kind = "StateNotFound"

    def __init__(self, feature_id: str):
        super().__init__(f"State not found for feature: {feature_id}")
        self.feature_id = feature_id


class StateCorrupt(OrchestratorError, ValueError):
    """The state file exists but cannot be read or parsed."""

    kind = "StateCorrupt"

    def __init__(self, feature_id: str, detail: str):
        super().__init__(f"State for feature '{feature_id}' is corrupt: {detail}")
        self.feature_id = feature_id
        self.detail = detail


class InvalidTransition(OrchestratorError, ValueError):
    """A requested phase or status change is not in the transition graph."""

    kind = "InvalidTransition"


class ConfigError(OrchestratorError, ValueError):
    kind = "ConfigError"


class TestRunNotFound(OrchestratorError, FileNotFoundError):
    kind = "TestRunNotFound"
    __test__ = False

    def __init__(self, feature_id: str, run_id: str):
        super().__init__(f"Test run not found: {run_id} (feature {feature_id})")
        self.feature_id = feature_id
        self.run_id = run_id


class LockTimeout(OrchestratorError, TimeoutError):
    """Another orchestration loop holds the feature lock."""

    kind = "LockTimeout"


# Error kinds that are recorded as data rather than raised.
COVERAGE_GATE_FAILURE = "CoverageGateFailure"
ITERATION_LIMIT_EXCEEDED = "IterationLimitExceeded"
PHASE_TIMEOUT = "PhaseTimeout"
USER_ESCALATION = "UserEscalation"
VERIFICATION_FAILURE = "VerificationFailure"
COLLABORATOR_FAILURE = "CollaboratorFailure"
FEATURE_PAUSED = "FeaturePaused"
