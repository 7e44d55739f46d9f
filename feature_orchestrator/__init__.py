"""Feature orchestrator engine - core functionality package."""

from .artifacts import ArtifactRepository
from .correlator import FailureClassifier, TestResultCorrelator
from .coverage import CoverageGate
from .feedback import FeedbackRouter
from .state_machine import StateMachine
from .test_runs import TestRunStore
from .workflow import Collaborators, OrchestrationLoop
from .workspace import WorkspaceStore

__all__ = [
    "ArtifactRepository",
    "Collaborators",
    "CoverageGate",
    "FailureClassifier",
    "FeedbackRouter",
    "OrchestrationLoop",
    "StateMachine",
    "TestResultCorrelator",
    "TestRunStore",
    "WorkspaceStore",
]
