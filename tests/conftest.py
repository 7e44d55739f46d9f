"""Shared fixtures for the feature orchestrator test suite."""

import pytest

from feature_orchestrator.orchestrator_logging import observability_hooks, performance_monitor
from feature_orchestrator.workspace import WorkspaceStore


@pytest.fixture(autouse=True)
def reset_observability():
    """Keep global metrics and hooks isolated between tests."""
    performance_monitor.reset()
    observability_hooks.clear_hooks()
    yield
    performance_monitor.reset()
    observability_hooks.clear_hooks()


@pytest.fixture
def workspaces_dir(tmp_path):
    path = tmp_path / ".claude" / "feature-dev"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def store(workspaces_dir):
    return WorkspaceStore(workspaces_dir)


@pytest.fixture
def sample_checklist():
    """Five acceptance criteria; AC2 and AC5 need E2E coverage."""
    return [
        {"id": "AC1", "text": "User can open the form", "priority": "P0", "verification_hint": ["unit"],
         "implementation_area": "frontend"},
        {"id": "AC2", "text": "Form submits", "priority": "P0", "verification_hint": ["E2E"],
         "implementation_area": "frontend"},
        {"id": "AC3", "text": "Data is stored", "priority": "P1", "verification_hint": ["integration"],
         "implementation_area": "backend"},
        {"id": "AC4", "text": "Validation errors render", "priority": "P1", "verification_hint": ["unit"],
         "implementation_area": "frontend"},
        {"id": "AC5", "text": "Confirmation is shown", "priority": "P2", "verification_hint": ["E2E", "unit"],
         "implementation_area": "frontend"},
    ]


@pytest.fixture
def full_coverage():
    """Coverage record in which every sample checklist item is tested."""
    return {
        "per_item": {
            "AC1": {"tests": [{"test_id": "form opens", "test_type": "unit"}]},
            "AC2": {"tests": [{"test_id": "submit flow", "test_type": "e2e", "tags": ["@AC2"]}]},
            "AC3": {"tests": ["stores data"]},
            "AC4": {"tests": ["renders errors"]},
            "AC5": {"tests": [{"test_id": "confirmation", "tags": ["@e2e", "@AC5"]}]},
        },
        "total_items": 5,
        "items_with_tests": 5,
        "blockers": [],
    }
