"""Unit tests for the feedback router."""

import pytest

from feature_orchestrator.correlator import correlate
from feature_orchestrator.errors import InvalidInput
from feature_orchestrator.feedback import FeedbackRouter, route
from feature_orchestrator.models import Collaborator


class TestRoute:
    """Test cases for single routing decisions."""

    @pytest.mark.parametrize("category, target", [
        ("frontend", Collaborator.FRONTEND_IMPLEMENTER),
        ("backend", Collaborator.BACKEND_IMPLEMENTER),
        ("assertion", Collaborator.TEST_WRITER),
        ("unknown", Collaborator.TEST_WRITER),
    ])
    def test_default_table(self, category, target):
        """Test default routes within budget."""
        decision = route("AC1", category, iteration=1, max_iterations=5)
        assert decision.target is target
        assert not decision.escalated

    def test_budget_exhausted_escalates(self):
        """Test that reaching the budget escalates regardless of category."""
        for category in ("frontend", "backend", "assertion", "unknown"):
            decision = route("AC2", category, iteration=5, max_iterations=5)
            assert decision.target is Collaborator.USER_ESCALATION
            assert decision.escalated
            assert "5/5" in decision.reason

    def test_unmapped_category_uses_unknown_route(self):
        """Test that categories outside the table route like unknown."""
        assert route("AC1", "infra", 0, 5).target is Collaborator.TEST_WRITER

    def test_configured_routes(self):
        """Test overriding and extending the table."""
        router = FeedbackRouter({"infra": Collaborator.BACKEND_IMPLEMENTER, "unknown": "frontend_implementer"})
        assert router.route("AC1", "infra", 0, 5).target is Collaborator.BACKEND_IMPLEMENTER
        assert router.route("AC1", "mystery", 0, 5).target is Collaborator.FRONTEND_IMPLEMENTER

    def test_invalid_budget(self):
        """Test that negative iterations are rejected."""
        with pytest.raises(InvalidInput):
            route("AC1", "frontend", -1, 5)


class TestRouteFailures:
    """Test cases for routing a whole correlation."""

    def test_routes_failing_and_untested(self, sample_checklist):
        """Test that failing and not-tested items are both routed."""
        outcomes = [
            {"id": "t1", "status": "passed", "tags": ["@AC1"]},
            {"id": "t2", "status": "failed", "tags": ["@AC2"], "error_text": "Timeout waiting for selector"},
            {"id": "t3", "status": "failed", "tags": ["@AC3"], "error_text": "API 500"},
            {"id": "t4", "status": "passed", "tags": ["@AC4"]},
        ]
        decisions = FeedbackRouter().route_failures(correlate(outcomes, sample_checklist), 1, 5)

        by_id = {decision.checklist_id: decision for decision in decisions}
        assert list(by_id) == ["AC2", "AC3", "AC5"]
        assert by_id["AC2"].target is Collaborator.FRONTEND_IMPLEMENTER
        assert by_id["AC3"].target is Collaborator.BACKEND_IMPLEMENTER
        assert by_id["AC5"].target is Collaborator.TEST_WRITER
        assert by_id["AC5"].category == "not_tested"

    def test_all_passed_routes_nothing(self, sample_checklist):
        """Test that a clean run yields no decisions."""
        outcomes = [{"id": f"t{i}", "status": "passed", "tags": [f"@AC{i}"]} for i in range(1, 6)]
        assert FeedbackRouter().route_failures(correlate(outcomes, sample_checklist), 0, 5) == []
