"""Feedback router.

Turns failing checklist items into advisory remediation targets. The router
never mutates state; the orchestration loop decides what to do with the
decisions.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from .errors import InvalidInput
from .models import Collaborator, CorrelationResult, FailureCategory, RouteDecision

logger = logging.getLogger("feature_orchestrator.feedback")

DEFAULT_ROUTES: Dict[str, Collaborator] = {
    FailureCategory.FRONTEND.value: Collaborator.FRONTEND_IMPLEMENTER,
    FailureCategory.BACKEND.value: Collaborator.BACKEND_IMPLEMENTER,
    FailureCategory.ASSERTION.value: Collaborator.TEST_WRITER,
    FailureCategory.UNKNOWN.value: Collaborator.TEST_WRITER,
}

# Category assigned to items that have no executed tests at all
NOT_TESTED_CATEGORY = "not_tested"


class FeedbackRouter:
    """Route failure categories to collaborators."""

    def __init__(self, routes: Optional[Dict[str, Collaborator]] = None):
        self.routes = dict(DEFAULT_ROUTES)
        if routes:
            self.routes.update({category.lower(): Collaborator(target) for category, target in routes.items()})

    def target_for(self, category: str) -> Collaborator:
        """Collaborator for ``category``; unmapped categories use the ``unknown`` route."""
        return self.routes.get((category or "").lower(), self.routes[FailureCategory.UNKNOWN.value])

    def route(self, checklist_id: str, category: str, iteration: int, max_iterations: int) -> RouteDecision:
        """Decide who should address a failing checklist item."""
        if iteration < 0 or max_iterations < 1:
            raise InvalidInput(f"Invalid iteration budget: iteration={iteration}, max_iterations={max_iterations}")

        if iteration >= max_iterations:
            decision = RouteDecision(
                checklist_id=checklist_id,
                category=category,
                target=Collaborator.USER_ESCALATION,
                reason=f"Iteration budget exhausted ({iteration}/{max_iterations}); manual intervention required",
            )
        elif category == NOT_TESTED_CATEGORY:
            decision = RouteDecision(
                checklist_id=checklist_id,
                category=category,
                target=Collaborator.TEST_WRITER,
                reason="No executed test covers this item",
            )
        else:
            target = self.target_for(category)
            decision = RouteDecision(
                checklist_id=checklist_id,
                category=category,
                target=target,
                reason=f"{category} failure routed to {target.value}",
            )

        logger.debug(f"Routed {checklist_id} ({category}) -> {decision.target.value}")
        return decision

    def route_failures(
        self,
        correlation: CorrelationResult,
        iteration: int,
        max_iterations: int,
    ) -> List[RouteDecision]:
        """Route every failing and not-tested item of a correlation."""
        decisions: List[RouteDecision] = []
        for item_id, item in correlation.items.items():
            if item_id in correlation.failing_items:
                category = item.dominant_category or FailureCategory.UNKNOWN.value
            elif item_id in correlation.untested_items:
                category = NOT_TESTED_CATEGORY
            else:
                continue
            decisions.append(self.route(item_id, category, iteration, max_iterations))
        return decisions


def route(checklist_id: str, category: str, iteration: int, max_iterations: int) -> RouteDecision:
    """Route with the default table."""
    return FeedbackRouter().route(checklist_id, category, iteration, max_iterations)
