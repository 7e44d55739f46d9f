"""Data models for the feature orchestrator.

This module contains the core data structures used throughout the engine:
feature state and scope, artifacts, checklist items, coverage records, test
outcomes and the results produced by the gate, correlator and router.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from .errors import InvalidInput, StateCorrupt


class Phase(str, Enum):
    """Workflow phases, in forward order."""

    INITIALIZATION = "initialization"
    SPEC = "spec"
    DOCS_AUDIT = "docs_audit"
    PLANNING = "planning"
    TEST_IDEATION = "test_ideation"
    IMPLEMENTATION = "implementation"
    TEST_IMPLEMENTATION = "test_implementation"
    COVERAGE_VALIDATION = "coverage_validation"
    VERIFICATION = "verification"
    FINALIZATION = "finalization"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"

    @classmethod
    def parse(cls, value: "Phase | str") -> "Phase":
        try:
            return cls(value)
        except ValueError:
            raise InvalidInput(f"Unknown phase: {value!r}") from None


# Linear forward path through the workflow
PHASE_ORDER: List[Phase] = [
    Phase.INITIALIZATION,
    Phase.SPEC,
    Phase.DOCS_AUDIT,
    Phase.PLANNING,
    Phase.TEST_IDEATION,
    Phase.IMPLEMENTATION,
    Phase.TEST_IMPLEMENTATION,
    Phase.COVERAGE_VALIDATION,
    Phase.VERIFICATION,
    Phase.FINALIZATION,
    Phase.COMPLETED,
]

TERMINAL_PHASES = frozenset({Phase.COMPLETED, Phase.FAILED})


class FeatureStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"

    @classmethod
    def parse(cls, value: "FeatureStatus | str") -> "FeatureStatus":
        try:
            return cls(value)
        except ValueError:
            raise InvalidInput(f"Unknown status: {value!r}") from None


TERMINAL_STATUSES = frozenset({FeatureStatus.COMPLETED, FeatureStatus.FAILED})


class ScopeMode(str, Enum):
    FULL = "full"
    FRONTEND_ONLY = "frontend_only"

    @classmethod
    def parse(cls, value: "ScopeMode | str") -> "ScopeMode":
        if isinstance(value, str):
            value = value.replace("-", "_")
        try:
            return cls(value)
        except ValueError:
            raise InvalidInput(f"Unknown scope: {value!r}") from None


class ArtifactType(str, Enum):
    STRUCTURED = "structured"
    DOCUMENT = "document"
    TEXT = "text"

    @classmethod
    def parse(cls, value: "ArtifactType | str") -> "ArtifactType":
        # Original wire names from the MCP tool schema
        aliases = {"json": "structured", "markdown": "document"}
        if isinstance(value, str):
            value = aliases.get(value, value)
        try:
            return cls(value)
        except ValueError:
            raise InvalidInput(f"Unknown artifact type: {value!r}") from None

    @classmethod
    def from_name(cls, name: str) -> "ArtifactType":
        """Classify an artifact by its file suffix."""
        if name.endswith(".json"):
            return cls.STRUCTURED
        if name.endswith(".md"):
            return cls.DOCUMENT
        return cls.TEXT


@dataclass(slots=True)
class Scope:
    """Implementation scope for a feature."""

    mode: ScopeMode = ScopeMode.FULL
    notes: Optional[str] = None

    @property
    def skip_backend(self) -> bool:
        return self.mode == ScopeMode.FRONTEND_ONLY

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "mode": self.mode.value,
            "skip_backend": self.skip_backend,
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Scope":
        """Create from dictionary representation."""
        if not isinstance(data, dict):
            raise InvalidInput(f"Scope must be an object, got {type(data).__name__}")
        mode = data.get("mode", data.get("implementation_scope", ScopeMode.FULL.value))
        return cls(mode=ScopeMode.parse(mode), notes=data.get("notes"))


@dataclass(slots=True)
class FeatureState:
    """Orchestration state for one feature."""

    feature_id: str
    phase: Phase = Phase.INITIALIZATION
    status: FeatureStatus = FeatureStatus.IN_PROGRESS
    scope: Scope = field(default_factory=Scope)
    iteration: int = 0
    max_iterations: int = 5
    phases_completed: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    title: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""
    paused_from: Optional[Phase] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "feature_id": self.feature_id,
            "title": self.title,
            "phase": self.phase.value,
            "status": self.status.value,
            "scope": self.scope.to_dict(),
            "iteration": self.iteration,
            "max_iterations": self.max_iterations,
            "phases_completed": list(self.phases_completed),
            "errors": list(self.errors),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "paused_from": self.paused_from.value if self.paused_from else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeatureState":
        """Create from dictionary representation.

        Raises :class:`StateCorrupt` when required fields are missing or hold
        values outside their enumerations.
        """
        if not isinstance(data, dict):
            raise StateCorrupt("<unknown>", "state is not a JSON object")
        feature_id = data.get("feature_id")
        if not isinstance(feature_id, str) or not feature_id:
            raise StateCorrupt("<unknown>", "missing feature_id")
        try:
            paused_from = data.get("paused_from")
            state = cls(
                feature_id=feature_id,
                title=data.get("title"),
                phase=Phase.parse(data["phase"]),
                status=FeatureStatus.parse(data["status"]),
                scope=Scope.from_dict(data.get("scope") or {}),
                iteration=int(data.get("iteration", 0)),
                max_iterations=int(data.get("max_iterations", 5)),
                phases_completed=list(data.get("phases_completed", [])),
                errors=list(data.get("errors", [])),
                created_at=data.get("created_at", ""),
                updated_at=data.get("updated_at", ""),
                paused_from=Phase.parse(paused_from) if paused_from else None,
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise StateCorrupt(feature_id, str(e)) from e
        return state

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES or self.phase in TERMINAL_PHASES


@dataclass(slots=True)
class Artifact:
    """A named blob stored in a feature workspace."""

    name: str
    type: ArtifactType
    size: int
    modified_at: str
    path: str = ""
    content: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        data = {
            "name": self.name,
            "type": self.type.value,
            "path": self.path,
            "size": self.size,
            "modified_at": self.modified_at,
        }
        if self.content is not None:
            data["content"] = self.content
        return data


@dataclass(slots=True)
class WorkspaceInfo:
    """Metadata for a feature workspace."""

    feature_id: str
    root_path: str
    created_at: str
    modified_at: str
    state: FeatureState
    artifacts: List[Artifact] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "feature_id": self.feature_id,
            "workspace_path": self.root_path,
            "created_at": self.created_at,
            "modified_at": self.modified_at,
            "state": self.state.to_dict(),
            "artifacts": [artifact.to_dict() for artifact in self.artifacts],
        }


VERIFICATION_HINTS = ("E2E", "unit", "integration")
PRIORITIES = ("P0", "P1", "P2")


def _normalize_hint(value: str) -> str:
    for hint in VERIFICATION_HINTS:
        if value.strip().lower() == hint.lower():
            return hint
    raise InvalidInput(f"Unknown verification hint: {value!r}")


def normalize_tag(tag: str) -> str:
    """Canonical form used to compare test tags and checklist ids."""
    return tag.strip().lstrip("@").lower()


@dataclass(slots=True)
class ChecklistItem:
    """One acceptance criterion."""

    id: str
    text: str = ""
    priority: str = "P1"
    verification_hint: List[str] = field(default_factory=list)
    implementation_area: Optional[str] = None

    @property
    def requires_e2e(self) -> bool:
        return "E2E" in self.verification_hint

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "text": self.text,
            "priority": self.priority,
            "verification_hint": list(self.verification_hint),
            "implementation_area": self.implementation_area,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChecklistItem":
        """Create from dictionary representation.

        Accepts the field aliases produced by checklist collaborators
        (``criterion``, ``verification``, ``area``).
        """
        if not isinstance(data, dict):
            raise InvalidInput(f"Checklist item must be an object, got {type(data).__name__}")
        item_id = data.get("id")
        if not isinstance(item_id, str) or not item_id.strip():
            raise InvalidInput("Checklist item is missing 'id'")

        raw_hints = data.get("verification_hint", data.get("verification", []))
        if isinstance(raw_hints, str):
            raw_hints = [raw_hints]
        if not isinstance(raw_hints, list):
            raise InvalidInput(f"Checklist item {item_id}: verification_hint must be a list")
        hints: List[str] = []
        for hint in raw_hints:
            normalized = _normalize_hint(str(hint))
            if normalized not in hints:
                hints.append(normalized)

        priority = str(data.get("priority", "P1")).upper()
        if priority not in PRIORITIES:
            raise InvalidInput(f"Checklist item {item_id}: unknown priority {priority!r}")

        return cls(
            id=item_id.strip(),
            text=data.get("text", data.get("criterion", "")),
            priority=priority,
            verification_hint=hints,
            implementation_area=data.get("implementation_area", data.get("area")),
        )


def parse_checklist(data: Any) -> List[ChecklistItem]:
    """Parse a checklist artifact: a list of items or ``{"checklist": [...]}``."""
    if isinstance(data, dict):
        data = data.get("checklist")
    if not isinstance(data, list):
        raise InvalidInput("Checklist must be a list of items or an object with a 'checklist' list")
    items = [ChecklistItem.from_dict(entry) for entry in data]
    seen: set[str] = set()
    for item in items:
        if item.id in seen:
            raise InvalidInput(f"Duplicate checklist id: {item.id}")
        seen.add(item.id)
    return items


@dataclass(slots=True)
class TestRef:
    """Reference to a test associated with a checklist item."""

    __test__ = False

    test_id: str
    test_type: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    file: Optional[str] = None

    @property
    def is_e2e(self) -> bool:
        if self.test_type and self.test_type.strip().lower() == "e2e":
            return True
        return any(normalize_tag(tag) == "e2e" for tag in self.tags)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "test_id": self.test_id,
            "test_type": self.test_type,
            "tags": list(self.tags),
            "file": self.file,
        }

    @classmethod
    def from_value(cls, value: Any) -> "TestRef":
        """Accept a bare test name or an object with id/type/tags."""
        if isinstance(value, str):
            return cls(test_id=value)
        if not isinstance(value, dict):
            raise InvalidInput(f"Test reference must be a string or object, got {type(value).__name__}")
        test_id = value.get("test_id", value.get("id", value.get("name")))
        if not test_id:
            raise InvalidInput("Test reference is missing an id")
        tags = value.get("tags", [])
        if not isinstance(tags, list):
            raise InvalidInput(f"Test reference {test_id}: tags must be a list")
        return cls(
            test_id=str(test_id),
            test_type=value.get("test_type", value.get("type")),
            tags=[str(tag) for tag in tags],
            file=value.get("file"),
        )


@dataclass(slots=True)
class CoverageEntry:
    tests: List[TestRef] = field(default_factory=list)
    status: Optional[str] = None

    @property
    def has_tests(self) -> bool:
        # skipped-only coverage does not count as tested
        return bool(self.tests) and self.status != "skipped"

    def to_dict(self) -> Dict[str, Any]:
        return {"tests": [test.to_dict() for test in self.tests], "status": self.status}


@dataclass(slots=True)
class CoverageRecord:
    """Test coverage produced by the test-authoring collaborator."""

    per_item: Dict[str, CoverageEntry]
    total_items: int
    items_with_tests: int
    blockers: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "per_item": {key: entry.to_dict() for key, entry in self.per_item.items()},
            "total_items": self.total_items,
            "items_with_tests": self.items_with_tests,
            "blockers": list(self.blockers),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CoverageRecord":
        """Create from dictionary representation, validating required fields."""
        if not isinstance(data, dict):
            raise InvalidInput("Coverage record must be an object")
        for required in ("total_items", "items_with_tests"):
            if required not in data:
                raise InvalidInput(f"Coverage record is missing '{required}'")
            if not isinstance(data[required], int) or isinstance(data[required], bool):
                raise InvalidInput(f"Coverage record field '{required}' must be an integer")

        raw_items = data.get("per_item", {})
        if not isinstance(raw_items, dict):
            raise InvalidInput("Coverage record 'per_item' must be an object")
        per_item: Dict[str, CoverageEntry] = {}
        for item_id, raw in raw_items.items():
            if isinstance(raw, list):
                raw = {"tests": raw}
            if not isinstance(raw, dict):
                raise InvalidInput(f"Coverage entry for {item_id} must be an object")
            tests = raw.get("tests", [])
            if not isinstance(tests, list):
                raise InvalidInput(f"Coverage entry for {item_id}: tests must be a list")
            per_item[item_id] = CoverageEntry(
                tests=[TestRef.from_value(test) for test in tests],
                status=raw.get("status"),
            )

        blockers = data.get("blockers", [])
        if not isinstance(blockers, list):
            raise InvalidInput("Coverage record 'blockers' must be a list")

        return cls(
            per_item=per_item,
            total_items=data["total_items"],
            items_with_tests=data["items_with_tests"],
            blockers=[str(blocker) for blocker in blockers],
        )


class OutcomeStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @classmethod
    def parse(cls, value: Any) -> "OutcomeStatus":
        # Playwright reports timeouts as their own status
        if isinstance(value, str) and value.lower() in ("timedout", "timed_out"):
            return cls.FAILED
        try:
            return cls(value)
        except ValueError:
            raise InvalidInput(f"Unknown test status: {value!r}") from None


@dataclass(slots=True)
class TestOutcome:
    """Result of one executed test."""

    __test__ = False

    id: str
    status: OutcomeStatus
    tags: List[str] = field(default_factory=list)
    error_text: Optional[str] = None
    name: Optional[str] = None
    file: Optional[str] = None
    duration: float = 0.0

    def has_tag(self, tag: str) -> bool:
        wanted = normalize_tag(tag)
        return any(normalize_tag(own) == wanted for own in self.tags)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "status": self.status.value,
            "tags": list(self.tags),
            "error_text": self.error_text,
            "name": self.name,
            "file": self.file,
            "duration": self.duration,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TestOutcome":
        """Create from dictionary representation.

        Accepts the executor's field names (``testId``, ``testName``,
        ``error.message``) alongside the canonical ones.
        """
        if not isinstance(data, dict):
            raise InvalidInput("Test outcome must be an object")
        test_id = data.get("id", data.get("testId"))
        if not test_id:
            raise InvalidInput("Test outcome is missing 'id'")
        if "status" not in data:
            raise InvalidInput(f"Test outcome {test_id} is missing 'status'")
        tags = data.get("tags", [])
        if not isinstance(tags, list):
            raise InvalidInput(f"Test outcome {test_id}: tags must be a list")

        error_text = data.get("error_text")
        error = data.get("error")
        if error_text is None and isinstance(error, dict):
            error_text = error.get("message")
        elif error_text is None and isinstance(error, str):
            error_text = error

        return cls(
            id=str(test_id),
            status=OutcomeStatus.parse(data["status"]),
            tags=[str(tag) for tag in tags],
            error_text=error_text,
            name=data.get("name", data.get("testName")),
            file=data.get("file"),
            duration=float(data.get("duration", 0) or 0),
        )


def parse_outcomes(data: Iterable[Any]) -> List[TestOutcome]:
    if isinstance(data, dict):
        data = data.get("results", data.get("outcomes"))
    if not isinstance(data, list):
        raise InvalidInput("Test outcomes must be a list")
    return [item if isinstance(item, TestOutcome) else TestOutcome.from_dict(item) for item in data]


class ItemStatus(str, Enum):
    NOT_TESTED = "not_tested"
    PASSED = "passed"
    FAILED = "failed"


class FailureCategory(str, Enum):
    FRONTEND = "frontend"
    BACKEND = "backend"
    ASSERTION = "assertion"
    UNKNOWN = "unknown"


@dataclass(slots=True)
class GateResult:
    """Coverage gate decision."""

    status: str
    missing: List[str] = field(default_factory=list)
    e2e_missing: List[str] = field(default_factory=list)
    blockers: List[str] = field(default_factory=list)
    reason: str = ""

    @property
    def passed(self) -> bool:
        return self.status == "pass"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "missing": list(self.missing),
            "e2e_missing": list(self.e2e_missing),
            "blockers": list(self.blockers),
            "reason": self.reason,
        }


@dataclass(slots=True)
class FailureRecord:
    """A failing test outcome and its category."""

    test_id: str
    category: str
    checklist_ids: List[str] = field(default_factory=list)
    error_text: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "test_id": self.test_id,
            "category": self.category,
            "checklist_ids": list(self.checklist_ids),
            "error_text": self.error_text,
        }


@dataclass(slots=True)
class ItemResult:
    """Aggregate result for a single checklist item."""

    checklist_id: str
    status: ItemStatus
    tests: List[str] = field(default_factory=list)
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    dominant_category: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checklist_id": self.checklist_id,
            "status": self.status.value,
            "tests": list(self.tests),
            "passed": self.passed,
            "failed": self.failed,
            "skipped": self.skipped,
            "dominant_category": self.dominant_category,
        }


@dataclass(slots=True)
class CorrelationResult:
    """Per-checklist-item status plus the failure list."""

    items: Dict[str, ItemResult]
    failures: List[FailureRecord] = field(default_factory=list)

    @property
    def failing_items(self) -> List[str]:
        return [key for key, item in self.items.items() if item.status == ItemStatus.FAILED]

    @property
    def untested_items(self) -> List[str]:
        return [key for key, item in self.items.items() if item.status == ItemStatus.NOT_TESTED]

    @property
    def all_passed(self) -> bool:
        return bool(self.items) and all(item.status == ItemStatus.PASSED for item in self.items.values())

    def summary(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in ItemStatus}
        for item in self.items.values():
            counts[item.status.value] += 1
        counts["total"] = len(self.items)
        return counts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": {key: item.to_dict() for key, item in self.items.items()},
            "failures": [failure.to_dict() for failure in self.failures],
            "failing_items": self.failing_items,
            "untested_items": self.untested_items,
            "summary": self.summary(),
        }


class Collaborator(str, Enum):
    """Recipients of remediation work."""

    FRONTEND_IMPLEMENTER = "frontend_implementer"
    BACKEND_IMPLEMENTER = "backend_implementer"
    TEST_WRITER = "test_writer"
    USER_ESCALATION = "user_escalation"


@dataclass(slots=True)
class RouteDecision:
    """Advisory routing for one failing checklist item."""

    checklist_id: str
    category: str
    target: Collaborator
    reason: str

    @property
    def escalated(self) -> bool:
        return self.target == Collaborator.USER_ESCALATION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checklist_id": self.checklist_id,
            "category": self.category,
            "target": self.target.value,
            "reason": self.reason,
        }


@dataclass(slots=True)
class TestRun:
    """A persisted test execution."""

    __test__ = False

    run_id: str
    feature_id: str
    created_at: str
    outcomes: List[TestOutcome] = field(default_factory=list)

    def summary(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in OutcomeStatus}
        for outcome in self.outcomes:
            counts[outcome.status.value] += 1
        counts["total"] = len(self.outcomes)
        return counts

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "run_id": self.run_id,
            "feature_id": self.feature_id,
            "created_at": self.created_at,
            "summary": self.summary(),
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TestRun":
        """Create from dictionary representation."""
        return cls(
            run_id=data["run_id"],
            feature_id=data["feature_id"],
            created_at=data.get("created_at", ""),
            outcomes=[TestOutcome.from_dict(item) for item in data.get("outcomes", [])],
        )


@dataclass(slots=True)
class PhaseHalt:
    """Why an orchestration run stopped before completion."""

    phase: str
    kind: str
    message: str
    checklist_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase,
            "kind": self.kind,
            "message": self.message,
            "checklist_ids": list(self.checklist_ids),
        }
