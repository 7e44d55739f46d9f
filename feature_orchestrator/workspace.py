"""Workspace management for the feature orchestrator.

A workspace is one directory per feature under the workspaces root. It holds
the feature's ``state.json``, ``scope.json`` and every artifact produced by
collaborators. Workspaces appear and disappear atomically: creation builds the
directory under a hidden staging name and renames it into place; deletion
renames it to a hidden tombstone before removing it.
"""

from __future__ import annotations

import logging
import re
import shutil
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from .artifacts import ArtifactRepository
from .config import DEFAULT_MAX_ITERATIONS
from .errors import (
    DeletionNotConfirmed,
    InvalidInput,
    StateCorrupt,
    StateNotFound,
    WorkspaceAlreadyExists,
    WorkspaceNotFound,
)
from .models import FeatureStatus, Scope, ScopeMode, WorkspaceInfo
from .orchestrator_logging import (
    log_error_with_context,
    log_operation,
    log_performance,
    observability_hooks,
)
from .state_machine import SCOPE_FILE, STATE_FILE, StateMachine, build_initial_state
from .storage import atomic_write_json, is_hidden, mtime_iso

logger = logging.getLogger("feature_orchestrator.workspace")

FEATURE_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
STAGING_PREFIX = ".staging-"
TOMBSTONE_PREFIX = ".deleted-"


def validate_feature_id(feature_id: str) -> str:
    if not isinstance(feature_id, str) or not FEATURE_ID_PATTERN.match(feature_id):
        raise InvalidInput(
            f"Invalid feature id {feature_id!r}: use letters, digits, '.', '_' or '-', starting with a letter or digit"
        )
    return feature_id


def _slugify(value: str) -> str:
    value = value.lower()
    value = re.sub(r"[^a-z0-9]+", "-", value)
    value = re.sub(r"-+", "-", value)
    return value.strip("-")


def generate_feature_id(short_name: str, now: Optional[datetime] = None) -> str:
    """Build a feature id ``feat-<slug>-<YYYYMMDDHHMMSS>`` from a short name."""
    slug = _slugify(short_name or "")
    if not slug:
        raise InvalidInput("Short name must contain at least one letter or digit")
    stamp = (now or datetime.now(timezone.utc)).astimezone(timezone.utc).strftime("%Y%m%d%H%M%S")
    return f"feat-{slug}-{stamp}"


class WorkspaceStore:
    """Create, inspect, list and delete feature workspaces."""

    def __init__(self, workspaces_dir: Path | str, *, max_iterations: int = DEFAULT_MAX_ITERATIONS):
        self.workspaces_dir = Path(workspaces_dir)
        self.max_iterations = max_iterations
        self.states = StateMachine(self.workspaces_dir)
        self.artifacts = ArtifactRepository(self.workspaces_dir)

    def path_for(self, feature_id: str) -> Path:
        return self.workspaces_dir / validate_feature_id(feature_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @log_performance("create_workspace")
    def create(
        self,
        feature_id: str,
        *,
        title: Optional[str] = None,
        scope: ScopeMode | str = ScopeMode.FULL,
        scope_notes: Optional[str] = None,
        max_iterations: Optional[int] = None,
    ) -> WorkspaceInfo:
        """Create a workspace with its initial state.

        Raises :class:`WorkspaceAlreadyExists` if a workspace with the same id
        is already present.
        """
        target = self.path_for(feature_id)
        if target.exists():
            raise WorkspaceAlreadyExists(feature_id)

        scope_value = Scope(mode=ScopeMode.parse(scope), notes=scope_notes)
        state = build_initial_state(
            feature_id,
            title=title,
            scope=scope_value,
            max_iterations=max_iterations if max_iterations is not None else self.max_iterations,
        )

        self.workspaces_dir.mkdir(parents=True, exist_ok=True)
        staging = self.workspaces_dir / f"{STAGING_PREFIX}{feature_id}-{uuid.uuid4().hex[:8]}"
        try:
            with log_operation("create_workspace", feature_id=feature_id):
                staging.mkdir()
                atomic_write_json(staging / STATE_FILE, state.to_dict())
                atomic_write_json(staging / SCOPE_FILE, scope_value.to_dict())
                try:
                    # rename only replaces an empty directory; a populated target raises
                    staging.rename(target)
                except OSError as e:
                    if target.exists():
                        raise WorkspaceAlreadyExists(feature_id) from e
                    raise
        except Exception as e:
            shutil.rmtree(staging, ignore_errors=True)
            log_error_with_context(e, {"operation": "create_workspace", "feature_id": feature_id})
            raise

        logger.info(f"Created workspace {feature_id} at {target}")
        observability_hooks.log_workflow_event(
            "workspace_created",
            feature_id=feature_id,
            scope=scope_value.mode.value,
            path=str(target),
        )
        return self.get(feature_id)

    def get(self, feature_id: str) -> WorkspaceInfo:
        """Return metadata, state and artifact listing for a workspace."""
        path = self.path_for(feature_id)
        if not path.is_dir():
            raise WorkspaceNotFound(feature_id)
        state = self.states.get(feature_id)
        return WorkspaceInfo(
            feature_id=feature_id,
            root_path=str(path),
            created_at=state.created_at,
            modified_at=mtime_iso(path),
            state=state,
            artifacts=self.artifacts.list(feature_id),
        )

    def list(self, status_filter: Optional[FeatureStatus | str] = None) -> List[WorkspaceInfo]:
        """List workspaces, most recently modified first.

        ``None`` or ``"all"`` returns every workspace; any other value keeps
        only workspaces with that status. Workspaces whose state cannot be
        read are left out.
        """
        wanted: Optional[FeatureStatus] = None
        if status_filter is not None and status_filter != "all":
            wanted = FeatureStatus.parse(status_filter)

        if not self.workspaces_dir.is_dir():
            return []

        entries: List[tuple[float, WorkspaceInfo]] = []
        for path in self.workspaces_dir.iterdir():
            if is_hidden(path) or not path.is_dir() or not FEATURE_ID_PATTERN.match(path.name):
                continue
            try:
                info = self.get(path.name)
                modified = path.stat().st_mtime
            except (StateNotFound, StateCorrupt, WorkspaceNotFound, OSError) as e:
                logger.debug(f"Skipping workspace {path.name}: {e}")
                continue
            if wanted is not None and info.state.status != wanted:
                continue
            entries.append((modified, info))

        entries.sort(key=lambda entry: (entry[0], entry[1].feature_id), reverse=True)
        return [info for _, info in entries]

    @log_performance("delete_workspace")
    def delete(self, feature_id: str, confirm: bool = False) -> str:
        """Remove a workspace and all of its artifacts.

        Returns the path that was removed.
        """
        if not confirm:
            raise DeletionNotConfirmed(feature_id)
        path = self.path_for(feature_id)
        if not path.is_dir():
            raise WorkspaceNotFound(feature_id)

        tombstone = self.workspaces_dir / f"{TOMBSTONE_PREFIX}{feature_id}-{uuid.uuid4().hex[:8]}"
        try:
            with log_operation("delete_workspace", feature_id=feature_id):
                path.rename(tombstone)
                shutil.rmtree(tombstone)
        except FileNotFoundError as e:
            raise WorkspaceNotFound(feature_id) from e
        except Exception as e:
            log_error_with_context(e, {"operation": "delete_workspace", "feature_id": feature_id})
            raise

        logger.info(f"Deleted workspace {feature_id}")
        observability_hooks.log_workflow_event("workspace_deleted", feature_id=feature_id, path=str(path))
        return str(path)
