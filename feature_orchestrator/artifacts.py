"""Artifact repository: named blobs inside a feature workspace."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, List

from .errors import (
    ArtifactNotFound,
    InvalidArtifactContent,
    InvalidArtifactName,
    WorkspaceNotFound,
)
from .models import Artifact, ArtifactType
from .orchestrator_logging import (
    log_artifact_event,
    log_error_with_context,
    log_operation,
    log_performance,
)
from .state_machine import SCOPE_FILE, STATE_FILE
from .storage import atomic_write_text, is_hidden, mtime_iso

logger = logging.getLogger("feature_orchestrator.artifacts")

RESERVED_NAMES = frozenset({STATE_FILE, SCOPE_FILE})


def validate_artifact_name(name: str) -> str:
    if not isinstance(name, str) or not name.strip():
        raise InvalidArtifactName("Artifact name must be a non-empty string")
    if "/" in name or "\\" in name or name in (".", ".."):
        raise InvalidArtifactName(f"Artifact name must be a plain file name: {name!r}")
    if name.startswith("."):
        raise InvalidArtifactName(f"Artifact name cannot be hidden: {name!r}")
    if "\x00" in name:
        raise InvalidArtifactName("Artifact name cannot contain NUL")
    return name


def parse_structured(content: str, *, name: str = "") -> Any:
    """Parse structured content, requiring a JSON object or array at top level."""
    try:
        data = json.loads(content)
    except (TypeError, ValueError) as e:
        raise InvalidArtifactContent(f"Artifact {name or '<unnamed>'} is not valid JSON: {e}") from e
    if not isinstance(data, (dict, list)):
        raise InvalidArtifactContent(
            f"Artifact {name or '<unnamed>'} must be a JSON object or array, got {type(data).__name__}"
        )
    return data


class ArtifactRepository:
    """Read and write artifacts of the workspaces under ``workspaces_dir``."""

    def __init__(self, workspaces_dir: Path | str):
        self.workspaces_dir = Path(workspaces_dir)

    def _workspace_dir(self, feature_id: str) -> Path:
        path = self.workspaces_dir / feature_id
        if not path.is_dir():
            raise WorkspaceNotFound(feature_id)
        return path

    @log_performance("save_artifact")
    def save(
        self,
        feature_id: str,
        name: str,
        content: str,
        artifact_type: ArtifactType | str = ArtifactType.STRUCTURED,
    ) -> Artifact:
        """Write ``content`` under ``name``, replacing any previous version.

        Structured content is validated before anything touches disk.
        """
        artifact_type = ArtifactType.parse(artifact_type)
        try:
            validate_artifact_name(name)
            if name in RESERVED_NAMES:
                raise InvalidArtifactName(f"{name} is managed by the state machine and cannot be saved directly")
            if not isinstance(content, str):
                raise InvalidArtifactContent(f"Artifact {name} content must be a string")
            if artifact_type == ArtifactType.STRUCTURED:
                parse_structured(content, name=name)

            path = self._workspace_dir(feature_id) / name
            with log_operation("save_artifact", feature_id=feature_id, artifact=name) as fields:
                atomic_write_text(path, content)
                fields["bytes"] = len(content.encode("utf-8"))
        except Exception as e:
            log_error_with_context(e, {
                "operation": "save_artifact",
                "feature_id": feature_id,
                "artifact": name,
                "type": artifact_type.value,
            })
            raise

        stat = path.stat()
        log_artifact_event("saved", name, feature_id, type=artifact_type.value, size=stat.st_size)
        return Artifact(
            name=name,
            type=artifact_type,
            size=stat.st_size,
            modified_at=mtime_iso(path),
            path=str(path),
        )

    def save_structured(self, feature_id: str, name: str, data: Any) -> Artifact:
        """Serialize ``data`` as JSON and save it as a structured artifact."""
        return self.save(feature_id, name, json.dumps(data, indent=2) + "\n", ArtifactType.STRUCTURED)

    def get(self, feature_id: str, name: str) -> Artifact:
        """Return an artifact with its content exactly as saved."""
        validate_artifact_name(name)
        path = self._workspace_dir(feature_id) / name
        if not path.is_file():
            raise ArtifactNotFound(feature_id, name)
        content = path.read_bytes().decode("utf-8")
        return Artifact(
            name=name,
            type=ArtifactType.from_name(name),
            size=len(content.encode("utf-8")),
            modified_at=mtime_iso(path),
            path=str(path),
            content=content,
        )

    def get_structured(self, feature_id: str, name: str) -> Any:
        """Return the parsed JSON content of an artifact."""
        artifact = self.get(feature_id, name)
        return parse_structured(artifact.content or "", name=name)

    def exists(self, feature_id: str, name: str) -> bool:
        return (self._workspace_dir(feature_id) / name).is_file()

    def list(self, feature_id: str) -> List[Artifact]:
        """List visible files of the workspace, sorted by name.

        Entries that vanish or cannot be stat'ed while listing are skipped.
        """
        artifacts: List[Artifact] = []
        for path in sorted(self._workspace_dir(feature_id).iterdir()):
            if is_hidden(path):
                continue
            try:
                if not path.is_file():
                    continue
                artifacts.append(Artifact(
                    name=path.name,
                    type=ArtifactType.from_name(path.name),
                    size=path.stat().st_size,
                    modified_at=mtime_iso(path),
                    path=str(path),
                ))
            except OSError as e:
                logger.warning(f"Skipping unreadable artifact {path}: {e}")
        return artifacts
