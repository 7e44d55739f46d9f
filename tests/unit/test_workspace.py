"""Unit tests for feature workspace management.

This module tests workspace creation, inspection, listing, deletion and
feature id generation.
"""

import json
import os
import time
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from feature_orchestrator.errors import (
    DeletionNotConfirmed,
    InvalidInput,
    StateCorrupt,
    WorkspaceAlreadyExists,
    WorkspaceNotFound,
)
from feature_orchestrator.models import FeatureStatus, Phase, ScopeMode
from feature_orchestrator.workspace import WorkspaceStore, generate_feature_id, validate_feature_id


class TestWorkspaceCreation:
    """Test cases for workspace creation."""

    def test_create_writes_state_and_scope(self, store, workspaces_dir):
        """Test that a new workspace holds state.json and scope.json."""
        info = store.create("feat-login", title="Login", scope="frontend_only", scope_notes="API exists")

        root = workspaces_dir / "feat-login"
        assert info.root_path == str(root)
        assert (root / "state.json").is_file()
        assert json.loads((root / "scope.json").read_text()) == {
            "mode": "frontend_only",
            "skip_backend": True,
            "notes": "API exists",
        }
        assert info.state.phase is Phase.INITIALIZATION
        assert info.state.status is FeatureStatus.IN_PROGRESS
        assert info.state.scope.mode is ScopeMode.FRONTEND_ONLY
        assert {artifact.name for artifact in info.artifacts} == {"state.json", "scope.json"}

    def test_create_duplicate(self, store):
        """Test that ids are unique."""
        store.create("feat-login")
        with pytest.raises(WorkspaceAlreadyExists):
            store.create("feat-login")

    def test_create_leaves_no_staging_directory(self, store, workspaces_dir):
        """Test that staging directories are renamed away."""
        store.create("feat-login")
        assert [p.name for p in workspaces_dir.iterdir()] == ["feat-login"]

    def test_failed_create_leaves_nothing(self, store, workspaces_dir):
        """Test that a failure mid-create does not leave a partial workspace."""
        with patch("feature_orchestrator.workspace.atomic_write_json", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                store.create("feat-login")
        assert list(workspaces_dir.iterdir()) == []

    def test_max_iterations_from_store(self, workspaces_dir):
        """Test that the store's configured budget is used."""
        store = WorkspaceStore(workspaces_dir, max_iterations=3)
        assert store.create("feat-a").state.max_iterations == 3
        assert store.create("feat-b", max_iterations=7).state.max_iterations == 7

    @pytest.mark.parametrize("feature_id", ["", "../escape", ".hidden", "a/b", "with space"])
    def test_invalid_feature_ids(self, store, feature_id):
        """Test that feature ids cannot escape the workspaces root."""
        with pytest.raises(InvalidInput):
            store.create(feature_id)

    def test_valid_feature_id(self):
        """Test an accepted feature id."""
        assert validate_feature_id("feat-login_v2.1") == "feat-login_v2.1"


class TestWorkspaceGet:
    """Test cases for reading workspaces."""

    def test_get_missing(self, store):
        """Test reading an unknown workspace."""
        with pytest.raises(WorkspaceNotFound):
            store.get("feat-none")

    def test_get_corrupt_state(self, store, workspaces_dir):
        """Test reading a workspace with a broken state file."""
        store.create("feat-login")
        (workspaces_dir / "feat-login" / "state.json").write_text("[]")
        with pytest.raises(StateCorrupt):
            store.get("feat-login")

    def test_get_lists_artifacts(self, store):
        """Test that artifacts appear in the workspace info."""
        store.create("feat-login")
        store.artifacts.save("feat-login", "spec.json", '{"title": "Login"}')
        info = store.get("feat-login")
        assert "spec.json" in [artifact.name for artifact in info.artifacts]
        assert info.to_dict()["workspace_path"] == info.root_path


class TestWorkspaceList:
    """Test cases for listing workspaces."""

    def test_list_empty_root(self, tmp_path):
        """Test listing when the root does not exist yet."""
        assert WorkspaceStore(tmp_path / "missing").list() == []

    def test_list_newest_first(self, store, workspaces_dir):
        """Test ordering by modification time."""
        store.create("feat-old")
        store.create("feat-new")
        past = time.time() - 100
        os.utime(workspaces_dir / "feat-old", (past, past))

        assert [info.feature_id for info in store.list()] == ["feat-new", "feat-old"]
        assert [info.feature_id for info in store.list("all")] == ["feat-new", "feat-old"]

    def test_list_filters_by_status(self, store):
        """Test the status filter."""
        store.create("feat-a")
        store.create("feat-b")
        store.states.update("feat-b", phase="failed")

        assert [info.feature_id for info in store.list("failed")] == ["feat-b"]
        assert [info.feature_id for info in store.list(FeatureStatus.IN_PROGRESS)] == ["feat-a"]

    @pytest.mark.parametrize("scope", ["full", ["x"], 5])
    def test_list_skips_non_object_scope(self, store, workspaces_dir, scope):
        """Test that a state whose scope is not an object is excluded."""
        store.create("feat-good")
        store.create("feat-bad")
        path = workspaces_dir / "feat-bad" / "state.json"
        data = json.loads(path.read_text())
        data["scope"] = scope
        path.write_text(json.dumps(data))

        assert [info.feature_id for info in store.list()] == ["feat-good"]
        with pytest.raises(StateCorrupt):
            store.get("feat-bad")

    def test_list_skips_corrupt_entries(self, store, workspaces_dir):
        """Test that workspaces with unreadable state are silently excluded."""
        store.create("feat-good")
        store.create("feat-bad")
        (workspaces_dir / "feat-bad" / "state.json").write_text("{oops")
        (workspaces_dir / "not-a-workspace").mkdir()

        assert [info.feature_id for info in store.list()] == ["feat-good"]

    def test_list_unknown_filter(self, store):
        """Test that an unknown status filter is invalid input."""
        with pytest.raises(InvalidInput):
            store.list("done")


class TestWorkspaceDelete:
    """Test cases for deleting workspaces."""

    def test_delete_requires_confirmation(self, store, workspaces_dir):
        """Test that deletion must be confirmed."""
        store.create("feat-login")
        with pytest.raises(DeletionNotConfirmed):
            store.delete("feat-login")
        assert (workspaces_dir / "feat-login").is_dir()

    def test_delete_removes_everything(self, store, workspaces_dir):
        """Test that deletion removes the directory and artifacts."""
        store.create("feat-login")
        store.artifacts.save("feat-login", "spec.json", "{}")
        removed = store.delete("feat-login", confirm=True)

        assert removed == str(workspaces_dir / "feat-login")
        assert list(workspaces_dir.iterdir()) == []
        with pytest.raises(WorkspaceNotFound):
            store.get("feat-login")

    def test_delete_missing(self, store):
        """Test deleting an unknown workspace."""
        with pytest.raises(WorkspaceNotFound):
            store.delete("feat-none", confirm=True)

    def test_recreate_after_delete(self, store):
        """Test that an id can be reused after deletion."""
        store.create("feat-login")
        store.delete("feat-login", confirm=True)
        assert store.create("feat-login").state.iteration == 0


class TestFeatureIdGeneration:
    """Test cases for feature id generation."""

    def test_generate_feature_id(self):
        """Test slug and timestamp formatting."""
        now = datetime(2026, 3, 4, 5, 6, 7, tzinfo=timezone.utc)
        assert generate_feature_id("User Login Flow!", now=now) == "feat-user-login-flow-20260304050607"

    def test_generated_ids_are_valid(self):
        """Test that generated ids pass validation."""
        assert validate_feature_id(generate_feature_id("Checkout"))

    def test_empty_short_name(self):
        """Test that a short name needs content."""
        with pytest.raises(InvalidInput):
            generate_feature_id("!!!")
