"""Unit tests for the artifact repository and atomic storage helpers."""

import json
from unittest.mock import patch

import pytest

from feature_orchestrator.errors import (
    ArtifactNotFound,
    InvalidArtifactContent,
    InvalidArtifactName,
    WorkspaceNotFound,
)
from feature_orchestrator.models import ArtifactType
from feature_orchestrator.storage import atomic_write_text, utc_now


@pytest.fixture
def repo(store):
    store.create("feat-x")
    return store.artifacts


class TestAtomicWrites:
    """Test cases for the storage helpers."""

    def test_atomic_write_replaces_content(self, tmp_path):
        """Test that a write replaces the file and leaves no temp files."""
        path = tmp_path / "a.json"
        atomic_write_text(path, "one")
        atomic_write_text(path, "two")
        assert path.read_text() == "two"
        assert [p.name for p in tmp_path.iterdir()] == ["a.json"]

    def test_failed_write_keeps_old_content(self, tmp_path):
        """Test that a failed rename leaves the previous file intact."""
        path = tmp_path / "a.json"
        atomic_write_text(path, "original")
        with patch("feature_orchestrator.storage.os.replace", side_effect=OSError("boom")):
            with pytest.raises(OSError):
                atomic_write_text(path, "partial")
        assert path.read_text() == "original"
        assert [p.name for p in tmp_path.iterdir()] == ["a.json"]

    def test_missing_parent_is_not_created(self, tmp_path):
        """Test that writes never create directories."""
        with pytest.raises(FileNotFoundError):
            atomic_write_text(tmp_path / "gone" / "a.json", "x")
        assert not (tmp_path / "gone").exists()

    def test_utc_now_format(self):
        """Test the timestamp format."""
        stamp = utc_now()
        assert stamp.endswith("Z")
        assert "T" in stamp


class TestArtifactSave:
    """Test cases for saving artifacts."""

    def test_save_and_get_round_trip(self, repo):
        """Test that content is returned byte-identical."""
        content = '{\n  "title": "Login",\n  "emoji": "✅"\n}'
        saved = repo.save("feat-x", "spec.json", content, "structured")
        loaded = repo.get("feat-x", "spec.json")

        assert loaded.content == content
        assert loaded.size == len(content.encode("utf-8"))
        assert saved.size == loaded.size
        assert loaded.type is ArtifactType.STRUCTURED

    def test_overwrite_by_name(self, repo):
        """Test that re-saving replaces the artifact."""
        repo.save("feat-x", "plan.json", '{"v": 1}')
        repo.save("feat-x", "plan.json", '{"v": 2}')
        assert repo.get_structured("feat-x", "plan.json") == {"v": 2}
        assert [a.name for a in repo.list("feat-x")].count("plan.json") == 1

    def test_invalid_structured_content_is_not_written(self, repo, store):
        """Test that malformed structured content leaves nothing behind."""
        with pytest.raises(InvalidArtifactContent):
            repo.save("feat-x", "checklist.json", "{not json", "structured")
        assert not (store.path_for("feat-x") / "checklist.json").exists()

    def test_invalid_structured_keeps_previous_version(self, repo):
        """Test that a rejected save does not touch the existing artifact."""
        repo.save("feat-x", "checklist.json", '[{"id": "AC1"}]')
        with pytest.raises(InvalidArtifactContent):
            repo.save("feat-x", "checklist.json", "oops")
        assert repo.get_structured("feat-x", "checklist.json") == [{"id": "AC1"}]

    @pytest.mark.parametrize("content", ["42", '"text"', "null", "true"])
    def test_structured_requires_object_or_array(self, repo, content):
        """Test that scalar JSON is rejected."""
        with pytest.raises(InvalidArtifactContent):
            repo.save("feat-x", "value.json", content)

    def test_document_is_not_parsed(self, repo):
        """Test that documents are saved verbatim."""
        repo.save("feat-x", "notes.md", "# Notes\n\n{not json}", "document")
        artifact = repo.get("feat-x", "notes.md")
        assert artifact.content == "# Notes\n\n{not json}"
        assert artifact.type is ArtifactType.DOCUMENT

    @pytest.mark.parametrize("name", ["../escape.json", "a/b.json", ".hidden", "", "state.json", "scope.json"])
    def test_invalid_names(self, repo, name):
        """Test that names are plain, visible and not engine-owned."""
        with pytest.raises(InvalidArtifactName):
            repo.save("feat-x", name, "{}")

    def test_save_to_missing_workspace(self, store):
        """Test saving into an unknown workspace."""
        with pytest.raises(WorkspaceNotFound):
            store.artifacts.save("feat-none", "spec.json", "{}")

    def test_save_structured_serializes(self, repo):
        """Test the structured convenience writer."""
        repo.save_structured("feat-x", "results.json", {"items": []})
        assert json.loads(repo.get("feat-x", "results.json").content) == {"items": []}


class TestArtifactRead:
    """Test cases for reading and listing artifacts."""

    def test_get_missing(self, repo):
        """Test reading an unknown artifact."""
        with pytest.raises(ArtifactNotFound):
            repo.get("feat-x", "plan.json")

    def test_get_structured_rejects_corrupt_file(self, repo, store):
        """Test parsing an artifact that was damaged on disk."""
        (store.path_for("feat-x") / "plan.json").write_text("{broken")
        with pytest.raises(InvalidArtifactContent):
            repo.get_structured("feat-x", "plan.json")

    def test_list_classifies_and_skips_hidden(self, repo, store):
        """Test artifact listing."""
        root = store.path_for("feat-x")
        repo.save("feat-x", "spec.json", "{}")
        repo.save("feat-x", "report.md", "# R", "document")
        repo.save("feat-x", "log.txt", "hello", "text")
        (root / ".scratch").write_text("hidden")
        (root / "test-runs").mkdir()

        listed = {artifact.name: artifact.type for artifact in repo.list("feat-x")}
        assert listed == {
            "log.txt": ArtifactType.TEXT,
            "report.md": ArtifactType.DOCUMENT,
            "scope.json": ArtifactType.STRUCTURED,
            "spec.json": ArtifactType.STRUCTURED,
            "state.json": ArtifactType.STRUCTURED,
        }

    def test_list_skips_vanishing_entries(self, repo, store):
        """Test that entries which fail to stat are skipped."""
        repo.save("feat-x", "spec.json", "{}")
        with patch("pathlib.Path.is_file", side_effect=PermissionError("denied")):
            assert repo.list("feat-x") == []
