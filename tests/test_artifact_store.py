"""Tests for artifact_store.py - PNG artifacts with embedded metadata."""

import pytest
from PIL import Image

from artifact_store import ArtifactNotFoundError, ArtifactStoreError, FileArtifactStore
from conftest import png_bytes


class TestFileArtifactStore:
    """Tests for FileArtifactStore."""

    def test_save_writes_png_with_metadata(self, temp_dir):
        store = FileArtifactStore(temp_dir / "images")

        artifact_id = store.save(png_bytes(16, 12), "A cat on a throne!", {
            "prompt": "cat, throne",
            "seed": "42",
        })

        path = store.path_for(artifact_id)
        assert path.exists()
        assert "a-cat-on-a-throne" in artifact_id
        with Image.open(path) as img:
            assert img.size == (16, 12)
        assert store.read_metadata(artifact_id) == {"prompt": "cat, throne", "seed": "42"}

    def test_ids_are_unique(self, temp_dir):
        store = FileArtifactStore(temp_dir)

        first = store.save(png_bytes(), "same", {})
        second = store.save(png_bytes(), "same", {})

        assert first != second

    def test_empty_name_hint(self, temp_dir):
        store = FileArtifactStore(temp_dir)
        artifact_id = store.save(png_bytes(), "???", {})
        assert "_image_" in artifact_id

    def test_invalid_image_rejected(self, temp_dir):
        store = FileArtifactStore(temp_dir)

        with pytest.raises(ArtifactStoreError):
            store.save(b"<html>502 Bad Gateway</html>", "x", {})

        assert list(temp_dir.iterdir()) == []

    def test_read_missing_artifact(self, temp_dir):
        store = FileArtifactStore(temp_dir)
        with pytest.raises(ArtifactNotFoundError):
            store.read_metadata("20240101_000000_nothing_deadbeef")

    def test_path_traversal_rejected(self, temp_dir):
        store = FileArtifactStore(temp_dir / "images")
        with pytest.raises(ArtifactNotFoundError):
            store.path_for("../escape")
