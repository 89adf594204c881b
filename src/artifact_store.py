"""Storage for finished generation artifacts.

The executor only needs `save()`; the gallery that catalogs images lives
outside this project and reads the embedded PNG text chunks.
"""

import io
import logging
import uuid
from pathlib import Path
from typing import Protocol

from PIL import Image, UnidentifiedImageError
from PIL.PngImagePlugin import PngInfo

from utils import slugify, timestamp_slug

logger = logging.getLogger(__name__)


class ArtifactStoreError(Exception):
    """Raised when an artifact cannot be decoded or written."""
    pass


class ArtifactNotFoundError(Exception):
    """Raised when an artifact id does not exist in the store."""
    pass


class ArtifactStore(Protocol):
    """Anything that can persist image bytes and return a reference to them."""

    def save(self, data: bytes, name_hint: str, metadata: dict[str, str]) -> str:
        """Persist an image.

        Args:
            data: Encoded image bytes as returned by the backend
            name_hint: Human-readable text used in the artifact name
            metadata: Text metadata to embed alongside the image

        Returns:
            The artifact id
        """
        ...


class FileArtifactStore:
    """Saves artifacts as PNG files with metadata in PNG text chunks."""

    def __init__(self, images_dir: Path):
        self.images_dir = images_dir

    def path_for(self, artifact_id: str) -> Path:
        path = self.images_dir / f"{artifact_id}.png"
        # Artifact ids never contain path separators
        if path.parent != self.images_dir:
            raise ArtifactNotFoundError(f"Invalid artifact id: {artifact_id}")
        return path

    def save(self, data: bytes, name_hint: str, metadata: dict[str, str]) -> str:
        try:
            img = Image.open(io.BytesIO(data))
            img.load()
        except (UnidentifiedImageError, OSError) as e:
            raise ArtifactStoreError(f"Backend returned {len(data)} bytes that are not a readable image") from e

        png_info = PngInfo()
        for key, value in metadata.items():
            png_info.add_text(key, "" if value is None else str(value))

        artifact_id = f"{timestamp_slug()}_{slugify(name_hint)}_{uuid.uuid4().hex[:8]}"
        self.images_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(artifact_id)
        try:
            img.save(path, format="PNG", pnginfo=png_info)
        except OSError as e:
            raise ArtifactStoreError(f"Failed to write artifact {path}: {e}") from e

        logger.info(f"Saved artifact {path.name} ({img.width}x{img.height})")
        return artifact_id

    def read_metadata(self, artifact_id: str) -> dict[str, str]:
        """Embedded text metadata of a stored artifact."""
        path = self.path_for(artifact_id)
        if not path.exists():
            raise ArtifactNotFoundError(f"Artifact not found: {artifact_id}")
        with Image.open(path) as img:
            return dict(getattr(img, "text", {}))
