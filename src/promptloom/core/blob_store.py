"""File-backed blob storage for images, drawings and depth maps.

Blobs live in one directory per asset kind under a common root::

    <blob_dir>/
        inputs/     reference images sent to the backend
        outputs/    generated images
        drawings/   raw drawing stroke data
        depths/     depth maps used for depth-guided generation

Every blob gets a freshly generated random filename, so writes never
collide and never overwrite.  Callers keep the returned *relative* path
(``"outputs/3f2a....png"``); history rows store these paths, never bytes.

History entries only reference blobs weakly: deleting or rewriting history
never touches files here.
"""

from __future__ import annotations

import io
import logging
import uuid
from pathlib import Path
from typing import Literal

from PIL import Image

from promptloom.core.errors import PersistenceError

logger = logging.getLogger(__name__)

BlobKind = Literal["inputs", "outputs", "drawings", "depths"]
BLOB_KINDS: tuple[str, ...] = ("inputs", "outputs", "drawings", "depths")


class BlobStore:
    """Save and load blobs by relative path."""

    def __init__(self, root: Path):
        """Initialize the store and create the per-kind directories.

        Args:
            root: Blob root directory
        """
        self.root = Path(root)
        for kind in BLOB_KINDS:
            (self.root / kind).mkdir(parents=True, exist_ok=True)

    def _new_path(self, kind: str, suffix: str) -> tuple[Path, str]:
        if kind not in BLOB_KINDS:
            raise ValueError(f"unknown blob kind: {kind}")
        filename = uuid.uuid4().hex + suffix
        relative = f"{kind}/{filename}"
        return self.root / kind / filename, relative

    def resolve(self, relative_path: str) -> Path:
        """Turn a stored relative path into an absolute path inside the root.

        Raises:
            PersistenceError: If the path escapes the blob root.
        """
        path = (self.root / relative_path).resolve()
        if self.root.resolve() not in path.parents:
            raise PersistenceError(f"blob path outside store: {relative_path}")
        return path

    def save_bytes(self, data: bytes, kind: BlobKind, suffix: str = ".bin") -> str:
        """Write raw bytes and return the blob's relative path."""
        path, relative = self._new_path(kind, suffix)
        try:
            path.write_bytes(data)
        except OSError as e:
            logger.error(f"Error writing blob {relative}: {e}")
            raise PersistenceError(f"could not write blob {relative}: {e}") from e
        logger.debug(f"Saved blob {relative} ({len(data)} bytes)")
        return relative

    def save_image(self, image: Image.Image, kind: BlobKind) -> str:
        """Encode *image* as PNG and return the blob's relative path."""
        buffer = io.BytesIO()
        image.save(buffer, format="PNG")
        return self.save_bytes(buffer.getvalue(), kind, ".png")

    def save_drawing(self, data: bytes) -> str:
        return self.save_bytes(data, "drawings", ".drawing")

    def load_bytes(self, relative_path: str) -> bytes:
        try:
            return self.resolve(relative_path).read_bytes()
        except OSError as e:
            raise PersistenceError(f"could not read blob {relative_path}: {e}") from e

    def load_image(self, relative_path: str) -> Image.Image:
        image = Image.open(io.BytesIO(self.load_bytes(relative_path)))
        image.load()
        return image

    def exists(self, relative_path: str) -> bool:
        try:
            return self.resolve(relative_path).is_file()
        except PersistenceError:
            return False
