"""Image handles and directory enumeration."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

SUPPORTED_FILE_TYPES: dict[str, str] = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
}


@dataclass(frozen=True, eq=False)
class ImageRef:
    """Handle for one input image.

    Two handles are equal only if they are the same object, even when they
    point at the same file.
    """

    path: Path

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def media_type(self) -> str | None:
        return SUPPORTED_FILE_TYPES.get(self.path.suffix.lower())

    def read_bytes(self) -> bytes:
        return self.path.read_bytes()


def scan_directory(root: Path | str) -> list[ImageRef]:
    """Recursively collect supported images below ``root``, sorted by path.

    Raises:
        NotADirectoryError: If ``root`` is not a directory.
    """
    root_path = Path(root)
    if not root_path.is_dir():
        raise NotADirectoryError(f"Not a directory: {root_path}")

    images = [
        ImageRef(path=path)
        for path in sorted(root_path.rglob("*"))
        if path.is_file() and path.suffix.lower() in SUPPORTED_FILE_TYPES
    ]
    logger.info("Found %d images under %s", len(images), root_path)
    return images
