"""Image preprocessing: decoding, embedding-model input tensors, thumbnails."""

from __future__ import annotations

import base64
import io
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray


def decode_image(image_bytes: bytes, max_pixels: int | None = None) -> Image.Image:
    """Decode raw image bytes into an upright RGB image.

    Args:
        image_bytes: Raw file bytes (any format Pillow can read).
        max_pixels: Reject images with more pixels than this.

    Raises:
        ValueError: If the image cannot be decoded or exceeds ``max_pixels``.
    """
    try:
        image = Image.open(io.BytesIO(image_bytes))
        if max_pixels is not None and image.width * image.height > max_pixels:
            raise ValueError(f"Image has {image.width * image.height} pixels, limit is {max_pixels}")
        image = ImageOps.exif_transpose(image)
        return image.convert("RGB")
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as exc:
        raise ValueError(f"Could not decode image: {exc}") from exc


def preprocess_for_embedding(
    image: Image.Image,
    size: int,
    mean: Sequence[float],
    std: Sequence[float],
) -> NDArray[np.float32]:
    """Center-crop, resize and normalize an image for an embedding model.

    Returns:
        Float32 tensor of shape (1, 3, size, size).
    """
    fitted = ImageOps.fit(image, (size, size), method=Image.Resampling.BICUBIC)
    pixels = np.asarray(fitted, dtype=np.float32) / 255.0
    pixels = (pixels - np.asarray(mean, dtype=np.float32)) / np.asarray(std, dtype=np.float32)
    return np.ascontiguousarray(pixels.transpose(2, 0, 1)[np.newaxis, ...], dtype=np.float32)


def create_thumbnail(image_bytes: bytes, max_side: int = 1024, quality: int = 80) -> str:
    """Scale an image so its longer side is ``max_side`` and encode it as a JPEG data URL.

    Raises:
        ValueError: If the image cannot be decoded.
    """
    image = decode_image(image_bytes)
    aspect_ratio = image.width / image.height
    if image.width > image.height:
        new_size = (max_side, max(1, round(max_side / aspect_ratio)))
    else:
        new_size = (max(1, round(max_side * aspect_ratio)), max_side)

    resized = image.resize(new_size, Image.Resampling.LANCZOS)
    buffer = io.BytesIO()
    resized.save(buffer, format="JPEG", quality=quality)
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/jpeg;base64,{encoded}"
