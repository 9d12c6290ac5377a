"""ONNX image embedder, the default EmbeddingProvider.

Implementations: CLIP ViT-B/32 vision tower (default), ResNet-50 (opt-in).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

from prefrank.ml.embedding import EmbeddingResult
from prefrank.ml.model_manager import get_model_spec
from prefrank.ml.preprocessing import decode_image, preprocess_for_embedding

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from prefrank.library import ImageRef
    from prefrank.ml.model_manager import ModelManager


class OnnxImageEmbedder:
    """Embeds images with an ONNX model obtained from a ModelManager."""

    def __init__(self, manager: ModelManager, model_name: str, max_image_pixels: int | None = None) -> None:
        self._manager = manager
        self._spec = get_model_spec(model_name)
        self._max_image_pixels = max_image_pixels

    @property
    def model_name(self) -> str:
        return self._spec.name

    @property
    def embedding_dim(self) -> int:
        return self._spec.embedding_dim

    def embed_bytes(self, image_bytes: bytes) -> NDArray[np.float32]:
        """Embed raw image bytes into a 1-D float32 vector.

        Raises:
            ValueError: If the image cannot be decoded or exceeds the pixel limit.
        """
        image = decode_image(image_bytes, self._max_image_pixels)
        tensor = preprocess_for_embedding(image, self._spec.input_size, self._spec.mean, self._spec.std)

        session = self._manager.get_session(self._spec.name)
        input_name = session.get_inputs()[0].name
        outputs = session.run(None, {input_name: tensor})
        return np.asarray(outputs[0], dtype=np.float32).reshape(-1)

    def create_embedding(self, image: ImageRef) -> EmbeddingResult:
        return EmbeddingResult(embedding=self.embed_bytes(image.read_bytes()))
