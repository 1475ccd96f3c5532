"""
Fixed feature extractor — raw image bytes → embedding vector.

The extractor wraps a pretrained InceptionV3 base (``include_top=False``,
global average pooling) that is never retrained.  Only the lightweight
classifier head on top of it is fitted (see ``train.py``).

Preprocessing contract
----------------------
1. Decode with Pillow and force-load the pixel data.
2. Reject zero-size images.
3. Convert to RGB, resize to ``ExtractorSettings.image_size`` (bilinear).
4. Reorder channels if ``channel_order`` is ``"BGR"``.
5. Normalise: ``(x - offset) * scale``.
6. Add the batch axis → ``(1, H, W, 3)`` float32.
"""

from __future__ import annotations

import io
import logging
import threading
from typing import Any, Callable, Optional

import numpy as np
from PIL import Image, UnidentifiedImageError
from sklearn.base import BaseEstimator, TransformerMixin

from classifier.errors import InvalidImageError
from .config import INCEPTION_WEIGHTS_PATH, ExtractorSettings

logger = logging.getLogger(__name__)


def load_image(image_bytes: bytes, path: Optional[str] = None) -> Image.Image:
    """Decode *image_bytes* into an RGB Pillow image.

    Raises
    ------
    InvalidImageError
        If the payload is empty, cannot be decoded, or has a zero dimension.
    """
    if not image_bytes:
        raise InvalidImageError("Empty image payload", path=path, operation="decode")

    try:
        img = Image.open(io.BytesIO(image_bytes))
        img.load()
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise InvalidImageError(
            f"Cannot decode image: {exc}", path=path, operation="decode",
        ) from exc

    width, height = img.size
    if width == 0 or height == 0:
        raise InvalidImageError(
            f"Image has zero dimensions ({width}x{height})",
            path=path, operation="decode",
        )

    return img.convert("RGB")


def preprocess_image(
    image_bytes: bytes,
    settings: ExtractorSettings,
    path: Optional[str] = None,
) -> np.ndarray:
    """Apply the preprocessing contract and return a ``(1, H, W, 3)`` batch."""
    img = load_image(image_bytes, path=path)
    img = img.resize(tuple(settings.image_size), resample=Image.BILINEAR)

    arr = np.asarray(img, dtype=np.float32)
    if settings.channel_order.upper() == "BGR":
        arr = arr[..., ::-1]
    arr = (arr - settings.offset) * settings.scale

    return np.expand_dims(arr, axis=0)


def build_inception_backbone(settings: ExtractorSettings):
    """Build the frozen InceptionV3 base with global average pooling."""
    from tensorflow.keras.applications.inception_v3 import InceptionV3

    width, height = settings.image_size
    if INCEPTION_WEIGHTS_PATH.exists():
        base = InceptionV3(
            input_shape=(height, width, 3),
            include_top=False,
            weights=None,
            pooling="avg",
        )
        base.load_weights(str(INCEPTION_WEIGHTS_PATH))
        logger.info("Loaded ImageNet weights from %s", INCEPTION_WEIGHTS_PATH)
    else:
        base = InceptionV3(
            input_shape=(height, width, 3),
            include_top=False,
            weights="imagenet",
            pooling="avg",
        )
        logger.info("Using Keras-downloaded ImageNet weights")

    base.trainable = False
    return base


class FeatureExtractor:
    """Deterministic mapping from image bytes to a fixed-length vector.

    Parameters
    ----------
    settings : ExtractorSettings
        Preprocessing constants.
    backbone : object, optional
        Anything exposing ``predict(batch, verbose=0)``.  Defaults to the
        InceptionV3 base, built lazily on first use.
    """

    def __init__(
        self,
        settings: Optional[ExtractorSettings] = None,
        backbone: Any = None,
    ) -> None:
        self.settings = settings or ExtractorSettings()
        self._backbone = backbone
        self._build_lock = threading.Lock()
        self._feature_length: Optional[int] = None

    @property
    def backbone(self):
        if self._backbone is None:
            with self._build_lock:
                if self._backbone is None:
                    self._backbone = build_inception_backbone(self.settings)
        return self._backbone

    @property
    def feature_length(self) -> int:
        """Length of the embedding, probed once with a blank image."""
        if self._feature_length is None:
            width, height = self.settings.image_size
            probe = np.zeros((1, height, width, 3), dtype=np.float32)
            self._feature_length = int(np.prod(self._forward(probe).shape[1:]))
        return self._feature_length

    def _forward(self, batch: np.ndarray) -> np.ndarray:
        return np.asarray(self.backbone.predict(batch, verbose=0))

    def extract(self, image_bytes: bytes, path: Optional[str] = None) -> np.ndarray:
        """Return the embedding of one image as a 1-D float32 vector."""
        batch = preprocess_image(image_bytes, self.settings, path=path)
        return self._forward(batch).reshape(-1).astype(np.float32)


class EmbeddingTransformer(BaseEstimator, TransformerMixin):
    """sklearn adapter so the extractor can sit first in a ``Pipeline``.

    ``X`` is a sequence of raw image payloads.  ``checkpoint`` (if set) is
    called before every image; it may raise to abort a long extraction.
    """

    def __init__(
        self,
        extractor: Optional[FeatureExtractor] = None,
        checkpoint: Optional[Callable[[], None]] = None,
    ) -> None:
        self.extractor = extractor
        self.checkpoint = checkpoint

    def fit(self, X, y=None):
        return self

    def __sklearn_is_fitted__(self) -> bool:
        # Stateless: the backbone is pretrained and never fitted here.
        return True

    def transform(self, X) -> np.ndarray:
        if self.extractor is None:
            raise ValueError("EmbeddingTransformer requires a FeatureExtractor")
        rows = []
        for image_bytes in X:
            if self.checkpoint is not None:
                self.checkpoint()
            rows.append(self.extractor.extract(image_bytes))
        return np.vstack(rows)
