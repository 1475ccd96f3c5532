"""
Model loader and inference utilities.

``classify`` runs one image through a trained model and returns the full
score distribution over the model's vocabulary.  It never touches the
manifest; recording the sample is a separate, explicit step (see
``ingestion.IngestionWorkflow.register_unlabeled``).

The *active model* is the one serving live inference.  It is swapped as a
whole reference under a lock, so a classification that already holds a
model keeps using it even while a newly trained one is being published.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

import numpy as np

from .errors import UnknownVocabularyError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Prediction:
    """Result of classifying one sample.

    ``scores`` has exactly one entry per vocabulary label and sums to 1.
    """

    sample_path: Optional[str]
    scores: Dict[str, float] = field(default_factory=dict)
    predicted_label: str = ""
    confidence: float = 0.0

    def to_dict(self) -> dict:
        return {
            "sample_path": self.sample_path,
            "scores": dict(self.scores),
            "predicted_label": self.predicted_label,
            "confidence": self.confidence,
        }


# ── Main inference entry-point ──────────────────────────────────────────────

def classify(model, image_bytes: bytes, sample_path: Optional[str] = None) -> Prediction:
    """Classify one image with *model* (a ``training.train.TrainedModel``).

    Raises
    ------
    UnknownVocabularyError
        The model has an empty vocabulary, or its head does not produce
        one score per vocabulary label.
    InvalidImageError
        The payload cannot be decoded.
    """
    labels = tuple(model.vocabulary.labels) if model is not None else ()
    if not labels:
        raise UnknownVocabularyError(
            "Model has an empty vocabulary", path=sample_path, operation="classify",
        )

    proba = np.asarray(model.predict_proba([image_bytes]))[0]
    if proba.shape[0] != len(labels):
        raise UnknownVocabularyError(
            f"Model head returned {proba.shape[0]} scores for "
            f"{len(labels)} vocabulary labels",
            path=sample_path, operation="classify",
        )

    proba = proba / proba.sum()
    best = int(np.argmax(proba))
    prediction = Prediction(
        sample_path=sample_path,
        scores={label: float(p) for label, p in zip(labels, proba)},
        predicted_label=labels[best],
        confidence=float(proba[best]),
    )
    logger.info(
        "Image: %s predicted as: %s with score: %.4f",
        Path(sample_path).name if sample_path else "<bytes>",
        prediction.predicted_label, prediction.confidence,
    )
    return prediction


# ── Active model (atomic swap) ──────────────────────────────────────────────

_active_model = None
_active_lock = threading.Lock()


def publish_model(model) -> None:
    """Make *model* the active one.  In-flight callers keep their old model."""
    global _active_model
    with _active_lock:
        previous = _active_model
        _active_model = model
    logger.info(
        "Active model: %s → %s",
        getattr(previous, "run_name", None) or "none",
        getattr(model, "run_name", None) or "unnamed",
    )


def get_active_model():
    """Return the active model, or ``None`` if nothing was published yet."""
    with _active_lock:
        return _active_model


def load_model(model_dir, extractor=None):
    """Load saved artefacts from *model_dir* and publish them."""
    from training.train import load_trained_model

    model = load_trained_model(Path(model_dir), extractor=extractor)
    publish_model(model)
    return model
