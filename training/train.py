"""
Classifier pipeline — fixed embedding → maximum-entropy head.

    image bytes
      → EmbeddingTransformer (InceptionV3 base, frozen)
      → LogisticRegression (L-BFGS, multinomial, L2)

The head is refitted from scratch on every run; there is no fine-tuning
of the base.  The fitted pipeline and the vocabulary it was trained on
are bundled into a ``TrainedModel``, which is treated as immutable once
built so it can be shared by concurrent classifications.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

import joblib
import numpy as np
from sklearn.linear_model import LogisticRegression
from sklearn.pipeline import Pipeline

from classifier.errors import InsufficientClassesError
from .config import ExtractorSettings, TrainingConfig
from .data import LabeledSamples, Vocabulary
from .features import EmbeddingTransformer, FeatureExtractor

logger = logging.getLogger(__name__)

CLASSIFIER_FILE = "classifier.joblib"
CLASSES_FILE = "classes.txt"
EXTRACTOR_FILE = "extractor.json"


@dataclass(frozen=True)
class TrainedModel:
    """Vocabulary + fitted pipeline (+ evaluation metrics, if any)."""

    vocabulary: Vocabulary
    pipeline: Pipeline
    run_name: str = ""
    metrics: dict = field(default_factory=dict)

    @property
    def classifier(self) -> LogisticRegression:
        return self.pipeline.named_steps["classifier"]

    @property
    def extractor(self) -> FeatureExtractor:
        return self.pipeline.named_steps["features"].extractor

    def predict_proba(self, images) -> np.ndarray:
        """Class probabilities, columns in vocabulary order."""
        return self.pipeline.predict_proba(list(images))


# ═══════════════════════════════════════════════════════════════════════════
# Pipeline building
# ═══════════════════════════════════════════════════════════════════════════

def build_pipeline(
    extractor: FeatureExtractor,
    config: TrainingConfig,
    checkpoint: Optional[Callable[[], None]] = None,
) -> Pipeline:
    """Compose the feature extractor and an unfitted classifier head."""
    head = LogisticRegression(
        solver="lbfgs",
        C=1.0 / config.l2_strength,
        max_iter=config.max_iter,
        random_state=config.seed,
    )
    return Pipeline([
        ("features", EmbeddingTransformer(extractor=extractor, checkpoint=checkpoint)),
        ("classifier", head),
    ])


def fit_model(
    samples: LabeledSamples,
    config: TrainingConfig,
    extractor: FeatureExtractor,
    *,
    run_name: str = "",
    checkpoint: Optional[Callable[[], None]] = None,
) -> TrainedModel:
    """Fit the classifier head on *samples*.

    ``checkpoint`` is called between images during feature extraction and
    once after fitting; it may raise to abort the run.

    Raises
    ------
    InsufficientClassesError
        If the samples hold fewer than two distinct labels.
    """
    vocabulary = samples.vocabulary
    if len(vocabulary) < 2:
        raise InsufficientClassesError(vocabulary.labels, operation="train")

    y = np.array([vocabulary.key_of(label) for label in samples.labels])
    pipeline = build_pipeline(extractor, config, checkpoint)

    logger.info(
        "═══ FITTING CLASSIFIER HEAD: %d samples, %d labels ═══",
        len(samples), len(vocabulary),
    )
    pipeline.fit(samples.images, y)

    # The fitted pipeline serves inference; job control must not leak into it.
    pipeline.named_steps["features"].checkpoint = None
    if checkpoint is not None:
        checkpoint()

    head = pipeline.named_steps["classifier"]
    logger.info(
        "Classifier fitted: %d features, %d iterations",
        head.coef_.shape[1], int(np.max(head.n_iter_)),
    )
    return TrainedModel(vocabulary=vocabulary, pipeline=pipeline, run_name=run_name)


# ═══════════════════════════════════════════════════════════════════════════
# Persistence
# ═══════════════════════════════════════════════════════════════════════════

def save_model(model: TrainedModel, output_dir: Path) -> Path:
    """Write the head, vocabulary and extractor settings to *output_dir*."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    joblib.dump(model.classifier, output_dir / CLASSIFIER_FILE)
    (output_dir / CLASSES_FILE).write_text(
        "\n".join(model.vocabulary.labels) + "\n", encoding="utf-8",
    )
    (output_dir / EXTRACTOR_FILE).write_text(
        json.dumps(model.extractor.settings.to_dict(), indent=2), encoding="utf-8",
    )
    logger.info("Saved model artefacts to %s", output_dir)
    return output_dir


def load_trained_model(
    model_dir: Path,
    extractor: Optional[FeatureExtractor] = None,
) -> TrainedModel:
    """Rebuild a ``TrainedModel`` from a directory written by ``save_model``.

    The extractor is fixed, so only its settings are stored; a fresh one
    is built unless *extractor* is supplied.
    """
    model_dir = Path(model_dir)
    head = joblib.load(model_dir / CLASSIFIER_FILE)
    labels = [
        line.strip()
        for line in (model_dir / CLASSES_FILE).read_text(encoding="utf-8").splitlines()
        if line.strip()
    ]
    if extractor is None:
        settings = ExtractorSettings.from_dict(
            json.loads((model_dir / EXTRACTOR_FILE).read_text(encoding="utf-8"))
        )
        extractor = FeatureExtractor(settings)

    pipeline = Pipeline([
        ("features", EmbeddingTransformer(extractor=extractor)),
        ("classifier", head),
    ])
    logger.info("Loaded model from %s (%d labels)", model_dir, len(labels))
    return TrainedModel(
        vocabulary=Vocabulary(tuple(labels)),
        pipeline=pipeline,
        run_name=model_dir.name,
    )
