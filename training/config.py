"""
Training configuration and paths.

All tuneable settings live here so they are easy to find, review,
and override without touching training logic.

Directory conventions
---------------------
::

    <data dir>/
    ├── assets/images/
    │   ├── tags.tsv                  ← Training manifest
    │   └── test-tags.tsv             ← Held-out manifest
    └── models/
        ├── inception_v3_…_notop.h5   ← Optional local ImageNet weights
        └── versions/                 ← Versioned model artefacts
            └── model_20261019_143052/
                ├── classifier.joblib ← Fitted logistic-regression head
                ├── classes.txt       ← Vocabulary, one label per line
                ├── extractor.json    ← Feature-extractor settings
                ├── config.json       ← Training config snapshot
                ├── metrics.json      ← Evaluation results
                ├── comparison.json   ← Delta vs previous model
                ├── classification_report.txt
                └── confusion_matrix.png
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from django.conf import settings

# ── Paths ───────────────────────────────────────────────────────────────────

IMAGES_ROOT: Path = Path(settings.IMAGES_ROOT)
TRAIN_TAGS_PATH: Path = Path(settings.TRAIN_TAGS_PATH)
TEST_TAGS_PATH: Path = Path(settings.TEST_TAGS_PATH)
MODELS_ROOT: Path = Path(settings.MODELS_ROOT)
MODEL_VERSIONS_DIR: Path = MODELS_ROOT / "versions"

# InceptionV3 ImageNet weights (notop); Keras downloads them when absent
INCEPTION_WEIGHTS_PATH: Path = MODELS_ROOT / "inception_v3_weights_tf_dim_ordering_tf_kernels_notop.h5"


class DuplicatePolicy(str, enum.Enum):
    """How repeated manifest entries for the same path are treated.

    ``LATEST``   – last write wins: one training example per path, carrying
                   the most recently appended label.
    ``KEEP_ALL`` – every labeled line is an independent training example.
    """

    LATEST = "latest"
    KEEP_ALL = "keep_all"


@dataclass(frozen=True)
class ExtractorSettings:
    """Preprocessing contract of the fixed feature extractor.

    Pixels are resized to ``image_size`` (width, height), reordered to
    ``channel_order`` and normalised as ``(x - offset) * scale``.  The
    defaults match the Keras InceptionV3 convention (inputs in [-1, 1]).
    """

    image_size: tuple = (224, 224)
    channel_order: str = "RGB"
    offset: float = 127.5
    scale: float = 1.0 / 127.5

    def to_dict(self) -> dict:
        return {
            "image_size": list(self.image_size),
            "channel_order": self.channel_order,
            "offset": self.offset,
            "scale": self.scale,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ExtractorSettings":
        return cls(
            image_size=tuple(data.get("image_size", (224, 224))),
            channel_order=data.get("channel_order", "RGB"),
            offset=float(data.get("offset", 127.5)),
            scale=float(data.get("scale", 1.0 / 127.5)),
        )


@dataclass
class TrainingConfig:
    """All settings for a single training run.

    The classifier is a multinomial logistic regression (maximum entropy,
    L-BFGS) fitted from scratch on top of the fixed embedding.

    Attributes
    ----------
    manifest_path : Path | None
        Training manifest.  ``None`` → ``TRAIN_TAGS_PATH``.
    images_dir : Path | None
        Root that relative manifest paths resolve against.
        ``None`` → ``IMAGES_ROOT``.
    strict : bool
        Fail on unreadable / undecodable manifest entries instead of
        skipping them with a warning (default False).
    duplicate_policy : DuplicatePolicy
        Treatment of repeated entries for one path (default ``LATEST``).
    seed : int
        Random seed handed to the optimiser (default 42).
    max_iter : int
        L-BFGS iteration cap (default 1000).
    l2_strength : float
        L2 regularisation weight; the solver uses ``C = 1 / l2_strength``.
    evaluate : bool
        Score the model on ``test_manifest_path`` after fitting.
    test_manifest_path : Path | None
        Held-out manifest.  ``None`` → ``TEST_TAGS_PATH``.
    timeout_seconds : float | None
        Wall-clock budget for a background retrain job.
    auto_promote : bool
        Publish the new model for inference when it is not worse than the
        previous one.
    """

    # ── Data ────────────────────────────────────────────────────────────
    manifest_path: Optional[Path] = None
    images_dir: Optional[Path] = None
    strict: bool = False
    duplicate_policy: DuplicatePolicy = DuplicatePolicy.LATEST

    # ── Classifier ──────────────────────────────────────────────────────
    seed: int = 42
    max_iter: int = 1000
    l2_strength: float = 1.0

    # ── Evaluation ──────────────────────────────────────────────────────
    evaluate: bool = True
    test_manifest_path: Optional[Path] = None

    # ── Job control ─────────────────────────────────────────────────────
    timeout_seconds: Optional[float] = None
    auto_promote: bool = False

    # ── Metadata ────────────────────────────────────────────────────────
    notes: str = ""

    def __post_init__(self) -> None:
        self.duplicate_policy = DuplicatePolicy(self.duplicate_policy)
        if self.l2_strength <= 0:
            raise ValueError("l2_strength must be positive")

    # ── Helpers ──────────────────────────────────────────────────────────

    def resolve_manifest_path(self) -> Path:
        return Path(self.manifest_path) if self.manifest_path else TRAIN_TAGS_PATH

    def resolve_images_dir(self) -> Path:
        return Path(self.images_dir) if self.images_dir else IMAGES_ROOT

    def resolve_test_manifest_path(self) -> Path:
        return Path(self.test_manifest_path) if self.test_manifest_path else TEST_TAGS_PATH

    def model_output_dir(self, run_name: str) -> Path:
        """Return (and create) the output directory for a named run."""
        out = MODEL_VERSIONS_DIR / run_name
        out.mkdir(parents=True, exist_ok=True)
        return out

    def to_dict(self) -> dict:
        """Serialise to a JSON-safe dict (for saving alongside artefacts)."""
        return {
            "manifest_path": str(self.resolve_manifest_path()),
            "images_dir": str(self.resolve_images_dir()),
            "strict": self.strict,
            "duplicate_policy": self.duplicate_policy.value,
            "seed": self.seed,
            "max_iter": self.max_iter,
            "l2_strength": self.l2_strength,
            "evaluate": self.evaluate,
            "test_manifest_path": str(self.resolve_test_manifest_path()),
            "timeout_seconds": self.timeout_seconds,
            "auto_promote": self.auto_promote,
            "notes": self.notes,
        }
