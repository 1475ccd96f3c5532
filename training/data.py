"""
Dataset loading from the tag manifest.

Turns manifest lines into in-memory training examples: resolves repeated
paths according to the ``DuplicatePolicy``, reads every image from the
managed store, and derives the label vocabulary the model is trained on.

Public API
----------
Vocabulary     – Closed, sorted label set with stable integer keys.
LabeledSamples – Payloads + labels ready for the classifier pipeline.
load_samples   – Manifest entries → ``LabeledSamples``.
load_manifest  – Convenience wrapper reading a manifest file.

Usage::

    from training.config import TrainingConfig
    from training.data   import load_manifest

    config = TrainingConfig()
    samples = load_manifest(config.resolve_manifest_path(), config)
    samples.vocabulary.labels   # ('microwave', 'toaster')
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Sequence, Tuple

from classifier.errors import InsufficientClassesError, InvalidImageError
from classifier.manifest import ManifestEntry, TagManifest, resolve_entries
from .config import TrainingConfig
from .features import load_image

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Vocabulary
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Vocabulary:
    """The closed set of labels a model can predict.

    Labels are sorted once at training time; a label's key is its index,
    so the same label set always maps to the same keys.
    """

    labels: Tuple[str, ...] = ()

    @classmethod
    def from_labels(cls, labels: Iterable[str]) -> "Vocabulary":
        return cls(tuple(sorted(set(labels))))

    def key_of(self, label: str) -> int:
        try:
            return self.labels.index(label)
        except ValueError:
            raise KeyError(f"Label '{label}' is not in the vocabulary") from None

    def label_of(self, key: int) -> str:
        return self.labels[key]

    def __contains__(self, label) -> bool:
        return label in self.labels

    def __iter__(self):
        return iter(self.labels)

    def __len__(self) -> int:
        return len(self.labels)


# ═══════════════════════════════════════════════════════════════════════════
# Samples
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class LabeledSamples:
    """Parallel lists of sample paths, raw payloads and labels."""

    paths: List[str] = field(default_factory=list)
    images: List[bytes] = field(default_factory=list)
    labels: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.paths)

    @property
    def vocabulary(self) -> Vocabulary:
        return Vocabulary.from_labels(self.labels)


def resolve_image_path(path: str, images_dir: Path) -> Path:
    """Manifest paths are relative to the image store unless absolute."""
    candidate = Path(path)
    return candidate if candidate.is_absolute() else images_dir / candidate


def _read_sample(entry: ManifestEntry, images_dir: Path) -> bytes:
    full_path = resolve_image_path(entry.path, images_dir)
    try:
        data = full_path.read_bytes()
    except OSError as exc:
        raise InvalidImageError(
            f"Cannot read image file: {exc}", path=entry.path, operation="load_samples",
        ) from exc
    load_image(data, path=entry.path)
    return data


def load_samples(
    entries: Sequence[ManifestEntry],
    config: TrainingConfig,
    *,
    require_classes: bool = True,
) -> LabeledSamples:
    """Load the training examples described by *entries*.

    The pipeline:
        1. Resolve duplicates per ``config.duplicate_policy`` and drop
           unlabeled placeholders.
        2. Read + decode every image.  Failures raise ``InvalidImageError``
           when ``config.strict``, otherwise the entry is skipped.
        3. Check that at least two distinct labels remain.

    Raises
    ------
    InvalidImageError
        Strict mode only: an entry's file is missing or undecodable.
    InsufficientClassesError
        Fewer than two distinct labels (when ``require_classes``).
    """
    images_dir = config.resolve_images_dir()
    resolved = resolve_entries(entries, config.duplicate_policy)

    samples = LabeledSamples()
    for entry in resolved:
        try:
            data = _read_sample(entry, images_dir)
        except InvalidImageError:
            if config.strict:
                raise
            samples.skipped.append(entry.path)
            continue
        samples.paths.append(entry.path)
        samples.images.append(data)
        samples.labels.append(entry.label)

    if samples.skipped:
        logger.warning(
            "Skipped %d manifest entries (missing or undecodable): %s",
            len(samples.skipped), samples.skipped[:10],
        )

    logger.info(
        "Loaded %d samples (%d manifest lines, policy=%s), %d labels — %s",
        len(samples), len(entries), config.duplicate_policy.value,
        len(samples.vocabulary), list(samples.vocabulary),
    )

    if require_classes and len(samples.vocabulary) < 2:
        raise InsufficientClassesError(
            samples.vocabulary.labels, operation="train",
        )

    return samples


def load_manifest(
    manifest_path,
    config: TrainingConfig,
    *,
    require_classes: bool = True,
) -> LabeledSamples:
    """Read *manifest_path* and load its samples (see ``load_samples``)."""
    manifest = TagManifest(manifest_path)
    return load_samples(manifest.snapshot(), config, require_classes=require_classes)
