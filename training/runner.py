"""
Training run orchestrator — ties manifest → features → fit → evaluate → save.

Two entry points:

``train``        – The bare pipeline: manifest in, ``TrainedModel`` out.
                   No database, no artefacts on disk.
``run_training`` – A tracked run:

1. Create a ``TrainingRun`` record.
2. Load the manifest snapshot and the images it references.
3. Fit the classifier head on the fixed embeddings.
4. Save artefacts under ``models/versions/<run_name>/``.
5. Evaluate on the held-out manifest (log-loss, per-class log-loss).
6. Compare against the previous completed run.
7. Optionally promote and publish the new model for inference.
"""

from __future__ import annotations

import dataclasses
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, NamedTuple, Optional, Sequence

from django.utils import timezone

from classifier.manifest import ManifestEntry, TagManifest
from classifier.models import TrainingRun
from .config import TrainingConfig
from .data import LabeledSamples, load_samples
from .evaluate import compare_with_previous, evaluate_model
from .features import FeatureExtractor
from .train import TrainedModel, fit_model, save_model

logger = logging.getLogger(__name__)


class TrainingResult(NamedTuple):
    run: TrainingRun
    model: TrainedModel


def new_run_name() -> str:
    return f"model_{datetime.now().strftime('%Y%m%d_%H%M%S_%f')}"


def _load_test_samples(config: TrainingConfig) -> Optional[LabeledSamples]:
    test_path = config.resolve_test_manifest_path()
    if not test_path.exists():
        logger.info("No held-out manifest at %s, skipping evaluation", test_path)
        return None
    return load_samples(TagManifest(test_path).snapshot(), config, require_classes=False)


def _check(checkpoint: Optional[Callable[[], None]]) -> None:
    if checkpoint is not None:
        checkpoint()


def train(
    manifest_path=None,
    config: Optional[TrainingConfig] = None,
    extractor: Optional[FeatureExtractor] = None,
    *,
    entries: Optional[Sequence[ManifestEntry]] = None,
    checkpoint: Optional[Callable[[], None]] = None,
) -> TrainedModel:
    """Train a model from a manifest (or a snapshot of its entries).

    Raises
    ------
    InsufficientClassesError
        Fewer than two distinct labels after loading.
    InvalidImageError
        Strict mode only: an unreadable manifest entry.
    """
    config = config or TrainingConfig()
    if manifest_path is not None:
        config = dataclasses.replace(config, manifest_path=Path(manifest_path))
    if entries is None:
        entries = TagManifest(config.resolve_manifest_path()).snapshot()
    extractor = extractor or FeatureExtractor()

    samples = load_samples(entries, config)
    model = fit_model(samples, config, extractor, checkpoint=checkpoint)

    if config.evaluate:
        test_samples = _load_test_samples(config)
        if test_samples is not None:
            model = dataclasses.replace(
                model, metrics=evaluate_model(model, test_samples, checkpoint=checkpoint),
            )
    return model


def _find_previous_metrics() -> Path | None:
    """Locate the most recent completed run's ``metrics.json``."""
    last_run = (
        TrainingRun.objects
        .filter(status="completed", model_path__gt="")
        .order_by("-finished_at")
        .first()
    )
    if last_run and last_run.model_path:
        metrics_path = Path(last_run.model_path) / "metrics.json"
        if metrics_path.exists():
            return metrics_path
    return None


def run_training(
    config: TrainingConfig,
    *,
    entries: Optional[Sequence[ManifestEntry]] = None,
    extractor: Optional[FeatureExtractor] = None,
    checkpoint: Optional[Callable[[], None]] = None,
    run_name: Optional[str] = None,
) -> TrainingResult:
    """Execute a full tracked training run end-to-end.

    Parameters
    ----------
    config : TrainingConfig
        All settings.
    entries : sequence of ManifestEntry, optional
        Manifest snapshot to train on; read from the manifest if omitted.
    extractor : FeatureExtractor, optional
        Feature extractor; the default InceptionV3 one if omitted.
    checkpoint : callable, optional
        Cooperative cancellation hook (see ``tasks.py``).

    Returns
    -------
    TrainingResult
        The completed ``TrainingRun`` record and the model.
    """
    run_name = run_name or new_run_name()
    manifest_path = config.resolve_manifest_path()

    run = TrainingRun.objects.create(
        run_name=run_name,
        manifest_path=str(manifest_path),
        status="pending",
        config=config.to_dict(),
    )

    try:
        # ── 1. Load data ────────────────────────────────────────────
        run.status = "running"
        run.save(update_fields=["status"])

        if entries is None:
            entries = TagManifest(manifest_path).snapshot()
        logger.info("Loading %d manifest lines from %s…", len(entries), manifest_path)
        samples = load_samples(entries, config)

        run.num_classes = len(samples.vocabulary)
        run.num_train_samples = len(samples)
        run.vocabulary = list(samples.vocabulary.labels)
        run.save(update_fields=["num_classes", "num_train_samples", "vocabulary"])

        # ── 2. Fit ──────────────────────────────────────────────────
        run.status = "training"
        run.started_at = timezone.now()
        run.save(update_fields=["status", "started_at"])

        model = fit_model(
            samples, config, extractor or FeatureExtractor(),
            run_name=run_name, checkpoint=checkpoint,
        )

        # ── 3. Save artefacts ───────────────────────────────────────
        _check(checkpoint)
        output_dir = config.model_output_dir(run_name)
        save_model(model, output_dir)
        (output_dir / "config.json").write_text(
            json.dumps(config.to_dict(), indent=2), encoding="utf-8",
        )

        # ── 4. Evaluate on the held-out manifest ────────────────────
        run.status = "evaluating"
        run.save(update_fields=["status"])

        metrics = {}
        if config.evaluate:
            test_samples = _load_test_samples(config)
            if test_samples is not None:
                metrics = evaluate_model(model, test_samples, output_dir, checkpoint=checkpoint)
        model = dataclasses.replace(model, metrics=metrics)
        _check(checkpoint)

        run.num_test_samples = metrics.get("num_samples", 0)
        run.log_loss = metrics.get("log_loss")
        run.accuracy = metrics.get("accuracy")
        run.metrics_summary = {
            "log_loss": metrics.get("log_loss"),
            "per_class_log_loss": metrics.get("per_class_log_loss", []),
            "accuracy": metrics.get("accuracy"),
        }

        # ── 5. Compare with previous model ──────────────────────────
        comparison = compare_with_previous(metrics, _find_previous_metrics(), output_dir)
        run.comparison = comparison

        # ── 6. Finalise run record ──────────────────────────────────
        run.model_path = str(output_dir)
        run.status = "completed"
        run.finished_at = timezone.now()
        run.save(update_fields=[
            "num_test_samples", "log_loss", "accuracy", "metrics_summary",
            "comparison", "model_path", "status", "finished_at",
        ])

        # ── 7. Auto-promote if not worse ────────────────────────────
        if config.auto_promote and comparison.get("recommendation") == "promote":
            from classifier.model_loader import publish_model

            run.promote()
            publish_model(model)
            logger.info("Auto-promoted run '%s' to active model", run_name)

        logger.info(
            "═══ TRAINING COMPLETE: %s ═══\n"
            "  Samples  : %d (%d labels)\n"
            "  Log-loss : %s\n"
            "  Accuracy : %s\n"
            "  Artefacts: %s",
            run_name,
            len(samples), len(model.vocabulary),
            metrics.get("log_loss"),
            metrics.get("accuracy"),
            output_dir,
        )

    except Exception as exc:
        run.status = "failed"
        run.error_message = str(exc)
        run.finished_at = timezone.now()
        run.save(update_fields=["status", "error_message", "finished_at"])
        logger.exception("Training run '%s' failed", run_name)
        raise

    return TrainingResult(run=run, model=model)
