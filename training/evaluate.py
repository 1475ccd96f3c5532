"""
Held-out evaluation — log-loss overall and per class.

Produces:
- Overall log-loss, accuracy and per-class log-loss (vocabulary order).
- One log line per held-out image (``display_results``).
- Confusion matrix saved as ``confusion_matrix.png``.
- ``sklearn.metrics.classification_report`` saved as ``classification_report.txt``.
- ``metrics.json`` with all numbers for programmatic use.
- ``comparison.json`` with the delta vs the previous model.

The report is an observability artefact; nothing reads it back except the
comparison against the next run.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import matplotlib
matplotlib.use("Agg")  # non-interactive backend for server
import matplotlib.pyplot as plt
import numpy as np
from sklearn.metrics import accuracy_score, classification_report, confusion_matrix, log_loss

from .data import LabeledSamples, Vocabulary

logger = logging.getLogger(__name__)

_EPS = 1e-15


# ═══════════════════════════════════════════════════════════════════════════
# Core evaluation
# ═══════════════════════════════════════════════════════════════════════════

def per_class_log_loss(
    y_true: np.ndarray,
    proba: np.ndarray,
    vocabulary: Vocabulary,
) -> List[Dict[str, Any]]:
    """Mean ``-log p(true class)`` over the samples of each class.

    Classes without held-out samples report ``None``.
    """
    clipped = np.clip(proba, _EPS, 1.0)
    result = []
    for key, label in enumerate(vocabulary.labels):
        mask = y_true == key
        if not np.any(mask):
            value = None
        else:
            value = round(float(-np.log(clipped[mask, key]).mean()), 4)
        result.append({"label": label, "log_loss": value})
    return result


def display_results(predictions: List[Dict[str, Any]]) -> None:
    for p in predictions:
        logger.info(
            "Image: %s predicted as: %s with score: %.4f",
            Path(p["path"]).name, p["predicted_label"], p["score"],
        )


def evaluate_model(
    model,
    samples: LabeledSamples,
    output_dir: Optional[Path] = None,
    checkpoint: Optional[Callable[[], None]] = None,
) -> Dict[str, Any]:
    """Score *model* on held-out *samples*.

    Parameters
    ----------
    model : TrainedModel
        Fitted model.
    samples : LabeledSamples
        Held-out samples.  Those whose label is not in the model's
        vocabulary cannot be scored and are skipped.
    output_dir : Path, optional
        Where to save metrics.json, classification_report.txt and
        confusion_matrix.png.
    checkpoint : callable, optional
        Called before every held-out image; may raise to abort.

    Returns
    -------
    dict
        Keys: log_loss, per_class_log_loss (list), accuracy, num_samples,
        skipped, predictions (list), confusion_matrix (nested list).
        Empty when nothing could be scored.
    """
    vocabulary: Vocabulary = model.vocabulary

    keep = [i for i, label in enumerate(samples.labels) if label in vocabulary]
    unknown = len(samples) - len(keep)
    if unknown:
        logger.warning(
            "Skipping %d held-out samples with labels outside the vocabulary %s",
            unknown, list(vocabulary),
        )
    if not keep:
        logger.warning("No held-out samples to evaluate")
        return {}

    paths = [samples.paths[i] for i in keep]
    labels = [samples.labels[i] for i in keep]
    rows = []
    for i in keep:
        if checkpoint is not None:
            checkpoint()
        rows.append(model.predict_proba([samples.images[i]])[0])
    proba = np.vstack(rows)

    y_true = np.array([vocabulary.key_of(label) for label in labels])
    y_pred = np.argmax(proba, axis=1)
    all_keys = list(range(len(vocabulary)))

    overall = float(log_loss(y_true, proba, labels=all_keys))
    per_class = per_class_log_loss(y_true, proba, vocabulary)
    accuracy = float(accuracy_score(y_true, y_pred))

    predictions = [
        {
            "path": path,
            "label": label,
            "predicted_label": vocabulary.label_of(int(pred)),
            "score": round(float(row.max()), 4),
        }
        for path, label, pred, row in zip(paths, labels, y_pred, proba)
    ]
    display_results(predictions)

    logger.info("LogLoss is: %.4f", overall)
    logger.info(
        "PerClassLogLoss is: %s",
        " , ".join(f"{c['label']}={c['log_loss']}" for c in per_class),
    )

    cm = confusion_matrix(y_true, y_pred, labels=all_keys)
    metrics = {
        "log_loss": round(overall, 4),
        "per_class_log_loss": per_class,
        "accuracy": round(accuracy, 4),
        "num_samples": len(keep),
        "skipped": unknown + len(samples.skipped),
        "predictions": predictions,
        "confusion_matrix": cm.tolist(),
    }

    if output_dir is not None:
        output_dir = Path(output_dir)
        report_str = classification_report(
            y_true, y_pred,
            target_names=list(vocabulary.labels),
            labels=all_keys,
            digits=4,
            zero_division=0,
        )
        (output_dir / "classification_report.txt").write_text(report_str, encoding="utf-8")
        _save_confusion_matrix(cm, list(vocabulary.labels), output_dir)
        (output_dir / "metrics.json").write_text(
            json.dumps(metrics, indent=2), encoding="utf-8",
        )
        logger.info("Metrics saved to %s", output_dir / "metrics.json")

    return metrics


# ═══════════════════════════════════════════════════════════════════════════
# Confusion matrix plot
# ═══════════════════════════════════════════════════════════════════════════

def _save_confusion_matrix(
    cm: np.ndarray,
    class_names: List[str],
    output_dir: Path,
) -> None:
    fig, ax = plt.subplots(figsize=(8, 6))
    im = ax.imshow(cm, interpolation="nearest", cmap=plt.cm.Blues)
    ax.set_title("Confusion Matrix")
    fig.colorbar(im, ax=ax)

    ticks = np.arange(len(class_names))
    ax.set_xticks(ticks)
    ax.set_xticklabels(class_names, rotation=45, ha="right")
    ax.set_yticks(ticks)
    ax.set_yticklabels(class_names)

    threshold = cm.max() / 2.0 if cm.size else 0
    for i in range(len(class_names)):
        for j in range(len(class_names)):
            ax.text(
                j, i, str(cm[i, j]),
                ha="center", va="center",
                color="white" if cm[i, j] > threshold else "black",
            )

    ax.set_xlabel("Predicted Label")
    ax.set_ylabel("True Label")
    fig.tight_layout()

    path = output_dir / "confusion_matrix.png"
    fig.savefig(str(path), dpi=120)
    plt.close(fig)
    logger.info("Confusion matrix saved to %s", path)


# ═══════════════════════════════════════════════════════════════════════════
# Comparison with previous model
# ═══════════════════════════════════════════════════════════════════════════

def compare_with_previous(
    new_metrics: Dict[str, Any],
    previous_metrics_path: Optional[Path],
    output_dir: Path,
) -> Dict[str, Any]:
    """Compare held-out log-loss against a previous run's metrics.json.

    Lower log-loss is better; a model that is not worse is recommended
    for promotion.  Returns the comparison and saves comparison.json.
    """
    new_loss = new_metrics.get("log_loss")

    if new_loss is None:
        comparison = {
            "has_previous": False,
            "recommendation": "promote",
            "reason": "No held-out metrics for the new model.",
        }
    elif previous_metrics_path is None or not previous_metrics_path.exists():
        comparison = {
            "has_previous": False,
            "new_log_loss": new_loss,
            "recommendation": "promote",
            "reason": "No previous model to compare against.",
        }
    else:
        try:
            prev = json.loads(previous_metrics_path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            prev = {}
        prev_loss = prev.get("log_loss")

        if prev_loss is None:
            comparison = {
                "has_previous": False,
                "new_log_loss": new_loss,
                "recommendation": "promote",
                "reason": "Could not read previous metrics.",
            }
        else:
            delta = new_loss - prev_loss
            comparison = {
                "has_previous": True,
                "previous_log_loss": prev_loss,
                "new_log_loss": new_loss,
                "log_loss_delta": round(delta, 4),
                "recommendation": "promote" if delta <= 0 else "keep_previous",
                "reason": (
                    f"Log-loss {'improved' if delta <= 0 else 'worsened'} by {abs(delta):.4f}."
                ),
            }

    (output_dir / "comparison.json").write_text(
        json.dumps(comparison, indent=2), encoding="utf-8",
    )
    logger.info("Comparison: %s", comparison.get("recommendation"))
    return comparison
