"""
Database models for the taglearn classification system.

Models
------
ImageSample     – One row per sample path: current label and lifecycle status.
ImagePrediction – A prediction fact recorded for a sample (label + score).
LabelCorrection – Audit trail of label changes made through corrections.
TrainingRun     – Lifecycle record of one training / retraining run.

The first three form the *relational mirror*: a queryable copy of the
facts written to the tag manifest.  The manifest stays authoritative for
training; these tables exist for auditing and reporting.
"""

from django.db import models
from django.utils import timezone


# ── Samples ─────────────────────────────────────────────────────────────────

class ImageSample(models.Model):
    """A sample image known to the manifest.

    Status flow::

        unlabeled → labeled → corrected (repeatable)

    There is no deletion state; samples are never removed.
    """

    STATUS_UNLABELED = 'unlabeled'
    STATUS_LABELED = 'labeled'
    STATUS_CORRECTED = 'corrected'
    STATUS_CHOICES = [
        (STATUS_UNLABELED, 'Unlabeled'),
        (STATUS_LABELED, 'Labeled'),
        (STATUS_CORRECTED, 'Corrected'),
    ]

    path = models.CharField(
        max_length=500, unique=True,
        help_text='Manifest path, relative to the image store.',
    )
    label = models.CharField(
        max_length=150, null=True, blank=True, db_index=True,
        help_text='Current label (NULL while unlabeled).',
    )
    status = models.CharField(
        max_length=20, choices=STATUS_CHOICES, default=STATUS_UNLABELED, db_index=True,
    )
    created_at = models.DateTimeField(default=timezone.now, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'image_samples'
        ordering = ['-created_at']
        verbose_name = 'Image sample'
        verbose_name_plural = 'Image samples'

    def __str__(self) -> str:
        return f"{self.path} – {self.label or 'unlabeled'} ({self.status})"


class ImagePrediction(models.Model):
    """A prediction the model made for a sample, as accepted by a caller."""

    sample = models.ForeignKey(
        ImageSample,
        on_delete=models.CASCADE,
        related_name='predictions',
    )
    predicted_label = models.CharField(max_length=150, db_index=True)
    score = models.FloatField()
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = 'image_predictions'
        ordering = ['-created_at']
        verbose_name = 'Image prediction'
        verbose_name_plural = 'Image predictions'

    def __str__(self) -> str:
        return f"{self.sample.path} → {self.predicted_label} ({self.score:.4f})"


class LabelCorrection(models.Model):
    """One label change applied to a sample (old label may be unknown)."""

    sample = models.ForeignKey(
        ImageSample,
        on_delete=models.CASCADE,
        related_name='corrections',
    )
    old_label = models.CharField(max_length=150, null=True, blank=True)
    new_label = models.CharField(max_length=150)
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = 'label_corrections'
        ordering = ['created_at']
        verbose_name = 'Label correction'
        verbose_name_plural = 'Label corrections'

    def __str__(self) -> str:
        return f"{self.sample.path}: {self.old_label or '∅'} → {self.new_label}"


# ── Training runs ───────────────────────────────────────────────────────────

class TrainingRun(models.Model):
    """Record of a model training / retraining run.

    Status flow::

        pending → running → training → evaluating → completed
                                                   ↘ failed

    Each completed run produces artefacts under
    ``models/versions/<run_name>/`` (classifier head, vocabulary, metrics).

    The ``is_active_model`` flag marks the run whose model is currently
    used for live inference.  Only one run should be active at a time.
    """

    STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('running', 'Running'),
        ('training', 'Training'),
        ('evaluating', 'Evaluating'),
        ('completed', 'Completed'),
        ('failed', 'Failed'),
    ]

    # ── Identity ────────────────────────────────────────────────────────
    run_name = models.CharField(
        max_length=200, unique=True, db_index=True,
        help_text='Unique run identifier, e.g. "model_20261019_143052".',
    )
    manifest_path = models.CharField(max_length=500, blank=True, default='')

    # ── Status ──────────────────────────────────────────────────────────
    status = models.CharField(
        max_length=20, choices=STATUS_CHOICES, default='pending', db_index=True,
    )
    error_message = models.TextField(blank=True, default='')

    # ── Configuration snapshot ──────────────────────────────────────────
    config = models.JSONField(default=dict, blank=True)

    # ── Data stats ──────────────────────────────────────────────────────
    num_classes = models.PositiveIntegerField(null=True, blank=True)
    num_train_samples = models.PositiveIntegerField(null=True, blank=True)
    num_test_samples = models.PositiveIntegerField(null=True, blank=True)
    vocabulary = models.JSONField(default=list, blank=True)

    # ── Evaluation results ──────────────────────────────────────────────
    log_loss = models.FloatField(null=True, blank=True)
    accuracy = models.FloatField(null=True, blank=True)
    metrics_summary = models.JSONField(default=dict, blank=True)
    comparison = models.JSONField(default=dict, blank=True)

    # ── Model artefact ──────────────────────────────────────────────────
    model_path = models.CharField(
        max_length=500, blank=True, default='',
        help_text='Directory holding the saved model artefacts.',
    )
    is_active_model = models.BooleanField(
        default=False, db_index=True,
        help_text='Whether this model is currently serving live inference.',
    )

    # ── Timestamps ──────────────────────────────────────────────────────
    started_at = models.DateTimeField(null=True, blank=True)
    finished_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = 'training_runs'
        ordering = ['-created_at']
        verbose_name = 'Training run'
        verbose_name_plural = 'Training runs'

    def __str__(self) -> str:
        active = " ★" if self.is_active_model else ""
        return f"{self.run_name} ({self.status}){active}"

    @property
    def duration(self):
        """Return training duration as a timedelta, or None."""
        if self.started_at and self.finished_at:
            return self.finished_at - self.started_at
        return None

    def promote(self) -> None:
        """Mark this run's model as the one serving inference."""
        TrainingRun.objects.filter(is_active_model=True).update(
            is_active_model=False,
        )
        self.is_active_model = True
        self.save(update_fields=['is_active_model'])
