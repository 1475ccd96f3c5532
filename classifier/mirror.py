"""
Relational mirror — write contract over the Django ORM.

The ingestion workflow only needs a handful of idempotent-or-transactional
writes; everything else about the schema is private to ``models.py``.
Any ``DatabaseError`` is converted to ``MirrorWriteError`` so callers deal
with one failure type regardless of the backend.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Optional

from django.db import DatabaseError, transaction

from .errors import MirrorWriteError
from .models import ImagePrediction, ImageSample, LabelCorrection

logger = logging.getLogger(__name__)


class DjangoMirror:
    """Records samples, predictions and corrections in the database."""

    @contextmanager
    def atomic(self):
        """Group several writes into one transaction."""
        try:
            with transaction.atomic():
                yield self
        except DatabaseError as exc:
            raise MirrorWriteError(f"Mirror transaction failed: {exc}", operation="atomic") from exc

    def sample_status(self, path: str) -> Optional[str]:
        """Current status of *path*, or ``None`` if the mirror has no row."""
        try:
            return (
                ImageSample.objects.filter(path=path)
                .values_list("status", flat=True)
                .first()
            )
        except DatabaseError as exc:
            raise MirrorWriteError(
                f"Could not read sample: {exc}", path=path, operation="sample_status",
            ) from exc

    def insert_sample(
        self,
        path: str,
        label: Optional[str],
        status: str = ImageSample.STATUS_LABELED,
    ) -> ImageSample:
        """Create or update the sample row for *path* (idempotent)."""
        try:
            sample, created = ImageSample.objects.update_or_create(
                path=path,
                defaults={"label": label, "status": status},
            )
        except DatabaseError as exc:
            raise MirrorWriteError(
                f"Could not write sample: {exc}", path=path, operation="insert_sample",
            ) from exc
        logger.debug("Mirror sample %s %s (%s)", "created" if created else "updated", path, status)
        return sample

    def insert_prediction(self, sample_path: str, label: str, score: float) -> ImagePrediction:
        try:
            sample, _ = ImageSample.objects.get_or_create(
                path=sample_path,
                defaults={"label": label, "status": ImageSample.STATUS_LABELED},
            )
            return ImagePrediction.objects.create(
                sample=sample,
                predicted_label=label,
                score=float(score),
            )
        except DatabaseError as exc:
            raise MirrorWriteError(
                f"Could not write prediction: {exc}",
                path=sample_path, operation="insert_prediction",
            ) from exc

    def record_correction(
        self,
        path: str,
        old_label: Optional[str],
        new_label: str,
    ) -> LabelCorrection:
        try:
            sample = ImageSample.objects.get(path=path)
            return LabelCorrection.objects.create(
                sample=sample,
                old_label=old_label,
                new_label=new_label,
            )
        except (DatabaseError, ImageSample.DoesNotExist) as exc:
            raise MirrorWriteError(
                f"Could not write correction: {exc}", path=path, operation="record_correction",
            ) from exc
