"""
Ingestion and correction workflow — keeps manifest and mirror in step.

Every operation that adds or changes a label writes to two stores:

1. the tag manifest (authoritative for training), then
2. the relational mirror (queryable copy).

The pair is written as a two-phase operation while holding the
manifest's lock, so concurrent requests are serialised per manifest:

* Manifest append fails → retried with exponential backoff; after the
  last attempt ``ManifestWriteError`` is raised and the mirror is never
  touched.
* Mirror write fails → retried; after the last attempt the manifest
  append is truncated away again, the failure is written to the
  reconciliation log, and ``MirrorWriteError`` is raised with
  ``manifest_rolled_back`` telling the caller which state it is in.

Sample lifecycle::

    unlabeled ──add_labeled_sample──▶ labeled ──correct_label──▶ corrected
                                                     ▲               │
                                                     └───────────────┘
"""

from __future__ import annotations

import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Callable, Optional, Tuple, Type

from django.conf import settings

from training.data import resolve_image_path
from training.features import load_image
from .errors import InvalidImageError, ManifestWriteError, MirrorWriteError
from .manifest import TagManifest, clean_field
from .mirror import DjangoMirror
from .model_loader import Prediction, classify
from .models import ImageSample
from .reconcile import ReconciliationLog

logger = logging.getLogger(__name__)

IMG_EXTS = frozenset({".jpg", ".jpeg", ".png", ".bmp", ".gif", ".webp"})


def _with_retry(
    fn: Callable,
    *,
    attempts: int,
    backoff_seconds: float,
    retry_on: Tuple[Type[BaseException], ...],
    tag: str,
):
    """Call *fn* up to *attempts* times, sleeping ``backoff * 2**i`` between tries."""
    last_err: Optional[BaseException] = None
    for i in range(max(1, attempts)):
        try:
            return fn()
        except retry_on as exc:
            last_err = exc
            logger.warning("Retry %s: attempt %d/%d failed: %r", tag, i + 1, attempts, exc)
            if i + 1 < attempts and backoff_seconds > 0:
                time.sleep(backoff_seconds * (2 ** i))
    raise last_err


class IngestionWorkflow:
    """Adds, registers and corrects samples across manifest and mirror.

    Parameters
    ----------
    manifest : TagManifest, optional
        Defaults to ``settings.TRAIN_TAGS_PATH``.
    mirror : DjangoMirror, optional
        Relational mirror; anything with the same write contract works.
    images_dir : Path, optional
        Managed image store.  Defaults to ``settings.IMAGES_ROOT``.
    reconciliation_log : ReconciliationLog, optional
        Defaults to ``settings.RECONCILIATION_LOG_PATH``.
    """

    def __init__(
        self,
        manifest: Optional[TagManifest] = None,
        mirror=None,
        images_dir=None,
        reconciliation_log: Optional[ReconciliationLog] = None,
        *,
        manifest_attempts: Optional[int] = None,
        mirror_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
    ) -> None:
        self.manifest = manifest or TagManifest(settings.TRAIN_TAGS_PATH)
        self.mirror = mirror or DjangoMirror()
        self.images_dir = Path(images_dir or settings.IMAGES_ROOT)
        self.reconciliation_log = reconciliation_log or ReconciliationLog(
            settings.RECONCILIATION_LOG_PATH,
        )
        self.manifest_attempts = manifest_attempts or settings.MANIFEST_WRITE_ATTEMPTS
        self.mirror_attempts = mirror_attempts or settings.MIRROR_WRITE_ATTEMPTS
        self.backoff_seconds = (
            settings.WRITE_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        )

    # ── Image store ─────────────────────────────────────────────────────

    def store_image(self, data: bytes, filename: str) -> str:
        """Validate *data* and write it into the image store.

        Returns the manifest-relative path (the bare filename).  An
        existing file of the same name is replaced.

        Raises
        ------
        InvalidImageError
            Empty or oversized payload, unsupported extension, or bytes
            that do not decode as an image.
        """
        name = Path(str(filename or "").replace("\\", "/")).name
        if not data:
            raise InvalidImageError("Empty image payload", path=name or None, operation="store_image")
        if len(data) > settings.MAX_UPLOAD_SIZE:
            raise InvalidImageError(
                f"File too large ({len(data):,} bytes). Max {settings.MAX_UPLOAD_SIZE:,}.",
                path=name, operation="store_image",
            )
        if not name or Path(name).suffix.lower() not in IMG_EXTS:
            raise InvalidImageError(
                f"Unsupported file type: {Path(name).suffix or '<none>'}",
                path=name or None, operation="store_image",
            )
        load_image(data, path=name)

        self.images_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.images_dir, prefix=".upload-")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            os.replace(tmp_path, self.images_dir / name)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

        logger.info("Stored image %s (%d bytes)", name, len(data))
        return name

    def _known_image(self, path: str, operation: str) -> str:
        """Normalise *path* and check it names a file in the image store.

        Manifest and mirror both receive the returned value.
        """
        path = clean_field(path, "path")
        if not resolve_image_path(path, self.images_dir).is_file():
            raise InvalidImageError(
                f"No image file at {resolve_image_path(path, self.images_dir)}",
                path=path, operation=operation,
            )
        return path

    # ── Paired writes ───────────────────────────────────────────────────

    def _paired_write(
        self,
        operation: str,
        path: str,
        label: Optional[str],
        append: Callable[[], int],
        mirror_write: Callable[[], None],
    ) -> None:
        """Manifest append, then mirror write; undo the append on failure.

        The caller must already hold ``self.manifest.lock``.
        """
        try:
            offset = _with_retry(
                append,
                attempts=self.manifest_attempts,
                backoff_seconds=self.backoff_seconds,
                retry_on=(OSError,),
                tag=f"manifest {operation}",
            )
        except OSError as exc:
            raise ManifestWriteError(
                f"Manifest append failed after {self.manifest_attempts} attempts: {exc}",
                path=path, operation=operation,
            ) from exc

        def _write_mirror():
            with self.mirror.atomic():
                mirror_write()

        try:
            _with_retry(
                _write_mirror,
                attempts=self.mirror_attempts,
                backoff_seconds=self.backoff_seconds,
                retry_on=(MirrorWriteError,),
                tag=f"mirror {operation}",
            )
        except MirrorWriteError as exc:
            rolled_back = True
            try:
                self.manifest.truncate(offset)
            except OSError:
                rolled_back = False
                logger.exception("Could not roll back manifest append for %s", path)

            self.reconciliation_log.record(
                outcome="rolled_back" if rolled_back else "manifest_orphan",
                operation=operation,
                path=path,
                label=label,
                error=str(exc),
            )
            raise MirrorWriteError(
                f"Mirror write failed ({exc}); manifest append "
                f"{'rolled back' if rolled_back else 'kept, see reconciliation log'}",
                manifest_rolled_back=rolled_back,
                path=path,
                operation=operation,
            ) from exc

    def register_unlabeled(self, path: str) -> bool:
        """Record *path* as a known, not yet labeled sample.

        Returns False (and writes nothing) if the manifest already holds an
        entry for *path*.
        """
        path = self._known_image(path, "register_unlabeled")
        with self.manifest.lock:
            if any(e.path == path for e in self.manifest.entries()):
                logger.info("Sample %s already in manifest, not re-registering", path)
                return False

            self._paired_write(
                "register_unlabeled", path, None,
                append=lambda: self.manifest.append_placeholder(path),
                mirror_write=lambda: self.mirror.insert_sample(
                    path, None, ImageSample.STATUS_UNLABELED,
                ),
            )
        logger.info("Registered unlabeled sample %s", path)
        return True

    def add_labeled_sample(
        self,
        path: str,
        label: str,
        prediction_score: Optional[float] = None,
    ) -> None:
        """Append ``path<TAB>label`` and mirror the sample (+ prediction).

        A sample that was already corrected keeps its ``corrected`` status.
        """
        path = self._known_image(path, "add_labeled_sample")
        label = clean_field(label, "label")

        def _mirror():
            status = ImageSample.STATUS_LABELED
            if self.mirror.sample_status(path) == ImageSample.STATUS_CORRECTED:
                status = ImageSample.STATUS_CORRECTED
            self.mirror.insert_sample(path, label, status)
            if prediction_score is not None:
                self.mirror.insert_prediction(path, label, prediction_score)

        with self.manifest.lock:
            self._paired_write(
                "add_labeled_sample", path, label,
                append=lambda: self.manifest.append(path, label),
                mirror_write=_mirror,
            )
        logger.info("Labeled %s as '%s'", path, label)

    def correct_label(self, path: str, new_label: str) -> None:
        """Record that *path* truly belongs to *new_label*.

        Appends a new manifest line (earlier lines are kept); the mirror
        sample becomes ``corrected`` and a ``LabelCorrection`` row keeps
        the old → new transition.
        """
        path = self._known_image(path, "correct_label")
        new_label = clean_field(new_label, "label")
        with self.manifest.lock:
            old_label = self.manifest.current_label(path)
            status = ImageSample.STATUS_CORRECTED if old_label else ImageSample.STATUS_LABELED

            def _mirror():
                self.mirror.insert_sample(path, new_label, status)
                self.mirror.record_correction(path, old_label, new_label)

            self._paired_write(
                "correct_label", path, new_label,
                append=lambda: self.manifest.append(path, new_label),
                mirror_write=_mirror,
            )
        logger.info("Corrected %s: %s → %s", path, old_label or "∅", new_label)

    # ── Composition ─────────────────────────────────────────────────────

    def classify_and_register(self, model, data: bytes, filename: str) -> Prediction:
        """Store an upload, classify it, and register it as unlabeled.

        The three steps stay individually available; this only chains them
        for callers that want an upload to join the manifest right away.
        """
        path = self.store_image(data, filename)
        prediction = classify(model, data, sample_path=path)
        self.register_unlabeled(path)
        return prediction
