"""
Background retrain jobs.

Simple threading-based approach: one worker thread per job, at most one
job at a time per process.  The manifest snapshot is taken *before* the
thread starts, so samples ingested while the job runs wait for the next
retrain.

The fit step itself cannot be interrupted, so cancellation and the
wall-clock budget are cooperative: the job checks them before every image
during feature extraction and once after fitting.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future
from typing import Callable, Optional

from django.db import connection

from classifier.errors import TrainingCancelledError, TrainingTimeoutError
from classifier.manifest import TagManifest
from classifier.models import TrainingRun
from .config import TrainingConfig
from .features import FeatureExtractor
from .runner import new_run_name, run_training
from .train import TrainedModel

logger = logging.getLogger(__name__)

# Module-level lock to prevent concurrent training runs
_training_lock = threading.Lock()


class RetrainJob:
    """Handle on a background training run.

    Attributes
    ----------
    run_name : str
        Name of the ``TrainingRun`` the job records into.
    """

    def __init__(self, run_name: str, timeout_seconds: Optional[float] = None) -> None:
        self.run_name = run_name
        self.timeout_seconds = timeout_seconds
        self._future: Future = Future()
        self._cancelled = threading.Event()
        self._deadline: Optional[float] = None

    def __repr__(self) -> str:
        state = "done" if self.done() else "running"
        return f"<RetrainJob {self.run_name} {state}>"

    # ── Caller side ─────────────────────────────────────────────────────

    def done(self) -> bool:
        return self._future.done()

    def wait(self, timeout: Optional[float] = None) -> TrainedModel:
        """Block until the job finishes; return its model or re-raise its error."""
        return self._future.result(timeout=timeout)

    def cancel(self) -> None:
        """Ask the job to stop at its next checkpoint."""
        self._cancelled.set()
        logger.info("Cancellation requested for %s", self.run_name)

    def add_done_callback(self, fn: Callable[["RetrainJob"], None]) -> None:
        self._future.add_done_callback(lambda _f: fn(self))

    # ── Worker side ─────────────────────────────────────────────────────

    def start_clock(self) -> None:
        if self.timeout_seconds is not None:
            self._deadline = time.monotonic() + self.timeout_seconds

    def checkpoint(self) -> None:
        if self._cancelled.is_set():
            raise TrainingCancelledError(
                f"Training run '{self.run_name}' was cancelled", operation="train",
            )
        if self._deadline is not None and time.monotonic() >= self._deadline:
            raise TrainingTimeoutError(
                f"Training run '{self.run_name}' exceeded {self.timeout_seconds}s",
                operation="train",
            )


def start_training(
    config: TrainingConfig,
    manifest: Optional[TagManifest] = None,
    extractor: Optional[FeatureExtractor] = None,
) -> Optional[RetrainJob]:
    """Launch a training run in a background thread.

    Returns
    -------
    RetrainJob | None
        The job handle, or None if another run is already in progress.
    """
    if not _training_lock.acquire(blocking=False):
        logger.warning("Training already in progress — refusing to start.")
        return None

    try:
        manifest = manifest or TagManifest(config.resolve_manifest_path())
        entries = manifest.snapshot()
        job = RetrainJob(new_run_name(), timeout_seconds=config.timeout_seconds)
    except BaseException:
        _training_lock.release()
        raise

    def _run():
        result, error = None, None
        try:
            job.start_clock()
            result = run_training(
                config,
                entries=entries,
                extractor=extractor,
                checkpoint=job.checkpoint,
                run_name=job.run_name,
            )
        except BaseException as exc:
            logger.exception("Background training failed")
            error = exc
        finally:
            connection.close()
            _training_lock.release()

        # The lock is free before any waiter wakes up.
        if error is not None:
            job._future.set_exception(error)
        else:
            job._future.set_result(result.model)

    job._future.set_running_or_notify_cancel()
    thread = threading.Thread(target=_run, name="training-runner", daemon=True)
    thread.start()
    logger.info(
        "Background training %s started on %d manifest lines", job.run_name, len(entries),
    )
    return job


def is_training_running() -> bool:
    """Return True if a training run is currently in progress."""
    return _training_lock.locked()


def get_latest_run() -> Optional[TrainingRun]:
    """Return the most recently created training run."""
    return TrainingRun.objects.order_by("-created_at").first()


def get_active_model_run() -> Optional[TrainingRun]:
    """Return the currently active (serving) training run."""
    return TrainingRun.objects.filter(is_active_model=True).first()
