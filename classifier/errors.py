"""
Error taxonomy for the tagging pipeline.

Every error carries the sample ``path`` (when one is involved) and the
``operation`` that failed, so callers can retry or alert without parsing
the message.

InvalidImageError        – Undecodable / empty / zero-size image.  Not retried.
InsufficientClassesError – Fewer than two distinct labels to train on.
ManifestWriteError       – Manifest append failed after bounded retries.
MirrorWriteError         – Relational mirror write failed (partial success).
TrainingTimeoutError     – Retrain job exceeded its wall-clock budget.
TrainingCancelledError   – Retrain job was cancelled by its caller.
UnknownVocabularyError   – Malformed model (empty / inconsistent vocabulary).
"""

from __future__ import annotations

from typing import Optional


class TagLearnError(Exception):
    """Base class for all pipeline errors."""

    def __init__(
        self,
        message: str,
        *,
        path: Optional[str] = None,
        operation: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.path = path
        self.operation = operation

    def __str__(self) -> str:
        message = super().__str__()
        context = []
        if self.operation:
            context.append(f"operation={self.operation}")
        if self.path:
            context.append(f"path={self.path}")
        if context:
            return f"{message} ({', '.join(context)})"
        return message


class InvalidImageError(TagLearnError):
    pass


class InsufficientClassesError(TagLearnError):
    def __init__(self, labels, **kwargs) -> None:
        self.labels = sorted(labels)
        super().__init__(
            f"At least 2 distinct labels are required to train, found "
            f"{len(self.labels)}: {self.labels}",
            **kwargs,
        )


class ManifestWriteError(TagLearnError):
    pass


class MirrorWriteError(TagLearnError):
    """The mirror write failed after the manifest append had succeeded.

    ``manifest_rolled_back`` tells the caller whether the manifest line
    was removed again (clean failure) or is still present (the pair is
    inconsistent and was recorded in the reconciliation log).
    """

    def __init__(self, message: str, *, manifest_rolled_back: bool = False, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.manifest_rolled_back = manifest_rolled_back


class TrainingTimeoutError(TagLearnError):
    pass


class TrainingCancelledError(TagLearnError):
    pass


class UnknownVocabularyError(TagLearnError):
    pass
