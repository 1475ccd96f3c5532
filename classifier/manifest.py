"""
Tag manifest — the line-structured source of truth for training.

Format
------
One sample per line, UTF-8, no header::

    toaster1.jpg<TAB>toaster
    microwave2.jpg<TAB>microwave
    upload_17.jpg                      ← unlabeled placeholder

Blank lines are ignored.  The file is append-only: corrections add a new
line for the same path rather than editing the old one, so the manifest
doubles as an audit trail of every label a sample has carried.  How
repeated paths are collapsed for training is decided by the reader
(``resolve_entries`` with a ``DuplicatePolicy``).

Concurrency
-----------
All writers of one manifest file inside a process share one re-entrant
lock (``TagManifest.lock``).  Each append is a single whole-line write,
flushed and fsync'ed before the lock is released.  Callers that pair an
append with another write (see ``ingestion.py``) hold the lock across
both and can roll the append back with ``truncate(offset)``.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from training.config import DuplicatePolicy

logger = logging.getLogger(__name__)

_LOCKS: Dict[str, threading.RLock] = {}
_LOCKS_GUARD = threading.Lock()


def _lock_for(path: Path) -> threading.RLock:
    key = str(path.resolve())
    with _LOCKS_GUARD:
        if key not in _LOCKS:
            _LOCKS[key] = threading.RLock()
        return _LOCKS[key]


@dataclass(frozen=True)
class ManifestEntry:
    """One manifest line.  ``label`` is ``None`` for a placeholder."""

    line_no: int
    path: str
    label: Optional[str]

    @property
    def is_labeled(self) -> bool:
        return bool(self.label)


def clean_field(value: str, name: str) -> str:
    """Strip *value* and reject empty values or embedded tabs/newlines."""
    if value is None or not str(value).strip():
        raise ValueError(f"Manifest {name} must be a non-empty string")
    value = str(value).strip()
    if any(ch in value for ch in ("\t", "\n", "\r")):
        raise ValueError(f"Manifest {name} may not contain tabs or newlines: {value!r}")
    return value


def parse_line(line: str, line_no: int) -> Optional[ManifestEntry]:
    """Parse one raw line; return ``None`` for blank lines."""
    line = line.rstrip("\r\n")
    if not line.strip():
        return None
    path, _, label = line.partition("\t")
    return ManifestEntry(
        line_no=line_no,
        path=path.strip(),
        label=label.strip() or None,
    )


class TagManifest:
    """Append-only ``path<TAB>label`` file guarded by a per-file lock."""

    def __init__(self, path) -> None:
        self.path = Path(path)
        self.lock = _lock_for(self.path)

    def __repr__(self) -> str:
        return f"TagManifest({str(self.path)!r})"

    # ── Writing ─────────────────────────────────────────────────────────

    def append(self, path: str, label: str) -> int:
        """Append ``path<TAB>label``; return the byte offset before the write."""
        path = clean_field(path, "path")
        label = clean_field(label, "label")
        return self._append_line(f"{path}\t{label}")

    def append_placeholder(self, path: str) -> int:
        """Append an unlabeled entry for *path*."""
        path = clean_field(path, "path")
        return self._append_line(path)

    def _append_line(self, line: str) -> int:
        with self.lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            # Unbuffered, so nothing is left to flush once the append is undone.
            with open(self.path, "ab+", buffering=0) as fh:
                offset = fh.seek(0, os.SEEK_END)
                payload = (line + os.linesep).encode("utf-8")
                # A file written by another tool may lack its final newline.
                if offset > 0:
                    fh.seek(offset - 1)
                    if fh.read(1) not in (b"\n", b"\r"):
                        payload = os.linesep.encode("utf-8") + payload
                    fh.seek(0, os.SEEK_END)
                try:
                    written = fh.write(payload)
                    if written != len(payload):
                        raise OSError(
                            f"Short write to {self.path}: {written} of {len(payload)} bytes"
                        )
                    os.fsync(fh.fileno())
                except BaseException:
                    # Each append is all or nothing.
                    os.ftruncate(fh.fileno(), offset)
                    logger.warning("Append to %s failed, cut back to %d bytes", self.path, offset)
                    raise
            return offset

    def truncate(self, offset: int) -> None:
        """Cut the file back to *offset* bytes (undo of an append)."""
        with self.lock:
            with open(self.path, "r+b") as fh:
                fh.truncate(offset)
                fh.flush()
                os.fsync(fh.fileno())
        logger.info("Manifest %s truncated back to %d bytes", self.path, offset)

    # ── Reading ─────────────────────────────────────────────────────────

    def entries(self) -> List[ManifestEntry]:
        """Every non-blank line, in append order."""
        if not self.path.exists():
            return []
        parsed: List[ManifestEntry] = []
        with open(self.path, "r", encoding="utf-8") as fh:
            for line_no, line in enumerate(fh, start=1):
                entry = parse_line(line, line_no)
                if entry is not None:
                    parsed.append(entry)
        return parsed

    def snapshot(self) -> Tuple[ManifestEntry, ...]:
        """Immutable copy of the entries, read while holding the lock."""
        with self.lock:
            return tuple(self.entries())

    def current_labels(self) -> Dict[str, str]:
        """Map each labeled path to its most recently appended label."""
        return {e.path: e.label for e in resolve_entries(self.entries(), DuplicatePolicy.LATEST)}

    def current_label(self, path: str) -> Optional[str]:
        return self.current_labels().get(path)


def resolve_entries(
    entries: Iterable[ManifestEntry],
    policy: DuplicatePolicy = DuplicatePolicy.LATEST,
) -> List[ManifestEntry]:
    """Collapse raw manifest lines into training examples.

    Placeholders are dropped and never override an existing label.

    * ``LATEST``   – one entry per path, positioned where the path first
      appeared, carrying the label of its last labeled line.
    * ``KEEP_ALL`` – every labeled line, in file order.
    """
    policy = DuplicatePolicy(policy)
    labeled = [e for e in entries if e.is_labeled]

    if policy is DuplicatePolicy.KEEP_ALL:
        return labeled

    latest: Dict[str, ManifestEntry] = {}
    order: List[str] = []
    for entry in labeled:
        if entry.path not in latest:
            order.append(entry.path)
        latest[entry.path] = entry
    return [latest[p] for p in order]
