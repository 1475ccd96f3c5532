"""
Reconciliation log for manifest / mirror divergence.

Whenever a paired write fails half-way, the ingestion workflow appends one
JSON object per line here, so an operator (or a repair script) can see
which samples need attention:

* ``rolled_back``     – the mirror write failed and the manifest line was
                        removed again; the caller may simply retry.
* ``manifest_orphan`` – the mirror write failed and the manifest line could
                        not be removed; the manifest now holds a label the
                        mirror does not know about.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class ReconciliationLog:
    def __init__(self, path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def record(
        self,
        *,
        outcome: str,
        operation: str,
        path: str,
        label: Optional[str],
        error: str,
    ) -> Dict[str, Any]:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "outcome": outcome,
            "operation": operation,
            "path": path,
            "label": label,
            "error": error,
        }
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as fh:
                fh.write(json.dumps(entry) + "\n")
        logger.warning("Reconciliation: %s %s for %s (%s)", operation, outcome, path, error)
        return entry

    def entries(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        with open(self.path, "r", encoding="utf-8") as fh:
            return [json.loads(line) for line in fh if line.strip()]
