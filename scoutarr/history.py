import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .orchestrator import SearchResult


@dataclass
class RunRecord:
    timestamp: datetime
    success: bool
    results: dict[str, SearchResult] = field(default_factory=dict)
    error: str | None = None
    # Set for single-target runs only.
    key: str | None = None

    @property
    def total_searched(self) -> int:
        return sum(r.searched for r in self.results.values())

    def as_dict(self) -> dict[str, Any]:
        ts = self.timestamp
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        out: dict[str, Any] = {
            "timestamp": ts.isoformat(),
            "success": self.success,
            "results": {k: r.as_dict() for k, r in self.results.items()},
        }
        if self.error:
            out["error"] = self.error
        if self.key:
            out["key"] = self.key
        return out


class HistoryLedger:
    """Most-recent-first run log with a fixed capacity."""

    def __init__(self, capacity: int = 100) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._records: list[RunRecord] = []
        self._lock = threading.Lock()

    def append(self, record: RunRecord) -> None:
        with self._lock:
            self._records.insert(0, record)
            del self._records[self.capacity :]

    def list(self) -> list[RunRecord]:
        with self._lock:
            return list(self._records)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
