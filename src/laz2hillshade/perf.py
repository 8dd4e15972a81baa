"""Stage timing shared by concurrent unit workers."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from time import perf_counter
from typing import Any, Iterator


class StageTimer:
    """Accumulate wall-clock seconds per named stage across threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._totals: dict[str, float] = {}
        self._counts: dict[str, int] = {}
        self._start = perf_counter()

    @contextmanager
    def span(self, name: str) -> Iterator[None]:
        """Measure a named span of work."""
        start = perf_counter()
        try:
            yield
        finally:
            elapsed = perf_counter() - start
            with self._lock:
                self._totals[name] = self._totals.get(name, 0.0) + elapsed
                self._counts[name] = self._counts.get(name, 0) + 1

    def summary(self) -> dict[str, Any]:
        """Return a JSON-serializable summary of captured timings."""
        with self._lock:
            stages = {
                name: {"seconds": round(total, 6), "count": self._counts[name]}
                for name, total in sorted(self._totals.items())
            }
        return {
            "total_seconds": round(perf_counter() - self._start, 6),
            "stages": stages,
        }
