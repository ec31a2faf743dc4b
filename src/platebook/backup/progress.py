"""
Progress reporting for export and import.

ProgressReporter forwards integer percentages to a caller supplied callback.
Within one operation the reported value never decreases and stays within
0-100; calls are serialized so the callback may be invoked from a worker
thread while another thread reads the current value.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]


def span_progress(start: int, span: int, index: int, total: int) -> int:
    """
    Progress after finishing item ``index`` (0-based) of ``total``.

    Computed as start + (index + 1) * span // total so the last item always
    lands exactly on start + span.
    """
    if total <= 0:
        return start + span
    return start + ((index + 1) * span) // total


class ProgressReporter:
    """Monotonic, thread-safe progress channel for a single operation."""

    def __init__(self, callback: ProgressCallback | None = None) -> None:
        self._callback = callback
        self._lock = threading.Lock()
        self._value = -1

    @property
    def value(self) -> int:
        with self._lock:
            return max(self._value, 0)

    def reset(self) -> None:
        """Start a new operation at 0."""
        with self._lock:
            self._value = -1
        self.report(0)

    def report(self, value: int) -> None:
        """Report progress; values lower than the last one are ignored."""
        value = max(0, min(100, int(value)))
        with self._lock:
            if value <= self._value:
                return
            self._value = value
            if self._callback is not None:
                self._callback(value)
