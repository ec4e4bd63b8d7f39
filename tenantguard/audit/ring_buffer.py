"""Bounded, append-only store for validation audit entries."""

from __future__ import annotations

import threading
from collections import deque
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tenantguard.models.domain import ValidationAuditEntry

DEFAULT_CAPACITY = 1000


class AuditRingBuffer:
    """Keeps the newest ``capacity`` entries; the oldest is evicted first.

    Appends are serialised with a lock so concurrent writers (threads or
    tasks scheduled across threads) never interleave or reorder entries.
    Entries are never removed individually; ``clear`` exists for tests and
    explicit resets.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            msg = "capacity must be at least 1"
            raise ValueError(msg)
        self._entries: deque[ValidationAuditEntry] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._entries.maxlen or 0

    def append(self, entry: ValidationAuditEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def recent(self, limit: int = 100) -> list[ValidationAuditEntry]:
        """Return up to ``limit`` newest entries, oldest first."""
        with self._lock:
            if limit <= 0:
                return []
            entries = list(self._entries)
        return entries[-limit:]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
