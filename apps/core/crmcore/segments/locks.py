from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager

from crmcore.errors import ConcurrencyConflictError


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class SegmentLockRegistry:
    """One lock per (tenant, segment) so recalculations of a segment never overlap in-process.

    An entry lives only while a thread holds or waits for it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[tuple[str, str], _Entry] = {}

    def users(self, tenant_id: str, segment_id: str) -> int:
        """Threads currently holding or waiting for the segment's lock."""

        with self._guard:
            entry = self._entries.get((tenant_id, segment_id))
            return entry.users if entry is not None else 0

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    @contextmanager
    def hold(self, tenant_id: str, segment_id: str, timeout: float | None = None) -> Iterator[None]:
        key = (tenant_id, segment_id)
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = _Entry()
                self._entries[key] = entry
            entry.users += 1

        try:
            if timeout is None or timeout < 0:
                acquired = entry.lock.acquire()
            else:
                acquired = entry.lock.acquire(timeout=timeout)
            if not acquired:
                raise ConcurrencyConflictError(f"Segment {segment_id} is already being recalculated")
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._entries[key]


segment_locks = SegmentLockRegistry()
