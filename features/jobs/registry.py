"""
Dedup registry — the set of build requests currently in flight.

accept() and release() never await, so on a single event loop two tasks
cannot both accept the same key.
"""

from __future__ import annotations

import logging

log = logging.getLogger(__name__)


class DedupRegistry:
    """In-flight dedup keys. One instance per process, passed to every job."""

    def __init__(self):
        self._active: set[str] = set()

    def accept(self, key: str) -> bool:
        """Claim a key. False means a job for it is already running."""
        if key in self._active:
            log.info("Duplicate build request %s ignored", key)
            return False
        self._active.add(key)
        return True

    def release(self, key: str) -> None:
        self._active.discard(key)

    def __contains__(self, key: str) -> bool:
        return key in self._active

    def __len__(self) -> int:
        return len(self._active)
