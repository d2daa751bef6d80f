"""
In-flight attempt registry.

Features:
- At most one submission attempt per target id at a time
- Non-blocking: a second attempt is rejected, never queued
- In-memory (suitable for single-instance deployments)
"""
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict


logger = logging.getLogger(__name__)


class AttemptInFlightError(Exception):
    """Raised by hold() when the target already has an attempt in flight."""

    def __init__(self, target_id: Any):
        self.target_id = target_id
        super().__init__(f"A submission for {target_id} is already in progress")


class InFlightRegistry:
    """
    Tracks which target ids currently have a running attempt.

    Note: state lives in process memory; a multi-instance deployment would
    need a shared lock store.
    """

    def __init__(self):
        # Structure: {target_id: acquired_at}
        self._held: Dict[Any, float] = {}

    def acquire(self, target_id: Any) -> bool:
        """Take the lock for `target_id`; False when it is already held."""
        if target_id in self._held:
            logger.info("Attempt for %s rejected: already in flight", target_id)
            return False
        self._held[target_id] = time.monotonic()
        return True

    def release(self, target_id: Any) -> None:
        self._held.pop(target_id, None)

    def is_locked(self, target_id: Any) -> bool:
        return target_id in self._held

    def held_for(self, target_id: Any) -> float:
        """Seconds the lock has been held, 0 when free."""
        acquired_at = self._held.get(target_id)
        if acquired_at is None:
            return 0.0
        return time.monotonic() - acquired_at

    @asynccontextmanager
    async def hold(self, target_id: Any) -> AsyncIterator[None]:
        """Hold the lock for the duration of the block."""
        if not self.acquire(target_id):
            raise AttemptInFlightError(target_id)
        try:
            yield
        finally:
            self.release(target_id)
