"""Per-call sequencing.

Turns for one call id run strictly one after another; different calls
run in parallel. The lock is held only for the duration of a turn.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)


class CallRegistry:
    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, call_id: str) -> asyncio.Lock:
        lock = self._locks.get(call_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[call_id] = lock
        return lock

    @asynccontextmanager
    async def turn(self, call_id: str):
        """Hold the call's lock for one turn."""
        lock = self.lock_for(call_id)
        if lock.locked():
            logger.info("Call %s: turn queued behind an in-flight turn", call_id)
        async with lock:
            yield

    def hangup(self, call_id: str) -> None:
        if self._locks.pop(call_id, None) is not None:
            logger.info("Call %s released", call_id)

    def __contains__(self, call_id: str) -> bool:
        return call_id in self._locks

    def __len__(self) -> int:
        return len(self._locks)
