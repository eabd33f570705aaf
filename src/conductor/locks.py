"""Per-issue mutual exclusion.

All work for one issue runs under that issue's lock so that two concurrent
"became ready" events cannot both pass the spawn ledger check. Different
issues never contend.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Tuple


logger = logging.getLogger(__name__)


IssueKey = Tuple[str, int]


class IssueLocks:
    """Keyed asyncio.Lock registry, one lock per (repository, issue number).

    A lock exists only while some task holds or waits for it; the last
    holder to leave drops it, so the registry stays as small as the set of
    issues currently being handled. The registry belongs to a single event
    loop.
    """

    def __init__(self) -> None:
        self._locks: Dict[IssueKey, asyncio.Lock] = {}
        self._users: Dict[IssueKey, int] = {}

    @asynccontextmanager
    async def hold(self, repository: str, issue_number: int) -> AsyncIterator[None]:
        """Hold the issue's lock for the duration of the block."""
        key = (repository, issue_number)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        elif lock.locked():
            logger.debug(
                "Waiting for issue lock",
                extra={"repository": repository, "issue_number": issue_number},
            )
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
