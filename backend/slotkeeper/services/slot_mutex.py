"""
Per-slot mutex registry.

Operations on one slot (hold, confirm, cancel, waitlist offer) are
serialized through an in-process mutex keyed by SlotKey.lock_name. The
store's conditional writes stay the final arbiter; the mutex only keeps
same-slot work from racing inside this process.

Entries are created on demand and dropped when the last user leaves, so a
restart never leaves a phantom lock behind.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Iterator

from ..errors import OperationTimeout

logger = logging.getLogger(__name__)


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self):
        # Reentrant: a cancel publishes "freed" while holding the mutex and the
        # waitlist listener re-enters it to reserve the slot for an offer
        self.lock = threading.RLock()
        self.users = 0


class SlotMutexRegistry:
    def __init__(self, timeout: float):
        self.timeout = timeout
        self._guard = threading.Lock()
        self._entries: dict[str, _Entry] = {}

    @contextmanager
    def hold(self, name: str, timeout: float | None = None) -> Iterator[None]:
        """
        Hold the mutex for `name`.

        Raises:
            OperationTimeout: the mutex was not acquired within `timeout`
        """
        wait = self.timeout if timeout is None else timeout

        with self._guard:
            entry = self._entries.get(name)
            if entry is None:
                entry = self._entries[name] = _Entry()
            entry.users += 1

        acquired = entry.lock.acquire(timeout=wait)
        try:
            if not acquired:
                logger.warning(f"Slot mutex timeout: {name} after {wait}s")
                raise OperationTimeout(f"Timed out waiting for slot {name}")
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    self._entries.pop(name, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
