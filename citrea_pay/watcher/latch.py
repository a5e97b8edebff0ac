"""Non-blocking single-flight latch for the periodic jobs."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator


class SingleFlight:
    """At most one holder at a time; late callers are turned away, not queued."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def acquire(self) -> Iterator[bool]:
        """Yield True when acquired, False when another run holds the latch.

        The latch is released on every exit path of the `with` block.
        """
        acquired = self._lock.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                self._lock.release()
