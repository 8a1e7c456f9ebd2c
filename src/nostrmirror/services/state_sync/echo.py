"""Suppression of self-published events seen again on the live subscription."""

from __future__ import annotations

import time
from collections.abc import Callable


class SentEventIds:
    """Ids of events this instance published.

    Ids are recorded before the event is handed to the relay client, so an
    echo can never arrive before its id is known.

    Args:
        retention: Seconds to remember an id; ``None`` keeps ids forever.
        clock: Returns the current Unix time in seconds.
    """

    def __init__(
        self,
        retention: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._retention = retention
        self._clock = clock
        self._ids: dict[str, float] = {}

    def record(self, event_id: str) -> None:
        self._evict()
        self._ids[event_id] = self._clock()

    def should_ignore(self, event_id: str) -> bool:
        self._evict()
        return event_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def _evict(self) -> None:
        if self._retention is None:
            return
        cutoff = self._clock() - self._retention
        # Insertion order is recording order
        while self._ids:
            event_id, recorded_at = next(iter(self._ids.items()))
            if recorded_at >= cutoff:
                break
            del self._ids[event_id]
