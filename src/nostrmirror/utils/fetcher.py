"""Per-relay event fetching with latest-by-timestamp merging.

Each relay is queried through its own short-lived client so a slow or
failing relay only drops out of the merge instead of failing the whole
fetch.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Iterable
from datetime import timedelta

from nostr_sdk import Filter, Kind, NostrSdkError, PublicKey, RelayUrl

from nostrmirror.models.event import Event

from .protocol import create_client


logger = logging.getLogger(__name__)

DEFAULT_FETCH_TIMEOUT = 10.0


def _newest(events: Iterable[Event]) -> Event | None:
    latest: Event | None = None
    for event in events:
        if latest is None or event.created_at > latest.created_at:
            latest = event
    return latest


class EventFetcher:
    """Fetch the latest events for an author across several relays.

    Args:
        timeout: Per-relay request timeout in seconds.
    """

    def __init__(self, timeout: float = DEFAULT_FETCH_TIMEOUT) -> None:
        self._timeout = timeout
        self._tasks: set[asyncio.Task[list[Event]]] = set()
        self._closed = False

    async def _fetch_from_relay(self, url: str, event_filter: Filter) -> list[Event]:
        """Return the signature-verified events ``url`` has for ``event_filter``."""
        client = await create_client()
        try:
            await client.add_relay(RelayUrl.parse(url))
            await client.connect()
            output = await client.fetch_events(event_filter, timedelta(seconds=self._timeout))
            events: list[Event] = []
            for evt in output.to_vec():
                try:
                    if evt.verify():
                        events.append(Event.from_nostr(evt))
                except (ValueError, TypeError, OverflowError):
                    continue
            return events
        except (NostrSdkError, OSError, TimeoutError, ValueError) as e:
            logger.warning("fetch_failed relay=%s error=%s", url, e)
            return []
        finally:
            # nostr-sdk Rust FFI can raise arbitrary exception types during shutdown
            with contextlib.suppress(Exception):
                await client.shutdown()

    async def _fetch_all(self, relays: Iterable[str], event_filter: Filter) -> list[Event]:
        if self._closed:
            return []
        tasks = [asyncio.create_task(self._fetch_from_relay(url, event_filter)) for url in relays]
        self._tasks.update(tasks)
        try:
            results = await asyncio.gather(*tasks)
        finally:
            self._tasks.difference_update(tasks)
        return [event for batch in results for event in batch]

    async def fetch_last_event_per_kind(
        self,
        kinds: Iterable[int],
        relays: Iterable[str],
        author: str,
    ) -> AsyncIterator[tuple[int, Event | None]]:
        """Yield ``(kind, latest event or None)`` for each of ``kinds`` authored by ``author``."""
        kinds = list(kinds)
        event_filter = (
            Filter().kinds([Kind(kind) for kind in kinds]).authors([PublicKey.parse(author)])
        )
        events = await self._fetch_all(relays, event_filter)
        for kind in kinds:
            yield kind, _newest(event for event in events if event.kind == kind)

    async def fetch_last_event(self, relays: Iterable[str], event_filter: Filter) -> Event | None:
        """Return the newest event matching ``event_filter`` across ``relays``."""
        return _newest(await self._fetch_all(relays, event_filter))

    async def shutdown(self) -> None:
        """Cancel in-flight fetches; later fetches return nothing."""
        self._closed = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
