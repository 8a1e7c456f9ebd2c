"""Nostr relay client operations.

Wraps a single long-lived ``nostr_sdk.Client`` in a
[RelayPool][nostrmirror.utils.protocol.RelayPool] that the synchronization
engine reconfigures as the user's relay map changes.

Attributes:
    create_client: Client factory with optional signing keys.
    RelayPool: Relay-set switching, fire-and-forget publishing and live
        subscriptions over one client.
    DeliveryResult: Per-relay outcome of one publish.

Note:
    Switching relays only adds and removes the difference between the old
    and new sets; connections common to both stay open.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Iterable
from typing import TYPE_CHECKING, Any, NamedTuple

from nostr_sdk import (
    Client,
    ClientBuilder,
    HandleNotification,
    NostrSdkError,
    NostrSigner,
    RelayUrl,
)

from nostrmirror.models.relay_list import RelayMap, read_relays, write_relays


if TYPE_CHECKING:
    from nostr_sdk import Event as NostrEvent
    from nostr_sdk import Filter, Keys


logger = logging.getLogger(__name__)


async def create_client(keys: Keys | None = None) -> Client:
    """Create a Nostr client, signing with ``keys`` when given."""
    builder = ClientBuilder()
    if keys is not None:
        builder = builder.signer(NostrSigner.keys(keys))
    return builder.build()


class DeliveryResult(NamedTuple):
    """Outcome of publishing one event.

    Attributes:
        event_id: Hex id of the published event.
        success: Relay URLs that accepted the event.
        failed: Relay URL to error message for relays that rejected it.
    """

    event_id: str
    success: tuple[str, ...]
    failed: dict[str, str]


class _NotificationRouter(HandleNotification):
    """Route relay notifications to per-subscription queues."""

    def __init__(self, queues: dict[str, asyncio.Queue[NostrEvent]]) -> None:
        super().__init__()
        self._queues = queues

    async def handle(self, relay_url: Any, subscription_id: str, event: NostrEvent) -> None:
        queue = self._queues.get(subscription_id)
        if queue is not None:
            queue.put_nowait(event)

    async def handle_msg(self, relay_url: Any, msg: Any) -> None:
        return None


class RelayPool:
    """One ``nostr_sdk.Client`` whose relay set follows a relay map.

    The client is created lazily on first use. Events are broadcast to the
    write relays of the current map and subscriptions cover every relay in
    it.
    """

    def __init__(self, keys: Keys | None = None) -> None:
        self._keys = keys
        self._client: Client | None = None
        self._relays: dict[str, Any] = {}
        self._queues: dict[str, asyncio.Queue[NostrEvent]] = {}
        self._notification_task: asyncio.Task[None] | None = None
        self._pending: set[asyncio.Task[DeliveryResult | None]] = set()

    @property
    def relays(self) -> RelayMap:
        """The relay map currently applied."""
        return dict(self._relays)

    async def _ensure_client(self) -> Client:
        if self._client is None:
            self._client = await create_client(self._keys)
        return self._client

    # -------------------------------------------------------------------------
    # Relay Set
    # -------------------------------------------------------------------------

    async def switch_relays(self, relays: RelayMap) -> None:
        """Make ``relays`` the active relay set.

        Relays missing from ``relays`` are removed, new ones are added and
        connected. Failures on a single relay are logged and skipped.
        """
        client = await self._ensure_client()
        current = set(self._relays)
        target = set(relays)

        for url in current - target:
            try:
                await client.remove_relay(RelayUrl.parse(url))
            except (NostrSdkError, ValueError) as e:
                logger.warning("relay_remove_failed relay=%s error=%s", url, e)

        for url in target - current:
            try:
                await client.add_relay(RelayUrl.parse(url))
            except (NostrSdkError, ValueError) as e:
                logger.warning("relay_add_failed relay=%s error=%s", url, e)

        self._relays = dict(relays)
        if target:
            await client.connect()
        logger.debug(
            "relays_switched added=%d removed=%d total=%d",
            len(target - current),
            len(current - target),
            len(target),
        )

    def read_urls(self) -> list[str]:
        return read_relays(self._relays)

    def write_urls(self) -> list[str]:
        return write_relays(self._relays)

    async def get_all_relay_states(self) -> dict[str, str]:
        """Connection status name per relay URL."""
        if self._client is None:
            return {}
        relays = await self._client.relays()
        return {str(url): relay.status().name.lower() for url, relay in relays.items()}

    # -------------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------------

    def send(self, event: NostrEvent) -> asyncio.Task[DeliveryResult | None]:
        """Broadcast a signed event to the write relays in the background.

        Returns the delivery task; its result is also logged per relay.
        Callers are not required to await it.
        """
        task = asyncio.create_task(self._deliver(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self, timeout: float) -> None:  # noqa: ASYNC109
        """Wait up to ``timeout`` seconds for pending publishes to finish."""
        if self._pending:
            await asyncio.wait(set(self._pending), timeout=timeout)

    async def _deliver(self, event: NostrEvent) -> DeliveryResult | None:
        event_id = event.id().to_hex()
        urls = self.write_urls()
        if not urls:
            logger.warning("publish_skipped event_id=%s reason=no_write_relays", event_id)
            return None

        client = await self._ensure_client()
        try:
            output = await client.send_event_to([RelayUrl.parse(url) for url in urls], event)
        except (NostrSdkError, OSError, TimeoutError) as e:
            logger.error("publish_failed event_id=%s error=%s", event_id, e)
            return None

        result = DeliveryResult(
            event_id=event_id,
            success=tuple(str(url) for url in output.success),
            failed={str(url): str(error) for url, error in output.failed.items()},
        )
        for url in result.success:
            logger.info("publish_succeeded event_id=%s relay=%s", event_id, url)
        for url, error in result.failed.items():
            logger.warning("publish_rejected event_id=%s relay=%s error=%s", event_id, url, error)
        return result

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def _ensure_notification_task(self, client: Client) -> None:
        if self._notification_task is None or self._notification_task.done():
            router = _NotificationRouter(self._queues)
            self._notification_task = asyncio.create_task(client.handle_notifications(router))

    async def subscribe(self, filters: Iterable[Filter]) -> AsyncIterator[NostrEvent]:
        """Open one subscription per filter and yield events from all of them.

        Events arrive in delivery order, unverified and possibly repeated
        across relays. Closing the iterator unsubscribes.
        """
        client = await self._ensure_client()
        self._ensure_notification_task(client)
        queue: asyncio.Queue[NostrEvent] = asyncio.Queue()
        subscription_ids: list[str] = []
        try:
            for event_filter in filters:
                output = await client.subscribe(event_filter, None)
                subscription_ids.append(output.id)
                self._queues[output.id] = queue
            logger.debug("subscription_opened subscriptions=%d", len(subscription_ids))
            while True:
                yield await queue.get()
        finally:
            for subscription_id in subscription_ids:
                self._queues.pop(subscription_id, None)
                # nostr-sdk Rust FFI can raise arbitrary exception types once the client is shut down
                with contextlib.suppress(Exception):
                    await client.unsubscribe(subscription_id)
            logger.debug("subscription_closed subscriptions=%d", len(subscription_ids))

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def dispose(self) -> None:
        """Cancel pending publishes and the notification loop, then shut down the client."""
        tasks = [*self._pending]
        if self._notification_task is not None:
            tasks.append(self._notification_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._pending.clear()
        self._notification_task = None
        self._queues.clear()

        if self._client is not None:
            with contextlib.suppress(Exception):
                await self._client.shutdown()
            self._client = None
        self._relays = {}
