"""
Pytest configuration and shared fixtures for nostrmirror tests.

Provides:
- In-memory host stores
- Generated identities and helpers that sign real ``nostr_sdk`` events
- In-process doubles for the relay pool and the event fetcher
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable
from typing import Any

import pytest
from nostr_sdk import EventBuilder, Keys, Kind, Tag, Timestamp

from nostrmirror.core.store import HostContext, MemoryStore
from nostrmirror.models.event import Event
from nostrmirror.models.relay_list import RelayMap, write_relays
from nostrmirror.services.state_sync import StateSync, StateSyncConfig
from nostrmirror.utils.protocol import DeliveryResult


# ============================================================================
# Logging Configuration
# ============================================================================


@pytest.fixture(scope="session", autouse=True)
def setup_logging() -> None:
    """Configure logging for tests."""
    logging.basicConfig(level=logging.DEBUG)


# ============================================================================
# Event Helpers
# ============================================================================


def make_event(
    kind: int,
    *,
    content: str = "",
    tags: Iterable[Iterable[str]] = (),
    created_at: int = 1700000000,
    event_id: str = "a" * 64,
    pubkey: str = "b" * 64,
) -> Event:
    """Build a plain [Event][nostrmirror.models.event.Event] for parser tests."""
    return Event(
        id=event_id,
        pubkey=pubkey,
        created_at=created_at,
        kind=kind,
        tags=tuple(tuple(tag) for tag in tags),
        content=content,
    )


def sign_event(
    keys: Keys,
    kind: int,
    *,
    content: str = "",
    tags: Iterable[list[str]] = (),
    created_at: int = 1700000000,
) -> Any:
    """Build and sign a real ``nostr_sdk.Event``."""
    return (
        EventBuilder(Kind(kind), content)
        .tags([Tag.parse(tag) for tag in tags])
        .custom_created_at(Timestamp.from_secs(created_at))
        .sign_with_keys(keys)
    )


# ============================================================================
# Relay Doubles
# ============================================================================


class FakeRelayPool:
    """Records relay switches and publishes; live events come from ``feed()``."""

    def __init__(self) -> None:
        self.switches: list[dict[str, Any]] = []
        self.sent: list[Any] = []
        self.subscriptions: list[list[Any]] = []
        self.disposed = False
        self._relays: dict[str, Any] = {}
        self._queue: asyncio.Queue[Any] = asyncio.Queue()

    @property
    def relays(self) -> RelayMap:
        return dict(self._relays)

    async def switch_relays(self, relays: RelayMap) -> None:
        self._relays = dict(relays)
        self.switches.append(dict(relays))

    def send(self, event: Any) -> "asyncio.Task[DeliveryResult | None]":
        self.sent.append(event)

        async def _deliver() -> DeliveryResult:
            return DeliveryResult(
                event_id=event.id().to_hex(),
                success=tuple(write_relays(self._relays)),
                failed={},
            )

        return asyncio.create_task(_deliver())

    async def drain(self, timeout: float) -> None:
        await asyncio.sleep(0)

    async def subscribe(self, filters: Iterable[Any]) -> AsyncIterator[Any]:
        self.subscriptions.append(list(filters))
        while True:
            yield await self._queue.get()

    def feed(self, event: Any) -> None:
        self._queue.put_nowait(event)

    async def get_all_relay_states(self) -> dict[str, str]:
        return {url: "connected" for url in self._relays}

    async def dispose(self) -> None:
        self.disposed = True


class FakeFetcher:
    """Serves ``events`` as if every relay returned all of them."""

    def __init__(self, events: Iterable[Event] = ()) -> None:
        self.events: list[Event] = list(events)
        self.relay_requests: list[list[str]] = []
        self.shut_down = False
        self.gate: asyncio.Event | None = None

    def _newest(self, kind: int) -> Event | None:
        matching = [event for event in self.events if event.kind == kind]
        return max(matching, key=lambda event: event.created_at, default=None)

    async def fetch_last_event_per_kind(
        self, kinds: Iterable[int], relays: Iterable[str], author: str
    ) -> AsyncIterator[tuple[int, Event | None]]:
        self.relay_requests.append(list(relays))
        if self.gate is not None:
            await self.gate.wait()
        for kind in kinds:
            yield kind, self._newest(kind)

    async def fetch_last_event(self, relays: Iterable[str], event_filter: Any) -> Event | None:
        self.relay_requests.append(list(relays))
        return self._newest(30315)

    async def shutdown(self) -> None:
        self.shut_down = True


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def keys() -> Keys:
    return Keys.generate()


@pytest.fixture
def hex_key(keys: Keys) -> str:
    return keys.secret_key().to_hex()


@pytest.fixture
def host() -> HostContext:
    return HostContext(secrets=MemoryStore(), state=MemoryStore())


@pytest.fixture
def relay_pool() -> FakeRelayPool:
    return FakeRelayPool()


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def state_sync_config() -> StateSyncConfig:
    return StateSyncConfig(bootstrap_relays=["wss://bootstrap.example.com"])


@pytest.fixture
def engine(
    host: HostContext,
    state_sync_config: StateSyncConfig,
    relay_pool: FakeRelayPool,
    fetcher: FakeFetcher,
) -> StateSync:
    """A StateSync wired to in-process doubles (not started)."""
    return StateSync(host, state_sync_config, relay_pool=relay_pool, fetcher=fetcher)  # type: ignore[arg-type]
