"""
State sync service for nostrmirror.

Keeps a local mirror of one Nostr identity (profile metadata, relay map and
NIP-38 status) consistent with the user's relays and publishes signed
updates back to them.

The lifecycle has four phases:

1. **Restore**: adopt the persisted
   [MetadataCache][nostrmirror.models.metadata_cache.MetadataCache] unless
   the in-memory state is already newer, and point the relay client at the
   cached relay map.
2. **Sync**: fetch the latest kind 0/3/10002 events (when the cache is
   stale) and the latest kind 30315 status concurrently, install them and
   persist the cache.
3. **Subscribe**: stream new events authored by the identity. Each event is
   signature-checked, de-duplicated across relays and dropped when it is an
   echo of something this instance published.
4. **Rotate**: private key changes go through
   [KeyUpdateCoordinator][nostrmirror.services.state_sync.keys.KeyUpdateCoordinator];
   every instance clears and resyncs when the key changes elsewhere.

Note:
    Every slot (profile, relay map, status) remembers the ``created_at`` of
    the event it was installed from. A live event older than the installed
    one is ignored, so the result never depends on arrival order.

See Also:
    [StateSyncConfig][nostrmirror.services.state_sync.StateSyncConfig]:
        Configuration model for this service.
    [RelayPool][nostrmirror.utils.protocol.RelayPool]: Relay client wrapper.
    [EventFetcher][nostrmirror.utils.fetcher.EventFetcher]: One-shot fetches.

Examples:
    ```python
    from nostrmirror.core import HostContext
    from nostrmirror.services.state_sync import StateSync

    async with StateSync(HostContext.in_memory()) as engine:
        await engine.update_private_key("nsec1...")  # pragma: allowlist secret
        await engine.post_text("gm #nostr")
    ```
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from collections.abc import Callable
from types import TracebackType
from typing import TYPE_CHECKING, Any, ClassVar, Self

from nostr_sdk import (
    Alphabet,
    Filter,
    Kind,
    NostrSdkError,
    PublicKey,
    SingleLetterTag,
    Timestamp,
)

from nostrmirror.core.base_service import BaseService
from nostrmirror.core.exceptions import EngineStateError, NostrMirrorError
from nostrmirror.models.constants import (
    METADATA_KINDS,
    RELAY_LIST_KINDS,
    STATUS_IDENTIFIER,
    EngineState,
    EventKind,
    ServiceName,
    StorageKey,
)
from nostrmirror.models.event import Event
from nostrmirror.models.metadata_cache import MetadataCache
from nostrmirror.models.relay_list import (
    RelayAccess,
    apply_additional_write_relays,
    read_relays,
)
from nostrmirror.nips.event_builders import build_text_note, build_user_status
from nostrmirror.nips.profile import parse_profile
from nostrmirror.nips.relay_list import latest_relay_list_event, resolve_relay_list
from nostrmirror.nips.user_status import parse_user_status
from nostrmirror.utils.fetcher import EventFetcher
from nostrmirror.utils.keys import parse_keys
from nostrmirror.utils.protocol import RelayPool

from .cache import MetadataCacheStore
from .configs import StateSyncConfig
from .echo import SentEventIds
from .keys import KeyUpdateCoordinator
from .status import UserStatus


if TYPE_CHECKING:
    from nostr_sdk import Event as NostrEvent
    from nostr_sdk import Keys

    from nostrmirror.core.store import HostContext
    from nostrmirror.models.user_status import UserStatusValue


# Recently delivered event ids kept for cross-relay de-duplication
_MAX_SEEN_EVENT_IDS = 10_000

# (created_at, kind) of the event each slot was installed from
_Installed = tuple[int, int]
_NOTHING_INSTALLED: _Installed = (0, 0)


class StateSync(BaseService[StateSyncConfig]):
    """Identity state synchronization engine.

    Use as an async context manager: entering restores the cache, syncs,
    opens the live subscription and starts listening for key changes;
    leaving disposes the engine. Any operation on a disposed engine raises
    [EngineStateError][nostrmirror.core.exceptions.EngineStateError].

    Args:
        host: Secret store and state store.
        config: Service configuration (defaults when omitted).
        relay_pool: Relay client; a new [RelayPool][nostrmirror.utils.protocol.RelayPool]
            by default.
        fetcher: One-shot fetcher; a new
            [EventFetcher][nostrmirror.utils.fetcher.EventFetcher] using
            ``config.fetch_timeout`` by default.
        clock: Returns the current Unix time in seconds.
    """

    SERVICE_NAME: ClassVar[ServiceName] = ServiceName.STATE_SYNC
    CONFIG_CLASS: ClassVar[type[StateSyncConfig]] = StateSyncConfig

    def __init__(
        self,
        host: HostContext,
        config: StateSyncConfig | None = None,
        *,
        relay_pool: RelayPool | None = None,
        fetcher: EventFetcher | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(host=host, config=config)
        self._config: StateSyncConfig
        self._clock = clock
        self._pool = relay_pool if relay_pool is not None else RelayPool()
        self._fetcher = (
            fetcher if fetcher is not None else EventFetcher(self._config.fetch_timeout)
        )
        self._cache_store = MetadataCacheStore(host.state, self._logger)
        self._sent = SentEventIds(self._config.echo_retention)
        self._status = UserStatus(clock)
        self._key_updates = KeyUpdateCoordinator(
            host, lease=self._config.key_lock_lease, logger=self._logger, clock=clock
        )

        self._state = EngineState.UNINITIALIZED
        self._profile: dict[str, Any] = {}
        self._relays: dict[str, RelayAccess] = {}
        self._last_updated = 0
        self._installed: dict[str, _Installed] = {}
        self._seen_ids: OrderedDict[str, None] = OrderedDict()

        self._subscription_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[None]] = set()
        self._unsubscribe_secrets: Callable[[], None] | None = None

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def profile(self) -> dict[str, Any]:
        return dict(self._profile)

    @property
    def relays(self) -> dict[str, RelayAccess]:
        """Effective relay map: the derived map plus ``additional_write_relays``."""
        return apply_additional_write_relays(self._relays, self._config.additional_write_relays)

    @property
    def user_status(self) -> UserStatusValue:
        return self._status.value

    @property
    def last_updated(self) -> int:
        return self._last_updated

    async def relay_states(self) -> dict[str, str]:
        """Connection status per relay URL, from the relay client."""
        self._ensure_active()
        return await self._pool.get_all_relay_states()

    def is_cache_stale(self) -> bool:
        if self._last_updated == 0:
            return True
        return self._now() - self._last_updated > self._config.metadata_cache_max_age

    async def get_private_key(self) -> str | None:
        self._ensure_active()
        return await self._host.secrets.get(StorageKey.PRIVATE_KEY)

    async def is_private_key_set(self) -> bool:
        return await self.get_private_key() is not None

    async def get_public_key(self) -> str | None:
        keys = await self._load_keys()
        return keys.public_key().to_hex() if keys is not None else None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def __aenter__(self) -> Self:
        await super().__aenter__()
        try:
            await self.start()
        except BaseException as e:
            await self.__aexit__(type(e), e, e.__traceback__)
            raise
        return self

    async def __aexit__(
        self,
        _exc_type: type[BaseException] | None,
        _exc_val: BaseException | None,
        _exc_tb: TracebackType | None,
    ) -> None:
        await self.dispose()
        await super().__aexit__(_exc_type, _exc_val, _exc_tb)

    async def start(self) -> None:
        """Restore, sync, subscribe and listen for key changes."""
        self._ensure_active()
        await self.restore_cache()
        self._state = EngineState.READY
        if self._unsubscribe_secrets is None:
            self._unsubscribe_secrets = self._host.secrets.on_change(self._on_secret_change)
        await self.sync_states_with_relays(sync_metadata=self.is_cache_stale())
        await self.start_states_sync_subscription()

    async def run(self) -> None:
        """One periodic resync cycle; metadata is refetched only when stale."""
        await self.sync_states_with_relays(sync_metadata=self.is_cache_stale())
        states = await self.relay_states()
        connected = sum(1 for status in states.values() if status == "connected")
        self.set_gauge("relays_connected", connected)

    async def dispose(self) -> None:
        """Stop every background activity and release relay connections. Idempotent."""
        if self._state == EngineState.DISPOSED:
            return
        self._state = EngineState.DISPOSED

        if self._unsubscribe_secrets is not None:
            self._unsubscribe_secrets()
            self._unsubscribe_secrets = None

        tasks = [*self._background]
        if self._subscription_task is not None:
            tasks.append(self._subscription_task)
            self._subscription_task = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()

        self._status.clear()
        await self._fetcher.shutdown()
        await self._pool.dispose()
        self._logger.info("engine_disposed")

    def _ensure_active(self) -> None:
        if self._state == EngineState.DISPOSED:
            raise EngineStateError("state sync engine has been disposed")

    def _now(self) -> int:
        return int(self._clock())

    # -------------------------------------------------------------------------
    # Cache
    # -------------------------------------------------------------------------

    def _snapshot(self) -> MetadataCache:
        return MetadataCache(
            last_updated=self._last_updated, profile=self._profile, relays=self._relays
        )

    async def restore_cache(self) -> bool:
        """Adopt the persisted cache unless the in-memory state is at least as new.

        Returns:
            ``True`` if the cache was adopted.
        """
        self._ensure_active()
        cache = await self._cache_store.load()
        if cache is None:
            return False
        if self._last_updated >= cache.last_updated:
            self._logger.debug(
                "cache_restore_skipped",
                cached=cache.last_updated,
                current=self._last_updated,
            )
            return False

        self._profile = cache.profile_dict()
        self._relays = dict(cache.relays)
        self._last_updated = cache.last_updated
        self._logger.info(
            "cache_restored", last_updated=cache.last_updated, relays=len(self._relays)
        )
        if self._relays:
            await self._pool.switch_relays(self.relays)
        return True

    async def _write_through(self) -> None:
        await self._cache_store.save(self._snapshot())

    # -------------------------------------------------------------------------
    # One-shot sync
    # -------------------------------------------------------------------------

    def _fetch_relays(self) -> list[str]:
        """Read relays of the effective map, or the bootstrap relays."""
        urls = read_relays(self.relays)
        return urls if urls else list(self._config.bootstrap_relays)

    def _bootstrap_map(self) -> dict[str, RelayAccess]:
        return {url: RelayAccess(read=True, write=False) for url in self._config.bootstrap_relays}

    async def sync_states_with_relays(self, *, sync_metadata: bool = True) -> None:
        """Fetch and install the identity's latest state.

        Status is always synced; profile and relay map only with
        ``sync_metadata``. Both run concurrently. Without a private key this
        logs and returns.
        """
        self._ensure_active()
        keys = await self._load_keys()
        if keys is None:
            self._logger.info("sync_skipped", reason="no_private_key")
            return

        public_key = keys.public_key().to_hex()
        previous = self._state
        if previous == EngineState.READY:
            self._state = EngineState.SYNCING
        self._logger.info("sync_started", sync_metadata=sync_metadata)
        try:
            async with asyncio.TaskGroup() as tg:
                if sync_metadata:
                    tg.create_task(self._sync_metadata(public_key))
                tg.create_task(self._sync_status(public_key))
        except ExceptionGroup as eg:
            for exc in eg.exceptions:
                self._logger.error(
                    "sync_part_failed", error=str(exc), error_type=type(exc).__name__
                )
            raise eg.exceptions[0] from eg
        finally:
            if self._state == EngineState.SYNCING:
                self._state = previous
        self._logger.info("sync_completed", sync_metadata=sync_metadata)

    async def _sync_metadata(self, public_key: str) -> None:
        has_read_relays = bool(read_relays(self.relays))
        fetch_relays = self._fetch_relays()
        await self._pool.switch_relays(self.relays if has_read_relays else self._bootstrap_map())
        self._logger.debug("metadata_sync_started", relays=len(fetch_relays))

        events: dict[int, Event | None] = {}
        async for kind, event in self._fetcher.fetch_last_event_per_kind(
            METADATA_KINDS, fetch_relays, public_key
        ):
            events[kind] = event

        profile_event = events.get(EventKind.SET_METADATA)
        relay_event = latest_relay_list_event(events.values())

        if not self._keeps_installed("profile", profile_event):
            self._profile = parse_profile(profile_event)
            self._installed["profile"] = self._installed_from(profile_event)
        if not self._keeps_installed("relays", relay_event):
            self._relays = resolve_relay_list(events.values())
            self._installed["relays"] = self._installed_from(relay_event)
        self._last_updated = self._now()

        await self._write_through()
        await self._pool.switch_relays(self.relays)
        self.inc_counter("metadata_syncs")
        self._logger.info(
            "metadata_sync_completed",
            profile=profile_event is not None,
            relays=len(self._relays),
        )

    def _status_filter(self, public_key: str) -> Filter:
        return (
            Filter()
            .kinds([Kind(EventKind.USER_STATUS)])
            .authors([PublicKey.parse(public_key)])
            .custom_tag(SingleLetterTag.lowercase(Alphabet.D), STATUS_IDENTIFIER)
        )

    async def _sync_status(self, public_key: str) -> None:
        event = await self._fetcher.fetch_last_event(
            self._fetch_relays(), self._status_filter(public_key)
        )
        if not self._keeps_installed("status", event):
            if event is None:
                self._status.clear()
                self._installed["status"] = _NOTHING_INSTALLED
            else:
                self._install_status(event)
        self.inc_counter("status_syncs")
        self._logger.debug("status_sync_completed", found=event is not None)

    def _keeps_installed(self, slot: str, fetched: Event | None) -> bool:
        """Whether a fetch result is older than what is already installed in ``slot``.

        An empty result never replaces an installed event.
        """
        if fetched is None:
            return self._installed.get(slot, _NOTHING_INSTALLED) != _NOTHING_INSTALLED
        if self._is_older(slot, fetched):
            self._logger.debug("fetched_event_outdated", event_id=fetched.id, kind=fetched.kind)
            return True
        return False

    @staticmethod
    def _installed_from(event: Event | None) -> _Installed:
        return (event.created_at, event.kind) if event is not None else _NOTHING_INSTALLED

    def _install_status(self, event: Event) -> None:
        value = parse_user_status(event)
        self._status.update(value.status, value.link_url, value.expiration)
        self._installed["status"] = self._installed_from(event)

    # -------------------------------------------------------------------------
    # Live subscription
    # -------------------------------------------------------------------------

    async def start_states_sync_subscription(self) -> None:
        """Open (or reopen) the live subscription for the current identity."""
        self._ensure_active()
        await self._stop_subscription()
        keys = await self._load_keys()
        if keys is None:
            self._logger.info("subscription_skipped", reason="no_private_key")
            return

        author = keys.public_key()
        since = Timestamp.from_secs(self._now())
        filters = [
            Filter().kinds([Kind(kind) for kind in METADATA_KINDS]).authors([author]).since(since),
            Filter()
            .kinds([Kind(EventKind.USER_STATUS)])
            .authors([author])
            .custom_tag(SingleLetterTag.lowercase(Alphabet.D), STATUS_IDENTIFIER)
            .since(since),
        ]
        self._subscription_task = asyncio.create_task(self._consume(filters))
        self._logger.info("subscription_started")

    async def _stop_subscription(self) -> None:
        task, self._subscription_task = self._subscription_task, None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _consume(self, filters: list[Filter]) -> None:
        try:
            async for nostr_event in self._pool.subscribe(filters):
                try:
                    await self.handle_live_event(nostr_event)
                except NostrMirrorError as e:
                    self._logger.error("live_event_failed", error=str(e))
        except (NostrSdkError, OSError) as e:
            self._logger.error("subscription_failed", error=str(e))

    def _mark_seen(self, event_id: str) -> bool:
        """Record ``event_id``; return ``False`` if it was already delivered."""
        if event_id in self._seen_ids:
            return False
        self._seen_ids[event_id] = None
        if len(self._seen_ids) > _MAX_SEEN_EVENT_IDS:
            self._seen_ids.popitem(last=False)
        return True

    async def handle_live_event(self, nostr_event: NostrEvent) -> bool:
        """Run one delivered event through verify, de-duplicate, echo filter and dispatch.

        Returns:
            ``True`` if the event changed local state.
        """
        try:
            valid = nostr_event.verify()
        except (NostrSdkError, ValueError, TypeError):
            valid = False
        if not valid:
            self._logger.debug("live_event_rejected", reason="invalid_signature")
            return False

        event = Event.from_nostr(nostr_event)
        if not self._mark_seen(event.id):
            return False
        self.inc_counter("events_received")

        if self._sent.should_ignore(event.id):
            self.inc_counter("events_echo_suppressed")
            self._logger.debug("live_event_echo_suppressed", event_id=event.id)
            return False

        return await self._apply_live_event(event)

    def _is_older(self, slot: str, event: Event) -> bool:
        installed = self._installed.get(slot, _NOTHING_INSTALLED)
        return (event.created_at, event.kind) < installed

    async def _apply_live_event(self, event: Event) -> bool:
        if event.kind == EventKind.SET_METADATA:
            slot = "profile"
        elif event.kind in RELAY_LIST_KINDS:
            slot = "relays"
        elif event.kind == EventKind.USER_STATUS:
            slot = "status"
        else:
            return False

        if self._is_older(slot, event):
            self._logger.debug("live_event_outdated", event_id=event.id, kind=event.kind)
            return False

        if slot == "profile":
            self._profile = parse_profile(event)
            self._installed[slot] = self._installed_from(event)
            await self._write_through()
        elif slot == "relays":
            self._relays = resolve_relay_list([event])
            self._installed[slot] = self._installed_from(event)
            await self._pool.switch_relays(self.relays)
            await self._write_through()
        else:
            self._install_status(event)

        self._logger.info("live_event_applied", event_id=event.id, kind=event.kind)
        return True

    # -------------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------------

    async def _load_keys(self) -> Keys | None:
        hex_key = await self.get_private_key()
        if hex_key is None:
            return None
        try:
            return parse_keys(hex_key)
        except ValueError:
            self._logger.error("private_key_invalid")
            return None

    def _dispatch(self, nostr_event: NostrEvent) -> str:
        event_id = nostr_event.id().to_hex()
        self._sent.record(event_id)
        self._pool.send(nostr_event)
        self.inc_counter("events_published")
        return event_id

    async def drain_publishes(self, timeout: float | None = None) -> None:  # noqa: ASYNC109
        """Wait for in-flight publishes, at most ``timeout`` (default ``fetch_timeout``) seconds."""
        self._ensure_active()
        await self._pool.drain(self._config.fetch_timeout if timeout is None else timeout)

    async def post_text(self, content: str) -> str | None:
        """Publish a kind 1 note with ``t`` tags for its hashtags.

        Returns:
            The event id, or ``None`` when no private key is set.
        """
        self._ensure_active()
        keys = await self._load_keys()
        if keys is None:
            self._logger.error("post_text_skipped", reason="no_private_key")
            return None
        event_id = self._dispatch(build_text_note(content).sign_with_keys(keys))
        self._logger.info("text_note_published", event_id=event_id)
        return event_id

    async def update_user_status(
        self,
        status: str,
        link_url: str = "",
        expiration: int | None = None,
    ) -> str | None:
        """Publish a general status and apply it locally without waiting for relays.

        Returns:
            The event id, or ``None`` when no private key is set; local
            state is left unchanged in that case.
        """
        self._ensure_active()
        keys = await self._load_keys()
        if keys is None:
            self._logger.error("status_update_skipped", reason="no_private_key")
            return None
        nostr_event = build_user_status(status, link_url, expiration).sign_with_keys(keys)
        event_id = self._dispatch(nostr_event)
        self._status.update(status, link_url, expiration)
        self._installed["status"] = (
            nostr_event.created_at().as_secs(),
            int(EventKind.USER_STATUS),
        )
        self._logger.info("status_published", event_id=event_id, expiration=expiration)
        return event_id

    # -------------------------------------------------------------------------
    # Key rotation
    # -------------------------------------------------------------------------

    async def update_private_key(self, raw_key: str) -> bool:
        """Rotate to ``raw_key`` (hex or ``nsec1``), then resync and resubscribe.

        Returns:
            ``False`` when another instance holds the key update lock.

        Raises:
            ValueError: If ``raw_key`` is not a valid key.
        """
        self._ensure_active()
        return await self._key_updates.update(raw_key, self._on_key_changed)

    async def clear_private_key(self) -> bool:
        """Forget the private key and all identity state."""
        self._ensure_active()
        return await self._key_updates.clear(self._on_key_changed)

    async def _on_key_changed(self, hex_key: str | None) -> None:
        self._state = EngineState.ROTATING
        try:
            await self.clear_states()
            await self._cache_store.invalidate()
            if hex_key is not None:
                await self.sync_states_with_relays(sync_metadata=True)
                await self.start_states_sync_subscription()
            self.inc_counter("key_rotations")
        finally:
            if self._state == EngineState.ROTATING:
                self._state = EngineState.READY

    async def clear_states(self) -> None:
        """Drop all identity state and disconnect from every relay."""
        await self._stop_subscription()
        await self._pool.switch_relays({})
        self._profile = {}
        self._relays = {}
        self._last_updated = 0
        self._installed.clear()
        self._seen_ids.clear()
        self._status.clear()

    async def clear_global_cache(self) -> None:
        """Remove the persisted metadata cache."""
        self._ensure_active()
        await self._cache_store.invalidate()

    def _on_secret_change(self, key: str) -> None:
        if self._state == EngineState.DISPOSED:
            return
        if not self._key_updates.consume_change(key):
            return
        self._logger.info("private_key_changed_externally")
        task = asyncio.get_running_loop().create_task(self._resync_after_external_change())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _resync_after_external_change(self) -> None:
        self._state = EngineState.ROTATING
        try:
            await self.clear_states()
            await self.sync_states_with_relays(sync_metadata=True)
            await self.start_states_sync_subscription()
        except NostrMirrorError as e:
            self._logger.error("external_key_change_failed", error=str(e))
        finally:
            if self._state == EngineState.ROTATING:
                self._state = EngineState.READY
