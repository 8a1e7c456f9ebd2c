"""
Unit tests for services.state_sync.service module.

Tests:
- Startup: cache restore, metadata/status sync, live subscription
- Cache regression guard and staleness
- Live events: signature check, de-duplication, echo suppression, ordering
- Publishing text notes and user status
- Private key rotation, rotation lock and external key changes
- Disposal
"""

import asyncio
import json
import time
from unittest.mock import MagicMock

import pytest

from nostrmirror.core.exceptions import ConnectivityError, EngineStateError
from nostrmirror.core.store import HostContext
from nostrmirror.models.constants import EngineState, StorageKey
from nostrmirror.models.event import Event
from nostrmirror.models.relay_list import RelayAccess
from nostrmirror.services.state_sync import StateSync, StateSyncConfig
from tests.conftest import FakeFetcher, FakeRelayPool, make_event, sign_event


RW = RelayAccess(read=True, write=True)
R = RelayAccess(read=True)
W = RelayAccess(write=True)


async def settle(rounds: int = 10) -> None:
    """Let background tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def identity_events(pubkey: str) -> list[Event]:
    return [
        make_event(0, content='{"name": "alice"}', created_at=100, pubkey=pubkey),
        make_event(
            3,
            content='{"wss://x": {"read": true, "write": false}}',
            created_at=100,
            pubkey=pubkey,
        ),
        make_event(10002, tags=[["r", "wss://y"]], created_at=200, pubkey=pubkey),
        make_event(
            30315, content="coding", tags=[["d", "general"]], created_at=150, pubkey=pubkey
        ),
    ]


def cache_dict(last_updated: int, name: str = "cached") -> dict:
    return {
        "lastUpdated": last_updated,
        "profile": {"name": name},
        "relays": {"wss://cached": {"read": True, "write": True}},
    }


class FailingFetcher(FakeFetcher):
    async def fetch_last_event(self, relays, event_filter):
        raise ConnectivityError("all relays unreachable")


# ============================================================================
# Startup
# ============================================================================


class TestStartup:
    """Entering the engine context."""

    async def test_without_private_key(self, engine, relay_pool, fetcher):
        async with engine:
            assert engine.state == EngineState.READY
            assert await engine.get_public_key() is None
            await settle()
            assert relay_pool.subscriptions == []
            assert fetcher.relay_requests == []
        assert engine.state == EngineState.DISPOSED

    async def test_syncs_identity(self, host, engine, relay_pool, fetcher, keys, hex_key):
        fetcher.events = identity_events(keys.public_key().to_hex())
        await host.secrets.store(StorageKey.PRIVATE_KEY, hex_key)

        async with engine:
            await settle()
            assert engine.profile == {"name": "alice"}
            assert engine.relays == {"wss://y": RW}
            assert engine.user_status.status == "coding"
            assert engine.last_updated > 0
            assert await engine.get_public_key() == keys.public_key().to_hex()

            assert relay_pool.switches[0] == {"wss://bootstrap.example.com": R}
            assert relay_pool.switches[-1] == {"wss://y": RW}
            assert ["wss://bootstrap.example.com"] in fetcher.relay_requests
            assert len(relay_pool.subscriptions) == 1
            assert len(relay_pool.subscriptions[0]) == 2

            cached = await host.state.get(StorageKey.METADATA_CACHE)
            assert cached["profile"] == {"name": "alice"}
            assert cached["relays"] == {"wss://y": {"read": True, "write": True}}

    async def test_fresh_cache_skips_metadata_fetch(
        self, host, engine, relay_pool, fetcher, keys, hex_key
    ):
        fetcher.events = identity_events(keys.public_key().to_hex())
        await host.secrets.store(StorageKey.PRIVATE_KEY, hex_key)
        await host.state.set(StorageKey.METADATA_CACHE, cache_dict(int(time.time())))

        async with engine:
            assert engine.profile == {"name": "cached"}
            assert engine.relays == {"wss://cached": RW}
            assert not engine.is_cache_stale()
            assert fetcher.relay_requests == [["wss://cached"]]
            assert engine.user_status.status == "coding"

    async def test_stale_cache_refetched(self, host, engine, fetcher, keys, hex_key):
        fetcher.events = identity_events(keys.public_key().to_hex())
        await host.secrets.store(StorageKey.PRIVATE_KEY, hex_key)
        await host.state.set(StorageKey.METADATA_CACHE, cache_dict(1000))

        async with engine:
            assert engine.profile == {"name": "alice"}
            assert ["wss://cached"] in fetcher.relay_requests

    async def test_dispose_releases_everything(self, engine, relay_pool, fetcher):
        async with engine:
            pass
        assert relay_pool.disposed
        assert fetcher.shut_down
        await engine.dispose()


# ============================================================================
# Cache
# ============================================================================


class TestCache:
    """restore_cache(), staleness and clear_global_cache()."""

    async def test_restore_adopts_cache(self, host, engine, relay_pool):
        await host.state.set(StorageKey.METADATA_CACHE, cache_dict(1000))
        assert await engine.restore_cache() is True
        assert engine.profile == {"name": "cached"}
        assert engine.last_updated == 1000
        assert relay_pool.switches == [{"wss://cached": RW}]

    async def test_regression_guard(self, host, engine):
        await host.state.set(StorageKey.METADATA_CACHE, cache_dict(2000, name="newer"))
        assert await engine.restore_cache() is True

        await host.state.set(StorageKey.METADATA_CACHE, cache_dict(1000, name="older"))
        assert await engine.restore_cache() is False
        assert engine.profile == {"name": "newer"}
        assert engine.last_updated == 2000

    async def test_equal_timestamp_not_adopted(self, host, engine):
        await host.state.set(StorageKey.METADATA_CACHE, cache_dict(2000, name="first"))
        await engine.restore_cache()
        await host.state.set(StorageKey.METADATA_CACHE, cache_dict(2000, name="second"))
        assert await engine.restore_cache() is False
        assert engine.profile == {"name": "first"}

    async def test_missing_or_invalid_cache(self, host, engine):
        assert await engine.restore_cache() is False
        await host.state.set(StorageKey.METADATA_CACHE, {"lastUpdated": "bad"})
        assert await engine.restore_cache() is False

    async def test_staleness_uses_clock(self, host, relay_pool, fetcher, state_sync_config):
        now = 1_000_000
        engine = StateSync(
            host, state_sync_config, relay_pool=relay_pool, fetcher=fetcher, clock=lambda: now
        )
        assert engine.is_cache_stale()
        await host.state.set(StorageKey.METADATA_CACHE, cache_dict(now - 43200))
        await engine.restore_cache()
        assert not engine.is_cache_stale()

        other_host = HostContext.in_memory()
        engine2 = StateSync(
            other_host,
            state_sync_config,
            relay_pool=FakeRelayPool(),
            fetcher=FakeFetcher(),
            clock=lambda: now,
        )
        await other_host.state.set(StorageKey.METADATA_CACHE, cache_dict(now - 43201))
        await engine2.restore_cache()
        assert engine2.is_cache_stale()

    async def test_clear_global_cache(self, host, engine):
        await host.state.set(StorageKey.METADATA_CACHE, cache_dict(1000))
        await engine.clear_global_cache()
        assert await host.state.get(StorageKey.METADATA_CACHE) is None

    async def test_additional_write_relays_overlay(self, host, relay_pool, fetcher):
        config = StateSyncConfig(
            bootstrap_relays=["wss://bootstrap.example.com"],
            additional_write_relays=["wss://cached", "wss://extra"],
        )
        await host.state.set(
            StorageKey.METADATA_CACHE,
            {"lastUpdated": 1000, "relays": {"wss://cached": {"read": True}}},
        )
        engine = StateSync(host, config, relay_pool=relay_pool, fetcher=fetcher)
        await engine.restore_cache()
        assert engine.relays == {"wss://cached": RW, "wss://extra": W}
        assert relay_pool.switches[-1] == {"wss://cached": RW, "wss://extra": W}


# ============================================================================
# Sync
# ============================================================================


class TestSync:
    """sync_states_with_relays() and run()."""

    async def test_without_key_is_noop(self, engine, fetcher):
        await engine.sync_states_with_relays()
        assert fetcher.relay_requests == []

    async def test_latest_relay_list_wins(self, host, engine, fetcher, keys, hex_key):
        pubkey = keys.public_key().to_hex()
        fetcher.events = [
            make_event(10002, tags=[["r", "wss://y"]], created_at=100, pubkey=pubkey),
            make_event(
                3,
                content='{"wss://x": {"read": true, "write": false}}',
                created_at=300,
                pubkey=pubkey,
            ),
        ]
        await host.secrets.store(StorageKey.PRIVATE_KEY, hex_key)
        await engine.sync_states_with_relays()
        assert engine.relays == {"wss://x": R}
        assert engine.profile == {}
        assert engine.user_status.is_empty

    async def test_status_only(self, host, engine, fetcher, keys, hex_key):
        fetcher.events = identity_events(keys.public_key().to_hex())
        await host.secrets.store(StorageKey.PRIVATE_KEY, hex_key)
        await engine.sync_states_with_relays(sync_metadata=False)
        assert engine.profile == {}
        assert engine.user_status.status == "coding"
        assert fetcher.relay_requests == [["wss://bootstrap.example.com"]]

    async def test_failure_propagates_and_restores_state(
        self, host, relay_pool, state_sync_config, hex_key
    ):
        await host.secrets.store(StorageKey.PRIVATE_KEY, hex_key)
        engine = StateSync(
            host, state_sync_config, relay_pool=relay_pool, fetcher=FailingFetcher()
        )
        with pytest.raises(ConnectivityError, match="unreachable"):
            await engine.start()
        assert engine.state == EngineState.READY
        await engine.dispose()

    async def test_failed_start_in_context_disposes(
        self, host, relay_pool, state_sync_config, hex_key
    ):
        await host.secrets.store(StorageKey.PRIVATE_KEY, hex_key)
        fetcher = FailingFetcher()
        engine = StateSync(host, state_sync_config, relay_pool=relay_pool, fetcher=fetcher)
        with pytest.raises(ConnectivityError):
            async with engine:
                pytest.fail("context body must not run")
        assert engine.state == EngineState.DISPOSED
        assert relay_pool.disposed is True
        assert fetcher.shut_down is True

    async def test_state_is_syncing_during_fetch(self, host, engine, fetcher, hex_key):
        await host.secrets.store(StorageKey.PRIVATE_KEY, hex_key)
        async with engine:
            fetcher.gate = asyncio.Event()
            task = asyncio.create_task(engine.sync_states_with_relays())
            await settle()
            assert engine.state == EngineState.SYNCING
            fetcher.gate.set()
            await task
            assert engine.state == EngineState.READY

    async def test_run_cycle(self, host, engine, fetcher, hex_key):
        await host.secrets.store(StorageKey.PRIVATE_KEY, hex_key)
        async with engine:
            requests = len(fetcher.relay_requests)
            await engine.run()
            assert len(fetcher.relay_requests) == requests + 1

    async def test_older_fetched_status_keeps_local_update(
        self, host, engine, fetcher, keys, hex_key
    ):
        await host.secrets.store(StorageKey.PRIVATE_KEY, hex_key)
        async with engine:
            await engine.update_user_status("new")
            fetcher.events = [
                make_event(
                    30315,
                    content="old",
                    tags=[["d", "general"]],
                    created_at=1000,
                    pubkey=keys.public_key().to_hex(),
                )
            ]
            await engine.run()
            assert engine.user_status.status == "new"

            fetcher.events = []
            await engine.run()
            assert engine.user_status.status == "new"

    async def test_older_fetched_profile_ignored(self, host, engine, fetcher, keys, hex_key):
        await host.secrets.store(StorageKey.PRIVATE_KEY, hex_key)
        async with engine:
            live = sign_event(keys, 0, content='{"name": "live"}', created_at=500)
            assert await engine.handle_live_event(live) is True
            fetcher.events = [
                make_event(
                    0,
                    content='{"name": "fetched"}',
                    created_at=100,
                    pubkey=keys.public_key().to_hex(),
                )
            ]
            await engine.sync_states_with_relays()
            assert engine.profile == {"name": "live"}

    async def test_older_fetched_relay_list_ignored(
        self, host, engine, relay_pool, fetcher, keys, hex_key
    ):
        await host.secrets.store(StorageKey.PRIVATE_KEY, hex_key)
        async with engine:
            live = sign_event(keys, 10002, tags=[["r", "wss://live"]], created_at=500)
            assert await engine.handle_live_event(live) is True
            fetcher.events = identity_events(keys.public_key().to_hex())
            await engine.sync_states_with_relays()
            assert engine.relays == {"wss://live": RW}
            assert relay_pool.relays == {"wss://live": RW}
            assert engine.profile == {"name": "alice"}

    async def test_empty_fetch_keeps_installed_metadata(
        self, host, engine, fetcher, keys, hex_key
    ):
        fetcher.events = identity_events(keys.public_key().to_hex())
        await host.secrets.store(StorageKey.PRIVATE_KEY, hex_key)
        async with engine:
            assert engine.profile == {"name": "alice"}
            fetcher.events = []
            await engine.sync_states_with_relays()
            assert engine.profile == {"name": "alice"}
            assert engine.relays == {"wss://y": RW}
            assert engine.user_status.status == "coding"

    async def test_relay_states(self, host, engine, fetcher, keys, hex_key):
        fetcher.events = identity_events(keys.public_key().to_hex())
        await host.secrets.store(StorageKey.PRIVATE_KEY, hex_key)
        async with engine:
            assert await engine.relay_states() == {"wss://y": "connected"}


# ============================================================================
# Live events
# ============================================================================


class TestLiveEvents:
    """handle_live_event() and the subscription stream."""

    async def test_profile_update(self, host, engine, keys, hex_key):
        await host.secrets.store(StorageKey.PRIVATE_KEY, hex_key)
        async with engine:
            event = sign_event(keys, 0, content='{"name": "bob"}', created_at=1700000000)
            assert await engine.handle_live_event(event) is True
            assert engine.profile == {"name": "bob"}
            cached = await host.state.get(StorageKey.METADATA_CACHE)
            assert cached["profile"] == {"name": "bob"}

    async def test_duplicate_delivery_ignored(self, host, engine, keys, hex_key):
        await host.secrets.store(StorageKey.PRIVATE_KEY, hex_key)
        async with engine:
            event = sign_event(keys, 0, content='{"name": "bob"}', created_at=1700000000)
            assert await engine.handle_live_event(event) is True
            assert await engine.handle_live_event(event) is False

    async def test_older_event_ignored(self, host, engine, keys, hex_key):
        await host.secrets.store(StorageKey.PRIVATE_KEY, hex_key)
        async with engine:
            newer = sign_event(keys, 0, content='{"name": "new"}', created_at=1700000200)
            older = sign_event(keys, 0, content='{"name": "old"}', created_at=1700000100)
            assert await engine.handle_live_event(newer) is True
            assert await engine.handle_live_event(older) is False
            assert engine.profile == {"name": "new"}

    async def test_relay_list_switches_relays(self, host, engine, relay_pool, keys, hex_key):
        await host.secrets.store(StorageKey.PRIVATE_KEY, hex_key)
        async with engine:
            event = sign_event(
                keys,
                10002,
                tags=[["r", "wss://a"], ["r", "wss://b", "write"]],
                created_at=1700000000,
            )
            assert await engine.handle_live_event(event) is True
            assert engine.relays == {"wss://a": RW, "wss://b": W}
            assert relay_pool.switches[-1] == {"wss://a": RW, "wss://b": W}

            contacts = sign_event(
                keys,
                3,
                content=json.dumps({"wss://c": {"read": True, "write": True}}),
                created_at=1700000000,
            )
            assert await engine.handle_live_event(contacts) is False
            assert engine.relays == {"wss://a": RW, "wss://b": W}

    async def test_status_update(self, host, engine, keys, hex_key):
        await host.secrets.store(StorageKey.PRIVATE_KEY, hex_key)
        async with engine:
            event = sign_event(
                keys,
                30315,
                content="afk",
                tags=[["d", "general"], ["r", "https://example.com"]],
                created_at=1700000000,
            )
            assert await engine.handle_live_event(event) is True
            assert engine.user_status.status == "afk"
            assert engine.user_status.link_url == "https://example.com"

    async def test_invalid_signature_rejected(self, engine):
        forged = MagicMock()
        forged.verify.return_value = False
        assert await engine.handle_live_event(forged) is False

    async def test_unrelated_kind_ignored(self, host, engine, keys, hex_key):
        await host.secrets.store(StorageKey.PRIVATE_KEY, hex_key)
        async with engine:
            assert await engine.handle_live_event(sign_event(keys, 1, content="gm")) is False

    async def test_stream_applies_events(self, host, engine, relay_pool, keys, hex_key):
        await host.secrets.store(StorageKey.PRIVATE_KEY, hex_key)
        async with engine:
            await settle()
            relay_pool.feed(sign_event(keys, 0, content='{"name": "live"}', created_at=1700000000))
            await settle()
            assert engine.profile == {"name": "live"}


# ============================================================================
# Publishing
# ============================================================================


class TestPublishing:
    """post_text() and update_user_status()."""

    async def test_post_text(self, host, engine, relay_pool, keys, hex_key):
        await host.secrets.store(StorageKey.PRIVATE_KEY, hex_key)
        async with engine:
            event_id = await engine.post_text("gm #nostr #zap")
            await engine.drain_publishes()
            assert event_id is not None
            sent = Event.from_nostr(relay_pool.sent[-1])
            assert sent.id == event_id
            assert sent.kind == 1
            assert sent.pubkey == keys.public_key().to_hex()
            assert sent.tag_values("t") == [("t", "nostr"), ("t", "zap")]

    async def test_post_text_without_key(self, engine, relay_pool):
        async with engine:
            assert await engine.post_text("gm") is None
        assert relay_pool.sent == []

    async def test_echo_suppressed(self, host, engine, relay_pool, hex_key):
        await host.secrets.store(StorageKey.PRIVATE_KEY, hex_key)
        async with engine:
            await engine.update_user_status("own status")
            assert await engine.handle_live_event(relay_pool.sent[-1]) is False
            assert engine.user_status.status == "own status"

    async def test_echo_suppressed_on_stream(self, host, engine, relay_pool, hex_key):
        await host.secrets.store(StorageKey.PRIVATE_KEY, hex_key)
        async with engine:
            await settle()
            await engine.update_user_status("mine")
            engine._status.clear()
            relay_pool.feed(relay_pool.sent[-1])
            await settle()
            assert engine.user_status.is_empty

    async def test_update_user_status(self, host, engine, relay_pool, hex_key):
        await host.secrets.store(StorageKey.PRIVATE_KEY, hex_key)
        async with engine:
            expiration = int(time.time()) + 3600
            event_id = await engine.update_user_status(
                "listening", "https://example.com/song", expiration
            )
            status = engine.user_status
            assert status.status == "listening"
            assert status.link_url == "https://example.com/song"
            assert status.expiration == expiration

            sent = Event.from_nostr(relay_pool.sent[-1])
            assert sent.id == event_id
            assert sent.kind == 30315
            assert sent.tag_value("d") == "general"
            assert sent.tag_value("expiration") == str(expiration)

    async def test_update_user_status_without_key(self, engine, relay_pool):
        async with engine:
            assert await engine.update_user_status("x") is None
            assert engine.user_status.is_empty
        assert relay_pool.sent == []

    async def test_older_live_status_after_local_update_ignored(
        self, host, engine, keys, hex_key
    ):
        await host.secrets.store(StorageKey.PRIVATE_KEY, hex_key)
        async with engine:
            await engine.update_user_status("current")
            stale = sign_event(
                keys, 30315, content="stale", tags=[["d", "general"]], created_at=1600000000
            )
            assert await engine.handle_live_event(stale) is False
            assert engine.user_status.status == "current"


# ============================================================================
# Key rotation
# ============================================================================


class TestKeyRotation:
    """update_private_key(), clear_private_key() and external changes."""

    async def test_update_private_key(self, host, engine, relay_pool, fetcher, keys, hex_key):
        fetcher.events = identity_events(keys.public_key().to_hex())
        await host.state.set(StorageKey.METADATA_CACHE, cache_dict(int(time.time()), "previous"))
        async with engine:
            assert engine.profile == {"name": "previous"}
            assert await engine.update_private_key(keys.secret_key().to_bech32()) is True
            await settle()
            assert await host.secrets.get(StorageKey.PRIVATE_KEY) == hex_key
            assert engine.state == EngineState.READY
            assert engine.profile == {"name": "alice"}
            assert {} in relay_pool.switches
            assert len(relay_pool.subscriptions) == 1
            assert await host.state.get(StorageKey.KEY_UPDATE_LOCK) is None

    async def test_invalid_key(self, engine):
        async with engine:
            with pytest.raises(ValueError):
                await engine.update_private_key("not a key")

    async def test_concurrent_rotation_locked(self, host, engine, fetcher, keys, hex_key):
        async with engine:
            fetcher.gate = asyncio.Event()
            first = asyncio.create_task(engine.update_private_key(hex_key))
            await settle()
            assert await engine.update_private_key("2" * 64) is False
            assert await host.secrets.get(StorageKey.PRIVATE_KEY) == hex_key

            fetcher.gate.set()
            assert await first is True
            assert await host.secrets.get(StorageKey.PRIVATE_KEY) == hex_key

    async def test_clear_private_key(self, host, engine, relay_pool, fetcher, keys, hex_key):
        fetcher.events = identity_events(keys.public_key().to_hex())
        await host.secrets.store(StorageKey.PRIVATE_KEY, hex_key)
        async with engine:
            assert engine.profile == {"name": "alice"}
            assert await engine.clear_private_key() is True
            assert await engine.is_private_key_set() is False
            assert engine.profile == {}
            assert engine.relays == {}
            assert engine.user_status.is_empty
            assert engine.last_updated == 0
            assert relay_pool.switches[-1] == {}
            assert await host.state.get(StorageKey.METADATA_CACHE) is None

    async def test_external_key_change(self, host, state_sync_config, keys, hex_key):
        pubkey = keys.public_key().to_hex()
        watcher_fetcher = FakeFetcher(identity_events(pubkey))
        watcher_pool = FakeRelayPool()
        watcher = StateSync(
            host, state_sync_config, relay_pool=watcher_pool, fetcher=watcher_fetcher
        )
        rotator = StateSync(
            host, state_sync_config, relay_pool=FakeRelayPool(), fetcher=FakeFetcher()
        )
        async with watcher, rotator:
            assert watcher.profile == {}
            assert await rotator.update_private_key(hex_key) is True
            await settle(30)
            assert watcher.profile == {"name": "alice"}
            assert watcher.state == EngineState.READY
            assert len(watcher_pool.subscriptions) == 1
            assert await watcher.get_public_key() == pubkey


# ============================================================================
# Disposal
# ============================================================================


class TestDisposal:
    """Operations after dispose()."""

    @pytest.mark.parametrize(
        "call",
        [
            lambda engine: engine.post_text("gm"),
            lambda engine: engine.update_user_status("x"),
            lambda engine: engine.sync_states_with_relays(),
            lambda engine: engine.update_private_key("1" * 64),
            lambda engine: engine.clear_private_key(),
            lambda engine: engine.relay_states(),
            lambda engine: engine.get_private_key(),
            lambda engine: engine.restore_cache(),
            lambda engine: engine.start_states_sync_subscription(),
        ],
    )
    async def test_raises_after_dispose(self, engine, call):
        await engine.dispose()
        with pytest.raises(EngineStateError):
            await call(engine)

    async def test_dispose_clears_status_and_subscription(self, host, engine, hex_key):
        await host.secrets.store(StorageKey.PRIVATE_KEY, hex_key)
        await engine.start()
        await engine.update_user_status("x", expiration=int(time.time()) + 60)
        assert engine._status.has_timer
        await engine.dispose()
        assert engine.state == EngineState.DISPOSED
        assert not engine._status.has_timer
        assert engine._subscription_task is None

    async def test_external_change_after_dispose_ignored(self, host, engine, hex_key):
        await engine.start()
        await engine.dispose()
        await host.secrets.store(StorageKey.PRIVATE_KEY, hex_key)
        assert engine._background == set()
