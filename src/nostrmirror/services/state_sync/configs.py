"""State sync service configuration models.

See Also:
    [StateSync][nostrmirror.services.state_sync.StateSync]: The service
        class that consumes this configuration.
    [BaseServiceConfig][nostrmirror.core.base_service.BaseServiceConfig]:
        Base class providing ``interval``, ``max_consecutive_failures`` and
        ``metrics``.
"""

from __future__ import annotations

from urllib.parse import urlparse

from pydantic import Field, field_validator

from nostrmirror.core.base_service import BaseServiceConfig
from nostrmirror.core.store import StoreConfig
from nostrmirror.models.metadata_cache import DEFAULT_CACHE_MAX_AGE
from nostrmirror.utils.fetcher import DEFAULT_FETCH_TIMEOUT


DEFAULT_BOOTSTRAP_RELAYS = ("wss://relay.nostr.band", "wss://relayable.org")


def _validate_relay_urls(urls: list[str]) -> list[str]:
    for url in urls:
        parsed = urlparse(url)
        if parsed.scheme not in ("ws", "wss") or not parsed.netloc:
            raise ValueError(f"relay URL must use ws:// or wss://: {url!r}")
    return urls


class StateSyncConfig(BaseServiceConfig):
    """Configuration for [StateSync][nostrmirror.services.state_sync.StateSync].

    Examples:
        ```yaml
        interval: 3600
        bootstrap_relays: ["wss://relay.nostr.band"]
        additional_write_relays: ["wss://nos.lol"]
        store:
          backend: postgres
        ```
    """

    bootstrap_relays: list[str] = Field(
        default_factory=lambda: list(DEFAULT_BOOTSTRAP_RELAYS),
        min_length=1,
        description="Relays queried when no relay list is known",
    )
    additional_write_relays: list[str] = Field(
        default_factory=list,
        description="Relays always published to, on top of the user's relay list",
    )
    default_status: str = Field(default="", description="Status used by the CLI when none is given")
    default_link_url: str = Field(default="", description="Status link used by the CLI by default")
    metadata_cache_max_age: int = Field(
        default=DEFAULT_CACHE_MAX_AGE,
        ge=0,
        description="Seconds after which the metadata cache is stale",
    )
    fetch_timeout: float = Field(
        default=DEFAULT_FETCH_TIMEOUT,
        gt=0,
        le=120.0,
        description="Per-relay fetch timeout in seconds",
    )
    echo_retention: int | None = Field(
        default=None,
        ge=1,
        description="Seconds to remember published event ids (None = forever)",
    )
    key_lock_lease: int = Field(
        default=300,
        ge=0,
        description="Seconds after which a key update lock is considered abandoned (0 = never)",
    )
    store: StoreConfig = Field(default_factory=StoreConfig, description="Host store backend")

    @field_validator("bootstrap_relays", "additional_write_relays")
    @classmethod
    def validate_relay_urls(cls, v: list[str]) -> list[str]:
        return _validate_relay_urls(v)
