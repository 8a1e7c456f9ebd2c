"""Persistence of the profile/relay-map snapshot."""

from __future__ import annotations

from nostrmirror.core.logger import Logger
from nostrmirror.core.store import KeyValueStore
from nostrmirror.models.constants import StorageKey
from nostrmirror.models.metadata_cache import MetadataCache


class MetadataCacheStore:
    """Load, save and invalidate the [MetadataCache][nostrmirror.models.metadata_cache.MetadataCache]."""

    def __init__(self, state: KeyValueStore, logger: Logger | None = None) -> None:
        self._state = state
        self._logger = logger or Logger("metadata_cache")

    async def load(self) -> MetadataCache | None:
        """Return the persisted cache; an undecodable value counts as absent."""
        data = await self._state.get(StorageKey.METADATA_CACHE)
        if data is None:
            return None
        try:
            return MetadataCache.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            self._logger.warning("metadata_cache_invalid", error=str(e))
            return None

    async def save(self, cache: MetadataCache) -> None:
        await self._state.set(StorageKey.METADATA_CACHE, cache.to_dict())

    async def invalidate(self) -> None:
        await self._state.set(StorageKey.METADATA_CACHE, None)
