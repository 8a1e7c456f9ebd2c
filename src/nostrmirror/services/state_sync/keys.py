"""Private key rotation guarded by an advisory cross-instance lock.

Several processes may share one secret store and one state store. Before
touching the stored key, a coordinator checks the ``updatePrivateKeyLock``
entry and aborts when another instance holds it. Check-then-set is not
atomic across processes, so the lock is advisory only.

The lock value records when it was taken. A lock older than the configured
lease is treated as abandoned by a crashed instance and reclaimed. A plain
``true`` value carries no timestamp and never expires.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from typing import Any

from nostrmirror.core.logger import Logger
from nostrmirror.core.store import HostContext
from nostrmirror.models.constants import StorageKey
from nostrmirror.utils.keys import to_hex_private_key


KeyChangeHandler = Callable[[str | None], Awaitable[None]]


class KeyUpdateCoordinator:
    """Store or delete the private key under the advisory lock.

    Args:
        host: Stores shared with other instances.
        lease: Seconds after which a held lock counts as abandoned;
            ``0`` disables expiry.
        logger: Logger of the owning service.
        clock: Returns the current Unix time in seconds.
    """

    def __init__(
        self,
        host: HostContext,
        *,
        lease: int = 300,
        logger: Logger | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._host = host
        self._lease = lease
        self._logger = logger or Logger("key_update")
        self._clock = clock
        self._initiator = False
        self._busy = False

    @property
    def is_initiator(self) -> bool:
        """Whether this instance's own key change notification is still pending."""
        return self._initiator

    # -------------------------------------------------------------------------
    # Lock
    # -------------------------------------------------------------------------

    def _is_abandoned(self, value: Any) -> bool:
        if self._lease <= 0 or not isinstance(value, dict):
            return False
        acquired_at = value.get("acquired_at")
        if not isinstance(acquired_at, int | float):
            return False
        return self._clock() - acquired_at > self._lease

    async def _acquire(self) -> bool:
        current = await self._host.state.get(StorageKey.KEY_UPDATE_LOCK)
        if current:
            if not self._is_abandoned(current):
                self._logger.warning("key_update_locked", reason="another instance is updating")
                return False
            self._logger.warning("key_update_lock_reclaimed", acquired_at=current["acquired_at"])
        await self._host.state.set(
            StorageKey.KEY_UPDATE_LOCK, {"acquired_at": int(self._clock())}
        )
        return True

    async def _release(self) -> None:
        await self._host.state.set(StorageKey.KEY_UPDATE_LOCK, None)

    async def is_locked(self) -> bool:
        current = await self._host.state.get(StorageKey.KEY_UPDATE_LOCK)
        return bool(current) and not self._is_abandoned(current)

    # -------------------------------------------------------------------------
    # Rotation
    # -------------------------------------------------------------------------

    async def update(self, raw_key: str, on_changed: KeyChangeHandler) -> bool:
        """Store ``raw_key`` and run ``on_changed`` with its hex form.

        Returns:
            ``False`` when the lock is held elsewhere; nothing is changed.

        Raises:
            ValueError: If ``raw_key`` is neither hex nor ``nsec1``. Checked
                before the lock is read.
        """
        hex_key = to_hex_private_key(raw_key)
        if hex_key is None:
            raise ValueError("private key must be 64 lowercase hex characters or nsec1 bech32")
        return await self._change(hex_key, on_changed)

    async def clear(self, on_changed: KeyChangeHandler) -> bool:
        """Delete the stored key and run ``on_changed(None)``."""
        return await self._change(None, on_changed)

    async def _change(self, hex_key: str | None, on_changed: KeyChangeHandler) -> bool:
        # set before the first await so a second local call cannot slip past the lock read
        if self._busy:
            self._logger.warning("key_update_locked", reason="update already running")
            return False
        self._busy = True
        try:
            return await self._locked_change(hex_key, on_changed)
        finally:
            self._busy = False

    async def _locked_change(self, hex_key: str | None, on_changed: KeyChangeHandler) -> bool:
        if not await self._acquire():
            return False
        try:
            self._initiator = True
            try:
                if hex_key is None:
                    await self._host.secrets.delete(StorageKey.PRIVATE_KEY)
                else:
                    await self._host.secrets.store(StorageKey.PRIVATE_KEY, hex_key)
            except BaseException:
                self._initiator = False
                raise
            self._logger.info("private_key_changed", cleared=hex_key is None)
            await on_changed(hex_key)
        finally:
            await self._release()
        return True

    def consume_change(self, key: str) -> bool:
        """Decide whether a secret store notification needs handling.

        Returns ``True`` for private key changes made by another instance.
        The first notification after this instance's own change is its echo:
        it resets the initiator flag and returns ``False``.
        """
        if key != StorageKey.PRIVATE_KEY:
            return False
        if self._initiator:
            self._initiator = False
            return False
        return True
