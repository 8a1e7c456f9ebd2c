"""Ephemeral user status with a self-clearing expiry timer."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

from nostrmirror.models.user_status import EMPTY_STATUS, UserStatusValue


logger = logging.getLogger(__name__)


class UserStatus:
    """Holds the current [UserStatusValue][nostrmirror.models.user_status.UserStatusValue].

    A status with an expiration clears itself through a ``loop.call_later``
    timer. At most one timer is armed; every ``update`` or ``clear`` cancels
    the previous one. Reading ``value`` also clears an elapsed status, which
    covers updates made outside a running event loop.

    Args:
        clock: Returns the current Unix time in seconds.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._value = EMPTY_STATUS
        self._timer: asyncio.TimerHandle | None = None

    @property
    def value(self) -> UserStatusValue:
        if self._value.is_expired(self._clock()):
            self.clear()
        return self._value

    @property
    def has_timer(self) -> bool:
        return self._timer is not None

    def update(self, status: str, link_url: str = "", expiration: int | None = None) -> None:
        """Replace the status and re-arm the expiry timer."""
        self._cancel_timer()
        value = UserStatusValue(status=status, link_url=link_url, expiration=expiration)

        if expiration is None:
            self._value = value
            return

        delay = expiration - self._clock()
        if delay <= 0:
            self._value = EMPTY_STATUS
            return

        self._value = value
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("status_timer_skipped reason=no_running_loop")
            return
        self._timer = loop.call_later(delay, self._on_expired)

    def clear(self) -> None:
        self._cancel_timer()
        self._value = EMPTY_STATUS

    def _on_expired(self) -> None:
        self._timer = None
        logger.debug("status_expired")
        self._value = EMPTY_STATUS

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
