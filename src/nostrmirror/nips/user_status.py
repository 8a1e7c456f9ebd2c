"""NIP-38 user status parsing with NIP-40 expiration."""

from __future__ import annotations

import logging

from nostrmirror.models.event import Event
from nostrmirror.models.user_status import UserStatusValue


logger = logging.getLogger(__name__)


def parse_expiration(event: Event) -> int | None:
    """Return the NIP-40 ``expiration`` tag as an int, or ``None``.

    Unparseable or negative values are logged and treated as absent.
    """
    raw = event.tag_value("expiration")
    if raw is None:
        return None
    try:
        expiration = int(raw)
    except ValueError:
        logger.warning("status_expiration_invalid event_id=%s value=%s", event.id, raw)
        return None
    if expiration < 0:
        logger.warning("status_expiration_invalid event_id=%s value=%s", event.id, raw)
        return None
    return expiration


def parse_user_status(event: Event) -> UserStatusValue:
    """Read status text, ``r`` link and expiration from a kind 30315 event."""
    return UserStatusValue(
        status=event.content,
        link_url=event.tag_value("r") or "",
        expiration=parse_expiration(event),
    )
