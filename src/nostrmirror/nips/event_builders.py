"""Nostr event builders for the kinds this package publishes.

Each function returns an unsigned ``nostr_sdk.EventBuilder``; callers sign
with ``builder.sign_with_keys(keys)``.
"""

from __future__ import annotations

from nostr_sdk import EventBuilder, Kind, Tag

from nostrmirror.models.constants import STATUS_IDENTIFIER, EventKind

from .hashtags import parse_hashtags


# =============================================================================
# Kind 1 (NIP-01)
# =============================================================================


def build_text_note(content: str) -> EventBuilder:
    """Build a kind 1 text note with one ``t`` tag per hashtag in ``content``."""
    tags = [Tag.parse(["t", hashtag]) for hashtag in parse_hashtags(content)]
    return EventBuilder(Kind(EventKind.TEXT_NOTE), content).tags(tags)


# =============================================================================
# Kind 30315 (NIP-38)
# =============================================================================


def build_user_status(
    status: str,
    link_url: str = "",
    expiration: int | None = None,
) -> EventBuilder:
    """Build a kind 30315 general status.

    Tags: ``["d", "general"]``, ``["r", link_url]`` when ``link_url`` is
    non-empty, ``["expiration", str(expiration)]`` when set.
    """
    tags = [Tag.parse(["d", STATUS_IDENTIFIER])]
    if link_url:
        tags.append(Tag.parse(["r", link_url]))
    if expiration is not None:
        tags.append(Tag.parse(["expiration", str(expiration)]))
    return EventBuilder(Kind(EventKind.USER_STATUS), status).tags(tags)
