"""Relay list resolution from kind 3 and kind 10002 events.

Two event kinds can carry a user's relay list:

* Kind 3 (contacts) with a JSON relay map as content,
  ``{"wss://x": {"read": true, "write": false}}``.
* Kind 10002 (NIP-65) with ``["r", url, marker?]`` tags, where a missing
  marker means read and write.

Only the single latest of these events counts; the lists are never merged.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping

from nostrmirror.models.constants import RELAY_LIST_KINDS, EventKind
from nostrmirror.models.event import Event
from nostrmirror.models.relay_list import RelayAccess


logger = logging.getLogger(__name__)


_MARKERS: Mapping[str, RelayAccess] = {
    "read": RelayAccess(read=True, write=False),
    "write": RelayAccess(read=False, write=True),
}


def latest_relay_list_event(events: Iterable[Event | None]) -> Event | None:
    """Pick the relay-list event with the greatest ``created_at``.

    Equal timestamps go to the higher kind, so kind 10002 wins over kind 3.
    Events of other kinds and ``None`` entries are ignored.
    """
    latest: Event | None = None
    for event in events:
        if event is None or event.kind not in RELAY_LIST_KINDS:
            continue
        if latest is None or (event.created_at, event.kind) > (latest.created_at, latest.kind):
            latest = event
    return latest


def parse_contacts_relays(event: Event) -> dict[str, RelayAccess]:
    """Parse the relay map stored in a kind 3 event's content.

    Malformed JSON or a non-object document yields ``{}``. Entries whose
    value is not an object are dropped.
    """
    if not event.content:
        return {}
    try:
        data = json.loads(event.content)
    except json.JSONDecodeError as e:
        logger.warning("relay_list_parse_failed event_id=%s error=%s", event.id, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("relay_list_not_object event_id=%s", event.id)
        return {}

    relays: dict[str, RelayAccess] = {}
    for url, access in data.items():
        if not isinstance(access, dict):
            logger.warning("relay_list_entry_invalid event_id=%s url=%s", event.id, url)
            continue
        relays[url] = RelayAccess.from_dict(access)
    return relays


def parse_nip65_relays(event: Event) -> dict[str, RelayAccess]:
    """Parse the ``r`` tags of a kind 10002 event.

    Unknown markers are dropped with a warning; tags without a URL are
    ignored.
    """
    relays: dict[str, RelayAccess] = {}
    for tag in event.tag_values("r"):
        if len(tag) < 2:
            continue
        url = tag[1]
        marker = tag[2] if len(tag) > 2 else None
        if marker is None:
            relays[url] = RelayAccess(read=True, write=True)
        elif marker in _MARKERS:
            relays[url] = _MARKERS[marker]
        else:
            logger.warning("relay_marker_unknown event_id=%s url=%s marker=%s", event.id, url, marker)
    return relays


def resolve_relay_list(events: Iterable[Event | None]) -> dict[str, RelayAccess]:
    """Derive the relay map from the latest relay-list event in ``events``.

    Returns ``{}`` when there is no kind 3 or kind 10002 event. Never raises
    on malformed event data.

    Examples:
        ```python
        resolve_relay_list([contacts_at_100, nip65_at_200])
        # parsed from nip65_at_200 only
        ```
    """
    latest = latest_relay_list_event(events)
    if latest is None:
        return {}
    if latest.kind == EventKind.CONTACTS:
        return parse_contacts_relays(latest)
    return parse_nip65_relays(latest)
