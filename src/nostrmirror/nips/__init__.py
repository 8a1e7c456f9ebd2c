"""Nostr Implementation Possibilities: parsing and building protocol payloads.

Depends on [nostrmirror.models][nostrmirror.models]. Parsers **never raise**
on malformed remote data; they log and degrade to an empty value.

Attributes:
    resolve_relay_list: Latest kind 3 / kind 10002 event to a relay map.
    parse_profile: Kind 0 content to a dict.
    parse_user_status: Kind 30315 event to a
        [UserStatusValue][nostrmirror.models.user_status.UserStatusValue].
    parse_hashtags: ``#tag`` extraction for text notes.
    build_text_note, build_user_status: Unsigned event builders.
"""

from .event_builders import build_text_note, build_user_status
from .hashtags import parse_hashtags
from .profile import parse_profile
from .relay_list import (
    latest_relay_list_event,
    parse_contacts_relays,
    parse_nip65_relays,
    resolve_relay_list,
)
from .user_status import parse_expiration, parse_user_status


__all__ = [
    "build_text_note",
    "build_user_status",
    "latest_relay_list_event",
    "parse_contacts_relays",
    "parse_expiration",
    "parse_hashtags",
    "parse_nip65_relays",
    "parse_profile",
    "parse_user_status",
    "resolve_relay_list",
]
