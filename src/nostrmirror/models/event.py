"""
Immutable snapshot of a signed Nostr event.

The relay client hands out ``nostr_sdk.Event`` objects whose accessors are
methods returning SDK wrapper types. [Event][nostrmirror.models.event.Event]
copies the fields into plain Python values once, so parsers in
``nostrmirror.nips`` stay free of SDK types and can be exercised with
literal data.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ._validation import validate_instance, validate_str, validate_timestamp


Tag = tuple[str, ...]


@dataclass(frozen=True, slots=True)
class Event:
    """Plain-value copy of a Nostr event.

    Attributes:
        id: Event id, lowercase hex.
        pubkey: Author public key, lowercase hex.
        created_at: Unix timestamp in seconds.
        kind: Event kind.
        tags: Tags as tuples of strings, in event order.
        content: Raw content string.
        sig: Schnorr signature, hex. Empty for unsigned fixtures.

    Raises:
        TypeError: If a field has the wrong type.
        ValueError: If ``created_at`` or ``kind`` is negative.
    """

    id: str
    pubkey: str
    created_at: int
    kind: int
    tags: tuple[Tag, ...] = ()
    content: str = ""
    sig: str = ""

    def __post_init__(self) -> None:
        validate_str(self.id, "id")
        validate_str(self.pubkey, "pubkey")
        validate_timestamp(self.created_at, "created_at")
        validate_timestamp(self.kind, "kind")
        validate_str(self.content, "content")
        validate_instance(self.tags, tuple, "tags")
        object.__setattr__(self, "tags", tuple(tuple(str(v) for v in tag) for tag in self.tags))

    @classmethod
    def from_nostr(cls, nostr_event: Any) -> Event:
        """Copy a ``nostr_sdk.Event`` into an [Event][nostrmirror.models.event.Event]."""
        return cls(
            id=nostr_event.id().to_hex(),
            pubkey=nostr_event.author().to_hex(),
            created_at=nostr_event.created_at().as_secs(),
            kind=nostr_event.kind().as_u16(),
            tags=tuple(tuple(tag.as_vec()) for tag in nostr_event.tags().to_vec()),
            content=nostr_event.content(),
            sig=nostr_event.signature(),
        )

    def tag_values(self, name: str) -> list[Tag]:
        """Return every tag whose first element is ``name``."""
        return [tag for tag in self.tags if tag and tag[0] == name]

    def tag_value(self, name: str) -> str | None:
        """Return the second element of the first ``name`` tag, if any."""
        for tag in self.tags:
            if len(tag) >= 2 and tag[0] == name:
                return tag[1]
        return None
