"""Utility layer: key handling and relay I/O over ``nostr_sdk``.

Attributes:
    to_hex_private_key: Normalize hex or ``nsec1`` input to hex.
    RelayPool: Long-lived relay client following the user's relay map.
    EventFetcher: Latest-event queries merged across relays.
"""

from .fetcher import DEFAULT_FETCH_TIMEOUT, EventFetcher
from .keys import (
    ENV_PRIVATE_KEY,
    load_private_key_from_env,
    parse_keys,
    to_hex_private_key,
)
from .protocol import DeliveryResult, RelayPool, create_client


__all__ = [
    "DEFAULT_FETCH_TIMEOUT",
    "ENV_PRIVATE_KEY",
    "DeliveryResult",
    "EventFetcher",
    "RelayPool",
    "create_client",
    "load_private_key_from_env",
    "parse_keys",
    "to_hex_private_key",
]
