"""Nostr private key normalization and loading.

Accepts either a 64-character lowercase hex private key or an ``nsec1``
bech32 string, and always stores the hex form.

Warning:
    Private keys must **never** be logged. Functions here log only the
    failure reason, never the input.

Examples:
    ```python
    hex_key = to_hex_private_key("nsec1...")  # pragma: allowlist secret
    keys = parse_keys(hex_key)
    keys.public_key().to_hex()
    ```
"""

from __future__ import annotations

import logging
import os
import re

from nostr_sdk import Keys, NostrSdkError


logger = logging.getLogger(__name__)

ENV_PRIVATE_KEY = "NOSTR_PRIVATE_KEY"  # pragma: allowlist secret

_HEX_PRIVATE_KEY = re.compile(r"^[a-f0-9]{64}$")
_NSEC_PREFIX = "nsec1"


def to_hex_private_key(raw: str) -> str | None:
    """Normalize ``raw`` to a hex private key.

    Returns:
        The lowercase hex key, or ``None`` when ``raw`` is neither a
        64-character lowercase hex string nor a decodable ``nsec1`` key.
    """
    value = raw.strip()
    if value.startswith(_NSEC_PREFIX):
        try:
            return Keys.parse(value).secret_key().to_hex()
        except NostrSdkError:
            logger.warning("private_key_decode_failed format=nsec")
            return None
    if _HEX_PRIVATE_KEY.match(value):
        return value
    return None


def parse_keys(hex_private_key: str) -> Keys:
    """Build ``nostr_sdk.Keys`` from a hex private key.

    Raises:
        ValueError: If the key is not a valid secp256k1 secret key.
    """
    try:
        return Keys.parse(hex_private_key)
    except NostrSdkError as e:
        raise ValueError("invalid private key") from e


def load_private_key_from_env(env_var: str = ENV_PRIVATE_KEY) -> str | None:
    """Read and normalize a private key from ``env_var``.

    Returns:
        The hex key, or ``None`` when the variable is unset or empty.

    Raises:
        ValueError: If the variable is set but does not hold a valid key.
    """
    value = os.getenv(env_var)
    if not value:
        return None
    hex_key = to_hex_private_key(value)
    if hex_key is None:
        raise ValueError(f"{env_var} does not contain a valid hex or nsec private key")
    return hex_key
