"""
Unit tests for utils.keys module.

Tests:
- to_hex_private_key() for hex, nsec and invalid input
- parse_keys()
- load_private_key_from_env()
"""

import pytest
from nostr_sdk import Keys

from nostrmirror.utils.keys import (
    ENV_PRIVATE_KEY,
    load_private_key_from_env,
    parse_keys,
    to_hex_private_key,
)


class TestToHexPrivateKey:
    """to_hex_private_key() function."""

    def test_hex_passthrough(self, hex_key):
        assert to_hex_private_key(hex_key) == hex_key

    def test_strips_whitespace(self, hex_key):
        assert to_hex_private_key(f"  {hex_key}\n") == hex_key

    def test_nsec(self, keys, hex_key):
        assert to_hex_private_key(keys.secret_key().to_bech32()) == hex_key

    def test_invalid_nsec(self):
        assert to_hex_private_key("nsec1notreallyakey") is None

    @pytest.mark.parametrize(
        "raw",
        ["", "abc", "A" * 64, "g" * 64, "a" * 63, "a" * 65, "npub1xyz"],
    )
    def test_rejected(self, raw):
        assert to_hex_private_key(raw) is None


class TestParseKeys:
    """parse_keys() function."""

    def test_round_trip(self, keys, hex_key):
        assert parse_keys(hex_key).public_key().to_hex() == keys.public_key().to_hex()

    def test_invalid(self):
        with pytest.raises(ValueError, match="invalid private key"):
            parse_keys("0" * 64)


class TestLoadPrivateKeyFromEnv:
    """load_private_key_from_env() function."""

    def test_unset(self, monkeypatch):
        monkeypatch.delenv(ENV_PRIVATE_KEY, raising=False)
        assert load_private_key_from_env() is None

    def test_hex(self, monkeypatch, hex_key):
        monkeypatch.setenv(ENV_PRIVATE_KEY, hex_key)
        assert load_private_key_from_env() == hex_key

    def test_custom_var_with_nsec(self, monkeypatch):
        keys = Keys.generate()
        monkeypatch.setenv("MY_NSEC", keys.secret_key().to_bech32())
        assert load_private_key_from_env("MY_NSEC") == keys.secret_key().to_hex()

    def test_invalid(self, monkeypatch):
        monkeypatch.setenv(ENV_PRIVATE_KEY, "not-a-key")
        with pytest.raises(ValueError, match=ENV_PRIVATE_KEY):
            load_private_key_from_env()
