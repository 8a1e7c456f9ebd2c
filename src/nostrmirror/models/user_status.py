"""
User status value (NIP-38).
"""

from __future__ import annotations

from dataclasses import dataclass

from ._validation import validate_str, validate_timestamp


@dataclass(frozen=True, slots=True)
class UserStatusValue:
    """A status message with optional link and NIP-40 expiration.

    An empty ``status`` means no status is set.
    """

    status: str = ""
    link_url: str = ""
    expiration: int | None = None

    def __post_init__(self) -> None:
        validate_str(self.status, "status")
        validate_str(self.link_url, "link_url")
        if self.expiration is not None:
            validate_timestamp(self.expiration, "expiration")

    @property
    def is_empty(self) -> bool:
        return not self.status

    def is_expired(self, now: int) -> bool:
        return self.expiration is not None and self.expiration <= now


EMPTY_STATUS = UserStatusValue()
