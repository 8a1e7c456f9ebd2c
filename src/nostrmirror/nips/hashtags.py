"""Hashtag extraction for text notes."""

from __future__ import annotations


def parse_hashtags(content: str) -> list[str]:
    """Return the hashtags in ``content``, left to right, without the ``#``.

    A hashtag starts at ``#`` and runs to the next whitespace character
    (``str.isspace``, which includes the ideographic space U+3000) or the end
    of the string. A ``#`` followed directly by whitespace or the end is
    skipped. Duplicates are kept.

    Examples:
        ```python
        parse_hashtags("hello #nostr and #python")  # ["nostr", "python"]
        parse_hashtags("#a　#b")                 # ["a", "b"]
        ```
    """
    tags: list[str] = []
    index = content.find("#")
    while index != -1:
        end = index + 1
        while end < len(content) and not content[end].isspace():
            end += 1
        tag = content[index + 1 : end]
        if tag:
            tags.append(tag)
        index = content.find("#", end)
    return tags
