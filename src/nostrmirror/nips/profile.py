"""Kind 0 profile metadata parsing."""

from __future__ import annotations

import json
import logging
from typing import Any

from nostrmirror.models.event import Event


logger = logging.getLogger(__name__)


def parse_profile(event: Event | None) -> dict[str, Any]:
    """Decode the JSON object in a kind 0 event's content.

    A missing event, malformed JSON or a non-object document yields ``{}``.
    """
    if event is None:
        return {}
    try:
        data = json.loads(event.content)
    except json.JSONDecodeError as e:
        logger.warning("profile_parse_failed event_id=%s error=%s", event.id, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("profile_not_object event_id=%s", event.id)
        return {}
    return data
