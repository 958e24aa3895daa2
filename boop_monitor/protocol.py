"""Wire codec for lifecycle event lines.

Shell hooks write one event per line to the local socket. Two formats are
accepted:

Structured (preferred), one JSON object per line:
    {"type":"START","session_id":"abc","tool":"claude","project_name":"demo","pid":42}
    {"type":"STATE","session_id":"abc","state":"AWAITING_APPROVAL","details":"confirm?"}
    {"type":"END","session_id":"abc","exit_code":0}

Legacy, pipe-delimited (older hook scripts):
    START|abc|claude|demo|42
    STATE|abc|AWAITING_APPROVAL|confirm\\|deny?
    END|abc|0

A line that is valid JSON is trusted for its type tag only; a payload with
missing or mistyped fields decodes to UnknownEvent. Anything that is not a
JSON object falls back to the legacy parser.
"""

import json
import logging
import re
from typing import Optional

from pydantic import BaseModel, ValidationError

from .models import (
    EndEvent,
    LifecycleEvent,
    SessionState,
    StartEvent,
    StateChangeEvent,
    UnknownEvent,
)

logger = logging.getLogger(__name__)

TYPE_START = "START"
TYPE_STATE = "STATE"
TYPE_END = "END"

# Split on "|" unless it is escaped as "\|"
_LEGACY_SEPARATOR = re.compile(r"(?<!\\)\|")
_INTEGER = re.compile(r"^[+-]?\d+$")

_STRUCTURED_MODELS: dict[str, type[BaseModel]] = {
    TYPE_START: StartEvent,
    TYPE_STATE: StateChangeEvent,
    TYPE_END: EndEvent,
}


def parse(line: str) -> Optional[LifecycleEvent]:
    """Decode one line into a lifecycle event.

    Args:
        line: Raw line without its terminating newline

    Returns:
        The decoded event, UnknownEvent for undecodable input, or None for a
        blank line.
    """
    trimmed = line.strip()
    if not trimmed:
        return None

    try:
        payload = json.loads(trimmed)
    except (json.JSONDecodeError, RecursionError):
        # RecursionError: nesting deeper than the decoder's stack allows
        payload = None

    if isinstance(payload, dict):
        event = _parse_structured(payload, trimmed)
    else:
        event = _parse_legacy(trimmed)

    if isinstance(event, UnknownEvent):
        logger.warning(f"Could not decode event line: {trimmed[:200]!r}")
    return event


def _parse_structured(payload: dict, raw: str) -> LifecycleEvent:
    """Validate a JSON object against the model for its type tag."""
    tag = payload.get("type")
    model = _STRUCTURED_MODELS.get(tag) if isinstance(tag, str) else None
    if model is None:
        return UnknownEvent(raw=raw)

    # Null optional fields mean "absent"
    cleaned = {key: value for key, value in payload.items() if value is not None}
    try:
        return model.model_validate_json(json.dumps(cleaned), strict=True)
    except ValidationError as e:
        logger.debug(f"Structured payload rejected: {e.error_count()} error(s)")
        return UnknownEvent(raw=raw)


def _parse_legacy(raw: str) -> LifecycleEvent:
    """Parse the pipe-delimited format used by older hook scripts."""
    parts = _LEGACY_SEPARATOR.split(raw)
    tag = parts[0]

    if tag == TYPE_START:
        if len(parts) < 5 or not _INTEGER.match(parts[4]):
            return UnknownEvent(raw=raw)
        return StartEvent(
            session_id=parts[1],
            tool=parts[2],
            project_name=parts[3],
            pid=int(parts[4]),
        )

    if tag == TYPE_STATE:
        if len(parts) < 4:
            return UnknownEvent(raw=raw)
        try:
            state = SessionState(parts[2])
        except ValueError:
            return UnknownEvent(raw=raw)
        details = "|".join(parts[3:]).replace("\\|", "|")
        return StateChangeEvent(session_id=parts[1], state=state, details=details)

    if tag == TYPE_END:
        if len(parts) < 3 or not _INTEGER.match(parts[2]):
            return UnknownEvent(raw=raw)
        return EndEvent(session_id=parts[1], exit_code=int(parts[2]))

    return UnknownEvent(raw=raw)


def encode(event: LifecycleEvent) -> str:
    """Serialize an event as one structured line, newline included.

    Raises:
        ValueError: For UnknownEvent, which has no wire form
    """
    if isinstance(event, StartEvent):
        data = {"type": TYPE_START, **event.model_dump()}
    elif isinstance(event, StateChangeEvent):
        data = {"type": TYPE_STATE, **event.model_dump(mode="json", exclude_none=True)}
    elif isinstance(event, EndEvent):
        data = {"type": TYPE_END, **event.model_dump()}
    else:
        raise ValueError(f"Cannot encode {type(event).__name__}")
    return json.dumps(data, separators=(",", ":")) + "\n"
