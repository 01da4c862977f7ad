"""Server-Sent Events framing helpers.

The agent's event endpoint gives no length framing, so inbound bytes are
parsed with a restartable function: complete frames are decoded and the
incomplete tail is handed back to be prepended to the next chunk.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, overload

logger = logging.getLogger("burrow.sse")

_SEPARATOR = re.compile(r"\r?\n\r?\n")
_SEPARATOR_BYTES = re.compile(rb"\r?\n\r?\n")


def format_sse(event: str, data: object) -> bytes:
    """Encode an SSE event block."""
    payload = json.dumps(data, ensure_ascii=False, separators=(",", ":"))
    return f"event: {event}\ndata: {payload}\n\n".encode()


def _decode_frame(frame: str) -> dict[str, Any] | None:
    event_type: str | None = None
    data_lines: list[str] = []
    for raw_line in frame.split("\n"):
        line = raw_line.rstrip("\r")
        if not line or line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            event_type = value.strip() or None
        elif name == "data":
            data_lines.append(value)

    if not data_lines:
        return None
    raw = "\n".join(data_lines)
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("sse_frame_malformed", extra={"event": event_type, "data": raw[:200]})
        return None
    if not isinstance(payload, dict):
        logger.warning("sse_frame_not_object", extra={"event": event_type, "data": raw[:200]})
        return None
    if event_type is not None:
        payload["type"] = event_type
    return payload


@overload
def parse_sse_chunk(buffer: str) -> tuple[list[dict[str, Any]], str]: ...


@overload
def parse_sse_chunk(buffer: bytes) -> tuple[list[dict[str, Any]], bytes]: ...


def parse_sse_chunk(buffer: str | bytes) -> tuple[list[dict[str, Any]], str | bytes]:
    """Decode every complete frame in ``buffer``.

    Returns the decoded events in wire order and the bytes after the last
    blank line, unchanged. Feeding ``remaining + next_chunk`` into the next
    call yields the same events as parsing the concatenated input at once.
    Malformed frames are logged and dropped.
    """
    pattern = _SEPARATOR_BYTES if isinstance(buffer, bytes) else _SEPARATOR
    frames: list[Any] = []
    start = 0
    for match in pattern.finditer(buffer):
        frames.append(buffer[start : match.start()])
        start = match.end()
    remaining = buffer[start:]

    events: list[dict[str, Any]] = []
    for frame in frames:
        text = frame.decode("utf-8", errors="replace") if isinstance(frame, bytes) else frame
        event = _decode_frame(text)
        if event is not None:
            events.append(event)
    return events, remaining


__all__ = ["format_sse", "parse_sse_chunk"]
