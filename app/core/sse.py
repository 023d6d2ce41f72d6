"""Server-Sent Events framing helpers.

The relay forwards upstream bytes untouched; these helpers only locate event
boundaries, read event fields for observation, and build the few frames the
proxy synthesizes itself (keepalive comment, error event).
"""

import json
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Optional

# An event ends at a blank line; SSE allows CRLF, LF or CR line endings.
_BOUNDARY = re.compile(rb"\r\n\r\n|\n\n|\r\r")
_EVENT_SPLIT = re.compile(r"\r\n\r\n|\n\n|\r\r")
_LINE_SPLIT = re.compile(r"\r\n|\n|\r")

KEEPALIVE_FRAME = b": connected\n\n"


@dataclass
class SSEEvent:
    event: str = "message"
    data: str = ""
    id: Optional[str] = None

    def json(self) -> Any:
        """Parse ``data`` as JSON; None when it is not JSON."""
        try:
            return json.loads(self.data) if self.data else None
        except ValueError:
            return None


def split_complete(buffer: bytes) -> tuple[bytes, bytes]:
    """Split ``buffer`` into (complete events, incomplete tail)."""
    end = 0
    for match in _BOUNDARY.finditer(buffer):
        end = match.end()
    return buffer[:end], buffer[end:]


def parse_events(raw: bytes) -> list[SSEEvent]:
    """Parse complete SSE events. Comment-only blocks are skipped."""
    text = raw.decode("utf-8", errors="replace")
    events: list[SSEEvent] = []
    for block in _EVENT_SPLIT.split(text):
        if not block.strip():
            continue
        event = SSEEvent()
        data_lines: list[str] = []
        has_field = False
        for line in _LINE_SPLIT.split(block):
            if not line or line.startswith(":"):
                continue
            field, _, value = line.partition(":")
            if value.startswith(" "):
                value = value[1:]
            if field == "event":
                event.event = value or "message"
                has_field = True
            elif field == "data":
                data_lines.append(value)
                has_field = True
            elif field == "id":
                event.id = value
                has_field = True
        if has_field:
            event.data = "\n".join(data_lines)
            events.append(event)
    return events


def format_event(event: str, data: dict[str, Any], event_id: Optional[str] = None) -> bytes:
    """Build one SSE frame."""
    lines = []
    if event_id:
        lines.append(f"id: {event_id}")
    lines.append(f"event: {event}")
    lines.append(f"data: {json.dumps(data, default=str)}")
    return ("\n".join(lines) + "\n\n").encode()


def error_frame(message: str, code: str = "upstream_unavailable") -> bytes:
    """Synthesized ``error`` event with a timestamp."""
    return format_event(
        "error",
        {"message": message, "code": code, "timestamp": datetime.now(UTC).isoformat()},
    )
