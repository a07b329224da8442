"""Server-sent event framing: encode fragments, decode byte streams incrementally."""

from __future__ import annotations

import codecs
import json
import re
from dataclasses import dataclass

from .errors import MalformedFrame
from .models import Fragment, fragment_adapter

_LINE_END = re.compile(r"\r\n|\r|\n")


def encode_event(fragment: Fragment) -> bytes:
    """One named event per fragment; the JSON payload never spans lines."""
    return f"event: {fragment.type}\ndata: {fragment.model_dump_json()}\n\n".encode("utf-8")


@dataclass
class ServerEvent:
    data: str
    event: str = "message"
    id: str | None = None


class SSEDecoder:
    """Incremental event-stream decoder.

    Network reads can split an event anywhere, even inside a UTF-8 sequence
    or between ``\\r`` and ``\\n``. ``feed`` only returns events whose
    terminating blank line has arrived; everything else stays buffered.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._event: str | None = None
        self._id: str | None = None
        self._data: list[str] = []

    def feed(self, chunk: bytes | str) -> list[ServerEvent]:
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer += chunk

        events: list[ServerEvent] = []
        pos = 0
        while True:
            match = _LINE_END.search(self._buffer, pos)
            if match is None:
                break
            # A trailing \r may be the first half of \r\n
            if match.group() == "\r" and match.end() == len(self._buffer):
                break
            event = self._process_line(self._buffer[pos : match.start()])
            pos = match.end()
            if event is not None:
                events.append(event)
        self._buffer = self._buffer[pos:]
        return events

    def flush(self) -> list[ServerEvent]:
        """Finish a closed stream.

        A held-back ``\\r`` still ends its line, so an event it completes is
        returned. An event whose blank line never arrived is dropped.
        """
        self._buffer += self._decoder.decode(b"", final=True)
        *complete, _unterminated = _LINE_END.split(self._buffer)
        events: list[ServerEvent] = []
        for line in complete:
            event = self._process_line(line)
            if event is not None:
                events.append(event)
        self._buffer = ""
        self._event = None
        self._data = []
        return events

    def _process_line(self, line: str) -> ServerEvent | None:
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if field == "data":
            self._data.append(value)
        elif field == "event":
            self._event = value
        elif field == "id":
            self._id = value
        return None

    def _dispatch(self) -> ServerEvent | None:
        if not self._data:
            self._event = None
            return None
        event = ServerEvent(data="\n".join(self._data), event=self._event or "message", id=self._id)
        self._event = None
        self._data = []
        return event


def parse_fragment(event: ServerEvent) -> Fragment:
    """Turn a decoded event into a fragment; raises MalformedFrame."""
    try:
        payload = json.loads(event.data)
        if isinstance(payload, dict) and event.event != "message":
            payload.setdefault("type", event.event)
        return fragment_adapter.validate_python(payload)
    except ValueError as e:
        raise MalformedFrame(f"Bad event payload: {event.data[:200]!r}") from e
