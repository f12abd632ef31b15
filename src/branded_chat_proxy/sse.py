"""
Incremental decoder for the upstream Server-Sent Events stream.

Bytes arrive in arbitrary chunks: a chunk may end inside a multi-byte
character, inside a line or inside an event. Nothing is parsed until the
blank line closing its event has arrived.
"""
import json
import codecs
import logging
import dataclasses
from typing import Any, AsyncIterator, List, Optional, Union

import aiohttp


EVENT_DELIMITER = "\n\n"
DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"


@dataclasses.dataclass(frozen=True)
class TextDelta:
    text: str


@dataclasses.dataclass(frozen=True)
class UpstreamError:
    """Upstream reported an error mid-stream. Its detail is never kept."""


@dataclasses.dataclass(frozen=True)
class Ignored:
    type: Optional[str] = None


UpstreamEvent = Union[TextDelta, UpstreamError, Ignored]


def parse_event(payload: Any) -> UpstreamEvent:
    """Map one decoded `data:` payload onto an UpstreamEvent."""
    if not isinstance(payload, dict):
        return Ignored()
    event_type = payload.get("type")
    if event_type == "content_block_delta":
        delta = payload.get("delta")
        text = delta.get("text") if isinstance(delta, dict) else None
        if isinstance(text, str) and text:
            return TextDelta(text)
    elif event_type == "error":
        return UpstreamError()
    return Ignored(event_type if isinstance(event_type, str) else None)


class SSEFrameParser:
    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.logger = logging.getLogger(__package__).getChild(self.__class__.__qualname__)

    def feed(self, chunk: bytes) -> List[UpstreamEvent]:
        """Consume one chunk, return the events of every frame it completed."""
        text = self._decoder.decode(chunk)
        if not text:
            return []
        # Normalized over the whole buffer, a chunk may end between "\r" and "\n"
        self._buffer = (self._buffer + text).replace("\r\n", "\n")
        frames = self._buffer.split(EVENT_DELIMITER)
        self._buffer = frames.pop()
        events = []
        for frame in frames:
            events.extend(self._parse_frame(frame))
        return events

    def close(self) -> List[UpstreamEvent]:
        """End of stream. An unterminated frame is not a finished event."""
        leftover = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        if leftover.strip():
            self.logger.debug("discarding %d chars of incomplete frame", len(leftover))
        return []

    def _parse_frame(self, frame: str) -> List[UpstreamEvent]:
        events = []
        # One frame may carry several data lines, all of them count
        for line in frame.split("\n"):
            if not line.startswith(DATA_PREFIX):
                continue
            data = line[len(DATA_PREFIX):].strip()
            if not data or data == DONE_SENTINEL:
                continue
            try:
                payload = json.loads(data)
            except ValueError:
                self.logger.debug("skipping malformed data line (%d chars)", len(data))
                continue
            events.append(parse_event(payload))
        return events


async def aiter_events(
    stream: aiohttp.StreamReader, parser: SSEFrameParser
) -> AsyncIterator[UpstreamEvent]:
    async for chunk in stream.iter_any():
        for event in parser.feed(chunk):
            yield event
    for event in parser.close():
        yield event
