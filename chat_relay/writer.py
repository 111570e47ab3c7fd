"""Line-delimited JSON response writer for the chat stream."""

from __future__ import annotations

import logging
from typing import Dict, Iterator, Optional

from fastapi.responses import StreamingResponse

from .events import OutwardEvent, encode_event, is_terminal

logger = logging.getLogger(__name__)

NDJSON_MEDIA_TYPE = "application/x-ndjson; charset=utf-8"
STREAM_HEADERS: Dict[str, str] = {
    "Cache-Control": "no-store, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class EventStreamWriter:
    """Serialize outward events one per line and own the response lifecycle.

    Each event becomes exactly one chunk handed to the server, so clients can
    parse as soon as a newline arrives. The writer closes itself after a
    terminal event; anything written after :meth:`close` is dropped.
    """

    def __init__(self, events: Iterator[OutwardEvent]) -> None:
        self._events = events
        self.closed = False
        self.lines_written = 0

    def write(self, event: OutwardEvent) -> Optional[bytes]:
        if self.closed:
            logger.debug("Dropping %s event written after close", type(event).__name__)
            return None
        line = encode_event(event).encode("utf-8")
        self.lines_written += 1
        if is_terminal(event):
            self.close()
        return line

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        close = getattr(self._events, "close", None)
        if close is not None:
            close()

    def iter_lines(self) -> Iterator[bytes]:
        try:
            for event in self._events:
                line = self.write(event)
                if line is None:
                    break
                yield line
        finally:
            self.close()

    def response(self, status_code: int = 200) -> StreamingResponse:
        return StreamingResponse(
            self.iter_lines(),
            status_code=status_code,
            media_type=NDJSON_MEDIA_TYPE,
            headers=dict(STREAM_HEADERS),
        )
