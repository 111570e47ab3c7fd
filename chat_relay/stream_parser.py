"""Incremental parsing of the completion API's server-sent event stream.

The upstream frames events with a blank line. Each event has one or more
lines; payload lines start with ``data:`` and hold a JSON chunk whose
``choices[0].delta.content`` is the next text fragment. The stream ends
with a ``data: [DONE]`` line, though the final blank line is not always
sent.
"""

from __future__ import annotations

import codecs
import json
import logging
from typing import Any, Callable, Iterable, Iterator, List, Optional

logger = logging.getLogger(__name__)

EVENT_BOUNDARY = "\n\n"
DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


class UpstreamStreamParser:
    """Turn raw upstream bytes into text tokens.

    Feed byte chunks as they arrive with :meth:`feed`; call :meth:`finish`
    once the upstream closes to flush a trailing event that lacked its
    terminating blank line. Both return the tokens completed by that call,
    and pass each one to ``on_token`` when given.

    :attr:`done` turns true once the ``[DONE]`` sentinel has been read.
    """

    def __init__(self, on_token: Optional[Callable[[str], None]] = None) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._on_token = on_token
        self._finished = False
        self.done = False

    def feed(self, chunk: bytes) -> List[str]:
        if self._finished:
            raise RuntimeError("Parser already finished")
        self._buffer += self._decoder.decode(chunk)
        self._buffer = self._buffer.replace("\r\n", "\n")

        tokens: List[str] = []
        while True:
            boundary = self._buffer.find(EVENT_BOUNDARY)
            if boundary == -1:
                break
            raw_event = self._buffer[:boundary]
            self._buffer = self._buffer[boundary + len(EVENT_BOUNDARY) :]
            tokens.extend(self._extract(raw_event))
        return tokens

    def finish(self) -> List[str]:
        if self._finished:
            return []
        self._buffer += self._decoder.decode(b"", final=True)
        self._finished = True
        remainder, self._buffer = self._buffer, ""
        if not remainder.strip():
            return []
        return self._extract(remainder.replace("\r\n", "\n"))

    def _extract(self, raw_event: str) -> List[str]:
        tokens: List[str] = []
        for raw_line in raw_event.split("\n"):
            line = raw_line.strip()
            if not line.startswith(DATA_PREFIX):
                continue
            data = line[len(DATA_PREFIX) :].strip()
            if data == DONE_SENTINEL:
                self.done = True
                continue
            try:
                payload = json.loads(data)
            except ValueError:
                logger.debug("Skipping undecodable stream chunk")
                continue
            token = extract_delta(payload)
            if not token:
                continue
            if self._on_token is not None:
                self._on_token(token)
            tokens.append(token)
        return tokens


def extract_delta(payload: Any) -> str:
    """Return ``choices[0].delta.content`` from a chunk, or an empty string."""
    if not isinstance(payload, dict):
        return ""
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return ""
    delta = choices[0].get("delta")
    if not isinstance(delta, dict):
        return ""
    content = delta.get("content")
    return content if isinstance(content, str) else ""


def iter_tokens(chunks: Iterable[bytes]) -> Iterator[str]:
    """Lazily yield tokens from an iterable of byte chunks.

    Each call builds its own parser, so the sequence can be produced again
    from a fresh chunk source.
    """
    parser = UpstreamStreamParser()
    for chunk in chunks:
        if chunk:
            yield from parser.feed(chunk)
    yield from parser.finish()


class TokenAccumulator:
    """Collect streamed fragments into the final assistant message."""

    def __init__(self) -> None:
        self._parts: List[str] = []

    def add(self, token: str) -> None:
        self._parts.append(token)

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def final_message(self, fallback: str) -> str:
        """The trimmed text, or ``fallback`` when nothing but whitespace arrived."""
        return self.text.strip() or fallback
