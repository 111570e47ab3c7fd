"""Client wrapper for streaming chat-completions requests."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional

import requests

from .config import ChatLLMConfig
from .errors import UpstreamFailure
from .stream_parser import UpstreamStreamParser

logger = logging.getLogger(__name__)


@dataclass
class UpstreamProgress:
    """Set by :meth:`ChatLLMClient.stream_completion` once the upstream has sent everything.

    When ``finished`` is true, the tokens still pending in the generator are
    already buffered and can be drained without another network read.
    """

    finished: bool = False


class ChatLLMClient:
    """Thin wrapper around a chat-completions endpoint with streaming support."""

    def __init__(self, config: ChatLLMConfig, *, session: Optional[requests.Session] = None) -> None:
        self.config = config
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    def stream_completion(
        self, messages: List[Dict[str, str]], progress: Optional[UpstreamProgress] = None
    ) -> Iterator[str]:
        """Yield tokens from the model as they arrive.

        The request is sent on first iteration. A non-2xx answer, a response
        without a body, or a transport error raises :class:`UpstreamFailure`;
        nothing is retried. Closing the generator early closes the upstream
        connection.

        Reading stops at the ``[DONE]`` sentinel or when the body ends, and
        ``progress.finished`` is set at that point.
        """
        payload = {
            "model": self.config.model,
            "messages": messages,
            "stream": True,
        }

        logger.info("Streaming chat completion to %s using model %s", self.config.endpoint, self.config.model)
        try:
            response = self.session.post(
                self.config.endpoint,
                json=payload,
                headers=self._headers(),
                stream=True,
                timeout=self.config.request_timeout,
            )
        except requests.RequestException as exc:
            raise UpstreamFailure(f"Completion request failed: {exc}") from exc

        try:
            if not response.ok:
                # upstream bodies stay in the logs, never in client output
                logger.error(
                    "Completion request failed (%s): %s",
                    response.status_code,
                    response.text[:500],
                )
                raise UpstreamFailure(f"Completion request failed with status {response.status_code}")
            if response.raw is None:
                raise UpstreamFailure("Completion response has no body")

            parser = UpstreamStreamParser()
            count = 0
            try:
                for chunk in response.iter_content(chunk_size=None):
                    if not chunk:
                        continue
                    tokens = parser.feed(chunk)
                    if parser.done and progress is not None:
                        progress.finished = True
                    for token in tokens:
                        count += 1
                        yield token
                    if parser.done:
                        break
            except requests.RequestException as exc:
                raise UpstreamFailure(f"Completion stream interrupted: {exc}") from exc
            tokens = parser.finish()
            if progress is not None:
                progress.finished = True
            for token in tokens:
                count += 1
                yield token
            logger.debug("Upstream stream finished after %d token(s)", count)
        finally:
            response.close()
