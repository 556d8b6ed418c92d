from __future__ import annotations

import codecs
import logging
from typing import Callable, Iterable, Literal

import httpx

from wpsandbox.services.progress import ACTION_ERROR, ACTION_READY, ProgressEvent, decode_record

logger = logging.getLogger(__name__)

ConsumerStatus = Literal["idle", "running", "ready", "failed"]


class StreamDecoder:
    """Incremental decoder turning arbitrary byte chunks into progress events."""

    def __init__(self, delimiter: str = "\n") -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")()
        self._delimiter = delimiter
        self._buffer = ""

    def feed(self, chunk: bytes) -> list[ProgressEvent]:
        self._buffer += self._decoder.decode(chunk)
        *complete, self._buffer = self._buffer.split(self._delimiter)
        return [decode_record(fragment) for fragment in complete if fragment.strip()]

    def close(self) -> list[ProgressEvent]:
        remainder = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        if not remainder.strip():
            return []
        return [decode_record(remainder)]


class ProgressConsumer:
    """Caller-visible state rebuilt from progress events in arrival order."""

    def __init__(self, listener: Callable[[ProgressEvent], None] | None = None) -> None:
        self._listener = listener
        self.status: ConsumerStatus = "idle"
        self.updates: list[ProgressEvent] = []
        self.progress_log: list[str] = []
        self.sandbox_url: str | None = None
        self.error: str | None = None

    @property
    def finished(self) -> bool:
        return self.status in ("ready", "failed")

    def dispatch(self, event: ProgressEvent) -> None:
        if self.finished:
            logger.warning("Ignoring %s event after terminal state %s", event.action, self.status)
            return
        self.updates.append(event)
        if event.action == ACTION_READY:
            self.status = "ready"
            self.sandbox_url = event.sandbox_url
        elif event.action == ACTION_ERROR:
            self.status = "failed"
            self.error = event.text
        else:
            self.status = "running"
            self.progress_log.append(f"[{event.step}/{event.total_steps}] {event.text}")
        if self._listener is not None:
            self._listener(event)

    def finish(self) -> None:
        if not self.finished:
            self.status = "failed"
            self.error = "stream ended before a terminal event"


def consume(chunks: Iterable[bytes], consumer: ProgressConsumer | None = None) -> ProgressConsumer:
    consumer = consumer or ProgressConsumer()
    decoder = StreamDecoder()
    for chunk in chunks:
        for event in decoder.feed(chunk):
            consumer.dispatch(event)
    for event in decoder.close():
        consumer.dispatch(event)
    consumer.finish()
    return consumer


def watch_endpoint(
    url: str,
    *,
    client: httpx.Client | None = None,
    consumer: ProgressConsumer | None = None,
    timeout: float | None = None,
) -> ProgressConsumer:
    """Consume a remote progress endpoint until it closes."""
    owned = client is None
    active = client or httpx.Client(timeout=timeout)
    try:
        logger.info("Watching progress stream at %s", url)
        with active.stream("GET", url) as response:
            response.raise_for_status()
            return consume(response.iter_bytes(), consumer)
    finally:
        if owned:
            active.close()
