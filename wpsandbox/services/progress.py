from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import queue
import threading
from typing import Any, Callable, Iterator, Protocol

from jsonschema import ValidationError
from jsonschema import validate as jsonschema_validate

from wpsandbox.services.errors import ProtocolError

logger = logging.getLogger(__name__)

ACTION_CREATE = "sandbox-create"
ACTION_PROCESSING = "processing"
ACTION_READY = "ready"
ACTION_ERROR = "error"
TERMINAL_ACTIONS = (ACTION_READY, ACTION_ERROR)

RECORD_DELIMITER = b"\n"

RECORD_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "action": {"type": "string", "minLength": 1},
        "step": {"type": "integer", "minimum": 0},
        "totalSteps": {"type": "integer", "minimum": 0},
        "text": {"type": "string"},
        "sandboxUrl": {"type": "string"},
    },
    "required": ["action", "step", "totalSteps", "text"],
    "if": {"properties": {"action": {"const": ACTION_READY}}, "required": ["action"]},
    "then": {"required": ["sandboxUrl"], "properties": {"sandboxUrl": {"minLength": 1}}},
}


@dataclass(frozen=True)
class ProgressEvent:
    action: str
    step: int
    total_steps: int
    text: str
    sandbox_url: str | None = None

    @property
    def terminal(self) -> bool:
        return self.action in TERMINAL_ACTIONS

    def to_record(self) -> dict[str, Any]:
        record: dict[str, Any] = {
            "action": self.action,
            "step": self.step,
            "totalSteps": self.total_steps,
            "text": self.text,
        }
        if self.sandbox_url is not None:
            record["sandboxUrl"] = self.sandbox_url
        return record

    @classmethod
    def from_record(cls, record: Any) -> "ProgressEvent":
        try:
            jsonschema_validate(instance=record, schema=RECORD_SCHEMA)
        except ValidationError as exc:
            raise ProtocolError(f"Invalid progress record: {exc.message}") from exc
        return cls(
            action=record["action"],
            step=record["step"],
            total_steps=record["totalSteps"],
            text=record["text"],
            sandbox_url=record.get("sandboxUrl"),
        )


ProgressSink = Callable[[ProgressEvent], None]


def encode_event(event: ProgressEvent) -> bytes:
    return json.dumps(event.to_record(), ensure_ascii=False, separators=(",", ":")).encode("utf-8") + RECORD_DELIMITER


def decode_record(line: str) -> ProgressEvent:
    try:
        record = json.loads(line)
    except json.JSONDecodeError as exc:
        raise ProtocolError(f"Progress record is not valid JSON: {exc.msg}") from exc
    return ProgressEvent.from_record(record)


class ProgressChannel:
    """Append-only byte channel of encoded progress records, closed exactly once."""

    _CLOSED = object()

    def __init__(self) -> None:
        self._queue: queue.Queue[Any] = queue.Queue()
        self._lock = threading.Lock()
        self._closed = False
        self._appended = 0
        self._last: ProgressEvent | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def appended(self) -> int:
        return self._appended

    @property
    def last_event(self) -> ProgressEvent | None:
        return self._last

    def append(self, event: ProgressEvent) -> None:
        with self._lock:
            if self._closed:
                raise RuntimeError("Progress channel is closed")
            self._appended += 1
            self._last = event
            self._queue.put(encode_event(event))

    def close(self) -> None:
        with self._lock:
            if self._closed:
                raise RuntimeError("Progress channel already closed")
            self._closed = True
            self._queue.put(self._CLOSED)

    def __iter__(self) -> Iterator[bytes]:
        while True:
            item = self._queue.get()
            if item is self._CLOSED:
                return
            yield item


class ProvisioningRunner(Protocol):
    def run(self) -> Any: ...


def stream_provisioning(
    channel: ProgressChannel,
    run_factory: Callable[[ProgressSink], ProvisioningRunner],
    *,
    total_steps: int,
) -> None:
    """Drive one provisioning run into the channel; always leaves the channel closed."""
    try:
        run_factory(channel.append).run()
    except Exception as exc:
        last = channel.last_event
        if last is None or not last.terminal:
            # Failures before the first event are reported as step 0.
            step = last.step + 1 if last is not None else 0
            logger.warning("Provisioning failed without a terminal event at step %s: %s", step, exc)
            channel.append(
                ProgressEvent(action=ACTION_ERROR, step=step, total_steps=total_steps, text=f"Error: {exc}")
            )
        else:
            logger.info("Provisioning ended with error: %s", exc)
    finally:
        channel.close()
