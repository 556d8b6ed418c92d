import json

import pytest

from wpsandbox.services.errors import ProtocolError, StartupError
from wpsandbox.services.progress import (
    ProgressChannel,
    ProgressEvent,
    decode_record,
    encode_event,
    stream_provisioning,
)


class ScriptedRun:
    def __init__(self, sink, events, error=None):
        self._sink = sink
        self._events = events
        self._error = error

    def run(self):
        for event in self._events:
            self._sink(event)
        if self._error is not None:
            raise self._error


def test_encode_event_is_one_compact_line() -> None:
    event = ProgressEvent(action="processing", step=2, total_steps=8, text="Installed PHP")

    encoded = encode_event(event)

    assert encoded == b'{"action":"processing","step":2,"totalSteps":8,"text":"Installed PHP"}\n'
    assert encoded.count(b"\n") == 1


def test_ready_record_carries_sandbox_url_and_keeps_non_ascii() -> None:
    event = ProgressEvent(action="ready", step=8, total_steps=8, text="Sandbox ready! ✅", sandbox_url="http://h:1")

    record = json.loads(encode_event(event).decode("utf-8"))

    assert record["sandboxUrl"] == "http://h:1"
    assert "✅".encode("utf-8") in encode_event(event)
    assert decode_record(encode_event(event).decode("utf-8")) == event


def test_decode_record_rejects_invalid_json() -> None:
    with pytest.raises(ProtocolError, match="not valid JSON"):
        decode_record("{not json")


@pytest.mark.parametrize(
    "record",
    [
        {"step": 1, "totalSteps": 8, "text": "x"},
        {"action": "processing", "step": "1", "totalSteps": 8, "text": "x"},
        {"action": "processing", "step": -1, "totalSteps": 8, "text": "x"},
        ["processing", 1, 8, "x"],
        {"action": "ready", "step": 8, "totalSteps": 8, "text": "Sandbox ready"},
        {"action": "ready", "step": 8, "totalSteps": 8, "text": "Sandbox ready", "sandboxUrl": ""},
    ],
)
def test_from_record_rejects_records_outside_the_schema(record) -> None:
    with pytest.raises(ProtocolError):
        ProgressEvent.from_record(record)


def test_terminal_actions() -> None:
    assert ProgressEvent(action="ready", step=8, total_steps=8, text="").terminal
    assert ProgressEvent(action="error", step=3, total_steps=8, text="").terminal
    assert not ProgressEvent(action="sandbox-create", step=1, total_steps=8, text="").terminal


def test_channel_yields_appended_records_until_closed() -> None:
    channel = ProgressChannel()
    first = ProgressEvent(action="sandbox-create", step=1, total_steps=8, text="Sandbox created")
    channel.append(first)
    channel.close()

    assert list(channel) == [encode_event(first)]
    assert channel.appended == 1
    assert channel.last_event == first


def test_channel_refuses_append_after_close_and_double_close() -> None:
    channel = ProgressChannel()
    channel.close()

    with pytest.raises(RuntimeError):
        channel.append(ProgressEvent(action="processing", step=1, total_steps=8, text="late"))
    with pytest.raises(RuntimeError):
        channel.close()
    assert channel.closed


def test_stream_provisioning_passes_through_successful_run() -> None:
    events = [
        ProgressEvent(action="sandbox-create", step=1, total_steps=2, text="Sandbox created"),
        ProgressEvent(action="ready", step=2, total_steps=2, text="ready", sandbox_url="http://h:1"),
    ]
    channel = ProgressChannel()

    stream_provisioning(channel, lambda sink: ScriptedRun(sink, events), total_steps=2)

    assert [decode_record(line.decode()) for line in channel] == events
    assert channel.closed


def test_failure_before_first_event_is_reported_as_step_zero() -> None:
    channel = ProgressChannel()

    def factory(sink):
        raise ValueError("SANDBOX_PORT must be an integer")

    stream_provisioning(channel, factory, total_steps=8)

    lines = list(channel)
    assert len(lines) == 1
    event = decode_record(lines[0].decode())
    assert event.action == "error"
    assert event.step == 0
    assert event.total_steps == 8
    assert "SANDBOX_PORT must be an integer" in event.text


def test_run_that_already_reported_error_gets_no_second_terminal_event() -> None:
    events = [
        ProgressEvent(action="sandbox-create", step=1, total_steps=8, text="Sandbox created"),
        ProgressEvent(action="error", step=2, total_steps=8, text="Error: startup failed: boom"),
    ]
    channel = ProgressChannel()

    stream_provisioning(
        channel, lambda sink: ScriptedRun(sink, events, error=StartupError("boom")), total_steps=8
    )

    decoded = [decode_record(line.decode()) for line in channel]
    assert decoded == events
    assert sum(1 for event in decoded if event.terminal) == 1


def test_unexpected_exception_mid_run_follows_last_step() -> None:
    events = [ProgressEvent(action="sandbox-create", step=1, total_steps=8, text="Sandbox created")]
    channel = ProgressChannel()

    stream_provisioning(
        channel, lambda sink: ScriptedRun(sink, events, error=RuntimeError("lost")), total_steps=8
    )

    decoded = [decode_record(line.decode()) for line in channel]
    assert [event.step for event in decoded] == [1, 2]
    assert decoded[-1].action == "error"
    assert decoded[-1].text == "Error: lost"
