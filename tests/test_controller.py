"""Tests for command handling and the JSON-lines command channel."""

import asyncio
import io
import json

import pytest
from fakes import FakeBackend, FakeChannelFactory, fast_config

from huddle.controller import CommandChannel, RecordingController
from huddle.events import EventBus, StartRecording, StopRecording, TranscriptUpdate


def make_controller(backend: FakeBackend | None = None, config=None) -> RecordingController:
  return RecordingController.create(
    config or fast_config(),
    backend or FakeBackend(),
    channels=FakeChannelFactory(),
  )


class TestHandle:
  async def test_start(self):
    controller = make_controller()

    result = await controller.handle(StartRecording(source_id="tab-1", meeting_name="Standup"))

    assert result.success
    assert result.command == "START_RECORDING"
    assert result.session_id.startswith("live_")
    session = controller.registry.get("tab-1")
    assert session.meeting_name == "Standup"
    await controller.shutdown()

  async def test_start_failure_is_a_result(self):
    controller = make_controller(FakeBackend(fail_primary=True, fail_alternate=True))
    errors = []
    controller.events.subscribe(errors.append)

    result = await controller.handle(StartRecording(source_id="tab-1"))

    assert not result.success
    assert "No usable source" in result.error
    assert [e.type for e in errors] == ["RECORDING_ERROR"]
    assert len(controller.registry) == 0

  async def test_microphone_can_be_disabled(self):
    config = fast_config()
    config.capture.include_microphone = False
    backend = FakeBackend()
    controller = make_controller(backend, config)

    await controller.handle(StartRecording(source_id="tab-1"))

    assert len(controller.registry.get("tab-1").handles) == 1
    assert len(backend.requests) == 1
    await controller.shutdown()

  async def test_stop_stops_every_session(self):
    controller = make_controller()
    await controller.handle(StartRecording(source_id="tab-1"))
    await controller.handle(StartRecording(source_id="tab-2"))

    result = await controller.handle(StopRecording())

    assert result.success
    assert len(result.stopped) == 2
    assert len(controller.registry) == 0

  async def test_stop_when_idle(self):
    result = await make_controller().handle(StopRecording())

    assert result.success
    assert result.stopped == []

  async def test_unknown_command(self):
    with pytest.raises(TypeError):
      await make_controller().handle(object())

  def test_events_bus_is_created(self):
    controller = make_controller()

    assert isinstance(controller.events, EventBus)


async def lines_with_pause(*lines: str, pause: float = 0.2):
  for line in lines:
    yield line
    await asyncio.sleep(pause)


def written(output: io.StringIO) -> list[dict]:
  return [json.loads(line) for line in output.getvalue().splitlines()]


class TestCommandChannel:
  """Commands in, events and results out, one JSON document per line."""

  async def test_start_then_stop(self):
    controller = make_controller()
    output = io.StringIO()

    await CommandChannel(controller, output).run(
      lines_with_pause(
        '{"type": "START_RECORDING", "sourceId": "tab-1", "meetingName": "Standup"}\n',
        '{"type": "STOP_RECORDING"}\n',
      )
    )

    results = [m for m in written(output) if m["type"] == "COMMAND_RESULT"]
    assert [r["command"] for r in results] == ["START_RECORDING", "STOP_RECORDING"]
    assert all(r["success"] for r in results)
    assert results[1]["stopped"][0]["session_id"] == results[0]["session_id"]
    assert any(m["type"] == "VOLUME_UPDATE" for m in written(output))

  async def test_invalid_line_gets_an_error_result(self):
    output = io.StringIO()

    await CommandChannel(make_controller(), output).run(
      lines_with_pause("not json\n", '{"type": "PAUSE"}\n', "\n", pause=0)
    )

    results = written(output)
    assert [r["command"] for r in results] == ["INVALID", "INVALID"]
    assert not any(r["success"] for r in results)

  async def test_end_of_input_stops_sessions(self):
    controller = make_controller()
    output = io.StringIO()

    await CommandChannel(controller, output).run(
      lines_with_pause('{"type": "START_RECORDING", "source_id": "tab-1"}\n', pause=0)
    )

    assert len(controller.registry) == 0
    [result] = [m for m in written(output) if m["type"] == "COMMAND_RESULT"]
    assert result["success"]

  async def test_stops_writing_events_after_run(self):
    controller = make_controller()
    output = io.StringIO()

    await CommandChannel(controller, output).run(lines_with_pause(pause=0))
    controller.events.emit(TranscriptUpdate(text="late"))

    assert output.getvalue() == ""
