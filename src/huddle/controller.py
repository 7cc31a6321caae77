"""Command handling for whoever drives recording.

`RecordingController` wires the capture components together and turns inbound commands
into registry calls. `CommandChannel` exposes it as a JSON-lines protocol: commands are
read one per line, while events and command results are written one per line.
"""

import asyncio
import sys
from collections.abc import AsyncIterator
from typing import Literal, TextIO

from pydantic import BaseModel, Field, ValidationError

from huddle.audio.mixer import AudioMixer
from huddle.audio.sources import AudioSourceManager, CaptureBackend
from huddle.audio.volume import VolumeMonitor
from huddle.config import HuddleConfig
from huddle.errors import AcquisitionError, RecordingError
from huddle.events import Command, Event, EventBus, StartRecording, StopRecording
from huddle.logs import get_logger
from huddle.registry import SessionRegistry
from huddle.relay import TranscriptRelay
from huddle.session import ChannelProvider, SessionParams, StopResult, StreamingSession
from huddle.transport.base import TokenProvider
from huddle.transport.factory import ChannelFactory
from huddle.wire import deserialize_command, serialize_event


class CommandResult(BaseModel):
  """Structured reply to one command."""

  type: Literal["COMMAND_RESULT"] = "COMMAND_RESULT"
  command: str
  success: bool
  session_id: str | None = None
  error: str | None = None
  stopped: list[StopResult] = Field(default_factory=list)


class RecordingController:
  """Entry point for START_RECORDING / STOP_RECORDING commands.

  :param registry: Session table shared by every command
  :type registry: SessionRegistry
  :param events: Bus the UI listens on
  :type events: EventBus
  :param config: Configuration the sessions were built from
  :type config: HuddleConfig
  """

  def __init__(self, registry: SessionRegistry, events: EventBus, config: HuddleConfig) -> None:
    self.registry = registry
    self.events = events
    self.config = config
    self.logger = get_logger("ctl")

  @classmethod
  def create(
    cls,
    config: HuddleConfig,
    backend: CaptureBackend,
    events: EventBus | None = None,
    token_provider: TokenProvider | None = None,
    channels: ChannelProvider | None = None,
  ) -> "RecordingController":
    """Create a controller with every component wired for `backend`.

    All sessions share one source manager, one mixer, one volume monitor and one relay.

    :param config: Validated configuration
    :type config: HuddleConfig
    :param backend: Host capture subsystem
    :type backend: CaptureBackend
    :param events: Bus to publish events on; a new one is created when omitted
    :type events: EventBus | None
    :param token_provider: Source of the bearer token, if the backend needs one
    :type token_provider: TokenProvider | None
    :param channels: Transport provider; built from `config` when omitted
    :type channels: ChannelProvider | None
    :return: Ready controller
    :rtype: RecordingController
    """
    events = events or EventBus()
    relay = TranscriptRelay(events)
    sources = AudioSourceManager(
      backend,
      events,
      anchor_loopback=config.capture.anchor_loopback,
      anchor_gain=config.mixer.loopback_gain,
    )
    mixer = AudioMixer(config.capture.sample_rate, config.mixer, config.volume)
    volume = VolumeMonitor(events, config.volume)
    channels = channels or ChannelFactory(config, relay, token_provider)

    def build_session(params: SessionParams, on_closed) -> StreamingSession:
      return StreamingSession(
        params,
        config=config,
        sources=sources,
        mixer=mixer,
        volume=volume,
        channels=channels,
        events=events,
        on_closed=on_closed,
      )

    return cls(SessionRegistry(build_session), events, config)

  async def handle(self, command: Command) -> CommandResult:
    """Execute one command. Fatal session errors become an unsuccessful result."""
    match command:
      case StartRecording():
        params = SessionParams(
          source_id=command.source_id,
          meeting_name=command.meeting_name,
          mode=command.mode,
          include_microphone=self.config.capture.include_microphone,
        )
        try:
          session = await self.registry.start_if_absent(params)
        except (AcquisitionError, RecordingError) as e:
          self.logger.warning("Start failed", source_id=command.source_id, error=str(e))
          return CommandResult(command=command.type, success=False, error=str(e))
        return CommandResult(command=command.type, success=True, session_id=session.id)

      case StopRecording():
        results = await self.registry.stop_all()
        errors = [r.error for r in results if r.error]
        return CommandResult(
          command=command.type,
          success=all(r.success for r in results),
          error="; ".join(errors) or None,
          stopped=results,
        )

      case _:
        raise TypeError(f"Unsupported command: {type(command).__name__}")

  async def shutdown(self) -> None:
    await self.registry.stop_all()


async def stdin_lines() -> AsyncIterator[str]:
  """Lines of standard input, read without blocking the event loop."""
  while True:
    line = await asyncio.to_thread(sys.stdin.readline)
    if not line:
      return
    yield line


class CommandChannel:
  """JSON-lines front end for a controller."""

  def __init__(self, controller: RecordingController, output: TextIO = sys.stdout) -> None:
    self._controller = controller
    self._output = output
    self._pending: set[asyncio.Task] = set()
    self.logger = get_logger("cmd")

  def _write(self, line: str) -> None:
    self._output.write(line + "\n")
    self._output.flush()

  def _on_event(self, event: Event) -> None:
    self._write(serialize_event(event))

  async def run(self, lines: AsyncIterator[str]) -> None:
    """Serve commands until `lines` is exhausted, then stop every session.

    Commands run concurrently, so a stop is not held up by a start still opening its
    transport.
    """
    unsubscribe = self._controller.events.subscribe(self._on_event)
    try:
      async for line in lines:
        if not line.strip():
          continue
        task = asyncio.create_task(self._dispatch(line))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

      if self._pending:
        await asyncio.gather(*self._pending)
      await self._controller.shutdown()
    finally:
      unsubscribe()

  async def _dispatch(self, line: str) -> None:
    try:
      command = deserialize_command(line)
    except ValidationError as e:
      self.logger.warning("Invalid command", line=line.strip(), error=str(e))
      self._write(
        CommandResult(command="INVALID", success=False, error=str(e)).model_dump_json()
      )
      return

    result = await self._controller.handle(command)
    self._write(result.model_dump_json())
