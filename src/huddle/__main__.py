"""Main entry point for the huddle meeting capture tool."""

import asyncio
import signal
import sys

import sounddevice as sd
from clypi import Command, arg

from huddle.audio.devices import (
  AudioDevice,
  Picker,
  SoundDeviceBackend,
  console_picker,
  list_input_devices,
  no_picker,
)
from huddle.audio.types import CaptureMode
from huddle.config import HuddleConfig, load_config, token_from_env
from huddle.controller import CommandChannel, RecordingController, stdin_lines
from huddle.events import (
  Event,
  EventBus,
  RecordingErrorEvent,
  RecordingWarningEvent,
  StartRecording,
  StopRecording,
  TranscriptUpdate,
)
from huddle.logs import get_logger, setup_logging_from_env


def parse_mode(value: str | list[str]) -> CaptureMode:
  """Parse the capture mode argument (primary or alternate)."""
  assert isinstance(value, str), "Mode must be a string"

  try:
    return CaptureMode(value.strip().lower())
  except ValueError:
    choices = ", ".join(m.value for m in CaptureMode)
    raise ValueError(f"Invalid mode {value!r}: must be one of {choices}")


def build_backend(config: HuddleConfig, picker: Picker = console_picker) -> SoundDeviceBackend:
  return SoundDeviceBackend(
    sample_rate=config.capture.sample_rate,
    channels=config.capture.channels,
    block_duration=config.capture.block_duration,
    picker=picker,
  )


class Devices(Command):
  """List audio input devices usable as a --source."""

  async def run(self) -> None:
    devices: list[tuple[int, AudioDevice]] = list_input_devices()
    if not devices:
      print("No input devices found.")
      return

    default_input = sd.default.device[0] if isinstance(sd.default.device, tuple) else None
    print("Audio Input Devices (for use with --source):")
    print("=" * 55)
    for device_id, device in devices:
      default_marker = " [DEFAULT INPUT]" if device_id == default_input else ""
      print(f"Device: {device['name']}{default_marker}")
      print(f"  ID: {device_id}")
      print(f"  Input channels: {device['max_input_channels']}")
      print(f"  Default sample rate: {device['default_samplerate']:.0f} Hz")
      print()


class Record(Command):
  """Record one meeting until interrupted.

  Captures the given source (plus the default microphone), streams it to the
  transcription backend and prints transcript text as it arrives.
  """

  source: str = arg(default="default", help="Input device to capture (name, index or default)")
  meeting: str = arg(default="", help="Meeting name sent to the backend")
  mode: CaptureMode = arg(default=CaptureMode.PRIMARY, parser=parse_mode)
  no_microphone: bool = arg(default=False, help="Do not mix in the default microphone")
  config: str = arg(default="", help="Path to a YAML configuration file")

  def __init__(self, **kwargs):
    super().__init__(**kwargs)
    self.logger = get_logger("cli")

  def _print_event(self, event: Event) -> None:
    match event:
      case TranscriptUpdate(text=text):
        print(text, flush=True)
      case RecordingWarningEvent(error=error):
        self.logger.warning("Recording warning", error=error)
      case RecordingErrorEvent(error=error):
        self.logger.error("Recording error", error=error)

  async def run(self) -> None:
    config = load_config(self.config or None)
    if self.no_microphone:
      config.capture = config.capture.model_copy(update={"include_microphone": False})

    events = EventBus()
    events.subscribe(self._print_event)
    controller = RecordingController.create(
      config, build_backend(config), events, token_provider=token_from_env
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def signal_handler(signum, _frame):
      self.logger.info("Received shutdown signal", signal=signum)
      loop.call_soon_threadsafe(stop_event.set)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    result = await controller.handle(
      StartRecording(source_id=self.source, meeting_name=self.meeting, mode=self.mode)
    )
    if not result.success:
      self.logger.error("Could not start recording", error=result.error)
      sys.exit(1)

    self.logger.info("Recording", session_id=result.session_id, source=self.source)
    await stop_event.wait()

    stopped = await controller.handle(StopRecording())
    for stop_result in stopped.stopped:
      self.logger.info(
        "Recording stopped",
        session_id=stop_result.session_id,
        chunks=stop_result.chunks_produced,
        transport=stop_result.transport,
      )


class Serve(Command):
  """Take JSON-line commands on stdin and write events and results to stdout."""

  config: str = arg(default="", help="Path to a YAML configuration file")

  async def run(self) -> None:
    config = load_config(self.config or None)
    controller = RecordingController.create(
      config, build_backend(config, picker=no_picker), token_provider=token_from_env
    )
    await CommandChannel(controller, sys.stdout).run(stdin_lines())


class Huddle(Command):
  """Huddle - meeting audio capture for live transcription."""

  subcommand: Record | Serve | Devices


def main() -> None:
  setup_logging_from_env()
  logger = get_logger("main")

  try:
    cli = Huddle.parse()
    cli.start()
  except KeyboardInterrupt:
    logger.info("Received interrupt signal, shutting down...")
    sys.exit(0)
  except Exception:
    logger.exception("Fatal error")
    sys.exit(1)


if __name__ == "__main__":
  main()
