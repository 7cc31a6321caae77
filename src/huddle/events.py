"""
Events published to the UI and commands consumed from it.

Events travel upward (volume levels, transcript text, warnings and errors); commands
arrive from whoever drives recording (a popup, a CLI, a JSON-lines pipe).
"""

from collections.abc import Callable
from typing import Literal, Protocol, TypeAlias

from pydantic import BaseModel, ConfigDict, Field

from huddle.audio.types import CaptureMode
from huddle.logs import get_logger

logger = get_logger("evt")


class VolumeUpdate(BaseModel):
  """Level meter sample of the mixed signal, one byte (0..255) per frequency bucket."""

  type: Literal["VOLUME_UPDATE"] = "VOLUME_UPDATE"
  volumes: list[int] = Field(description="Per-bucket levels in 0..255")


class TranscriptUpdate(BaseModel):
  """A transcript fragment received from the backend."""

  type: Literal["TRANSCRIPT_UPDATE"] = "TRANSCRIPT_UPDATE"
  text: str


class RecordingWarningEvent(BaseModel):
  """Something degraded, but the recording goes on (e.g. no microphone)."""

  type: Literal["RECORDING_WARNING"] = "RECORDING_WARNING"
  error: str


class RecordingErrorEvent(BaseModel):
  """The recording could not start or had to stop."""

  type: Literal["RECORDING_ERROR"] = "RECORDING_ERROR"
  error: str


Event: TypeAlias = VolumeUpdate | TranscriptUpdate | RecordingWarningEvent | RecordingErrorEvent


class StartRecording(BaseModel):
  """Start capturing `source_id` into a new session, unless one is already running."""

  model_config = ConfigDict(populate_by_name=True)

  type: Literal["START_RECORDING"] = "START_RECORDING"
  source_id: str = Field(alias="sourceId", min_length=1)
  meeting_name: str = Field(default="", alias="meetingName")
  mode: CaptureMode = CaptureMode.PRIMARY


class StopRecording(BaseModel):
  """Stop every active session."""

  type: Literal["STOP_RECORDING"] = "STOP_RECORDING"


Command: TypeAlias = StartRecording | StopRecording


class EventSink(Protocol):
  """Anything that accepts upward events."""

  def emit(self, event: Event) -> None: ...


EventListener = Callable[[Event], None]


class EventBus:
  """Fans events out to listeners in registration order.

  A failing listener is logged and skipped; it never breaks the emitter.
  """

  def __init__(self) -> None:
    self._listeners: list[EventListener] = []

  def subscribe(self, listener: EventListener) -> Callable[[], None]:
    self._listeners.append(listener)

    def unsubscribe() -> None:
      if listener in self._listeners:
        self._listeners.remove(listener)

    return unsubscribe

  def emit(self, event: Event) -> None:
    for listener in list(self._listeners):
      try:
        listener(event)
      except Exception:
        logger.warning("Event listener failed", event_type=event.type, exc_info=True)
