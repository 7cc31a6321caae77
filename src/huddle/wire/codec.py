"""
Codec for websocket frames, upward events and inbound commands.

Hides the Pydantic discriminated-union plumbing behind plain serialize/deserialize
functions.
"""

from typing import TypeAlias

from pydantic import BaseModel, Field, TypeAdapter

from huddle.events import (
  Command,
  Event,
  RecordingErrorEvent,
  RecordingWarningEvent,
  StartRecording,
  StopRecording,
  TranscriptUpdate,
  VolumeUpdate,
)

from .frames import ConfigFrame, TranscriptFrame

Frame: TypeAlias = ConfigFrame | TranscriptFrame


class _FrameCodec(BaseModel):
  """Wrapper used to deserialize the discriminated union of frame types."""

  frame: Frame = Field(discriminator="type")


class _EventCodec(BaseModel):
  event: VolumeUpdate | TranscriptUpdate | RecordingWarningEvent | RecordingErrorEvent = Field(
    discriminator="type"
  )


class _CommandCodec(BaseModel):
  command: StartRecording | StopRecording = Field(discriminator="type")


def serialize_frame(frame: Frame) -> str:
  """Serialize a websocket frame to a JSON string."""
  adapter = TypeAdapter(type(frame))
  return adapter.dump_json(frame).decode("utf-8")


def deserialize_frame(json_str: str | bytes) -> Frame:
  """
  Deserialize a JSON websocket frame.

  :raises pydantic.ValidationError: When the JSON is malformed or the frame type unknown.
  """
  if isinstance(json_str, bytes):
    json_str = json_str.decode("utf-8")
  return _FrameCodec.model_validate_json(f'{{"frame": {json_str}}}').frame


def serialize_event(event: Event) -> str:
  return event.model_dump_json()


def deserialize_event(json_str: str) -> Event:
  return _EventCodec.model_validate_json(f'{{"event": {json_str}}}').event


def serialize_command(command: Command) -> str:
  return command.model_dump_json(by_alias=True)


def deserialize_command(json_str: str) -> Command:
  """
  Deserialize an inbound command, accepting camelCase or snake_case field names.

  :raises pydantic.ValidationError: When the JSON is malformed or the command unknown.
  """
  return _CommandCodec.model_validate_json(f'{{"command": {json_str}}}').command
