"""
Huddle wire formats.

Frames exchanged with the transcription backend, plus the codec used for those frames
and for the event/command JSON lines exchanged with the UI.
"""

from .codec import (
  deserialize_command,
  deserialize_event,
  deserialize_frame,
  serialize_command,
  serialize_event,
  serialize_frame,
)
from .frames import (
  ConfigFrame,
  ConfigPayload,
  ProcessingParameters,
  QuickTranscriptionResponse,
  TranscriptBody,
  TranscriptFrame,
)

__all__ = [
  "ConfigFrame",
  "ConfigPayload",
  "ProcessingParameters",
  "QuickTranscriptionResponse",
  "TranscriptBody",
  "TranscriptFrame",
  "deserialize_command",
  "deserialize_event",
  "deserialize_frame",
  "serialize_command",
  "serialize_event",
  "serialize_frame",
]
