"""
Frames and payloads exchanged with the transcription backend.

The websocket carries one JSON `config` frame upward, then raw audio; the only inbound
frame interpreted is `transcript`. Buffered uploads send `ProcessingParameters` as a JSON
form field and may get a `QuickTranscriptionResponse` back.
"""

from typing import Literal

from pydantic import BaseModel


class ConfigPayload(BaseModel):
  session_id: str
  meeting_name: str


class ConfigFrame(BaseModel):
  """First frame on a freshly opened websocket."""

  type: Literal["config"] = "config"
  payload: ConfigPayload


class TranscriptFrame(BaseModel):
  """Transcript text pushed by the backend over the websocket."""

  type: Literal["transcript"] = "transcript"
  text: str


class ProcessingParameters(BaseModel):
  """Fixed processing parameters sent with each buffered upload."""

  model: str
  diarize: bool
  vad_onset: float
  vad_offset: float


class TranscriptBody(BaseModel):
  text: str | None = None


class QuickTranscriptionResponse(BaseModel):
  """Response body of a buffered upload. Every field is optional."""

  transcript: TranscriptBody | None = None

  @property
  def text(self) -> str | None:
    if self.transcript is None:
      return None
    return self.transcript.text
