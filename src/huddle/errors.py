"""
Error taxonomy for capture sessions.

Only `AcquisitionError` and `RecordingError` end a session. The others are absorbed
where they happen and logged.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
  from huddle.transport.base import TransportKind


class HuddleError(Exception):
  """Base class for all huddle errors."""


class AcquisitionError(HuddleError):
  """No usable audio source could be obtained, even after the picker fallback."""


class TransportOpenError(HuddleError):
  """A transport failed its handshake or timed out while opening."""

  def __init__(self, kind: "TransportKind", reason: str):
    super().__init__(f"{kind} failed to open: {reason}")
    self.kind = kind
    self.reason = reason


class ChunkDeliveryError(HuddleError):
  """A single chunk could not be sent. The chunk is dropped and the session continues."""

  def __init__(self, sequence_no: int, reason: str):
    super().__init__(f"chunk {sequence_no} not delivered: {reason}")
    self.sequence_no = sequence_no
    self.reason = reason


class RecordingError(HuddleError):
  """The encoding pipeline failed to start or restart."""


class FinalizeError(HuddleError):
  """The backend could not be told that a session ended."""
