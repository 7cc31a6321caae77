"""Enumerations shared by the capture components."""

from enum import StrEnum


class SourceKind(StrEnum):
  """What kind of input a source handle references."""

  LOOPBACK = "tab_or_system_loopback"
  MICROPHONE = "microphone"
  REMOTE_PEER = "remote_peer"


class CaptureMode(StrEnum):
  """How a source was (or should be) obtained.

  - PRIMARY: the exact target, requested silently with no dialog
  - ALTERNATE: whatever the user picks in an interactive picker
  """

  PRIMARY = "primary"
  ALTERNATE = "alternate"


class TrackState(StrEnum):
  LIVE = "live"
  ENDED = "ended"
