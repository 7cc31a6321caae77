"""
Source acquisition.

The host environment decides how raw audio is obtained (a tab capture, a desktop picker,
a sound card). `CaptureBackend` is the narrow capability the core needs from it;
`AudioSourceManager` applies the fallback policy on top and wraps whatever comes back in
uniform `AudioSourceHandle`s.
"""

import itertools
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

import numpy as np

from huddle.audio.types import CaptureMode, SourceKind, TrackState
from huddle.errors import AcquisitionError
from huddle.events import EventSink, RecordingWarningEvent
from huddle.logs import get_logger

MICROPHONE_UNAVAILABLE = "Microphone not available. Recording only the primary source."


class SourceTrack(Protocol):
  """A live stream of mono float32 audio blocks produced by the host."""

  @property
  def id(self) -> str: ...

  @property
  def ended(self) -> bool: ...

  async def read(self) -> np.ndarray | None:
    """
    Wait for the next block of audio.

    :returns:
        A 1-D float32 block, or None once the track has ended.
    """
    ...

  def add_ended_listener(self, listener: Callable[[], None]) -> None:
    """Register a callback fired once when the track ends, for whatever reason."""
    ...

  def stop(self) -> None:
    """Stop the track and release the underlying device."""
    ...


class Anchor(Protocol):
  """A playback sink keeping a track alive while it is captured."""

  def release(self) -> None: ...


class CaptureBackend(Protocol):
  """Capabilities the core needs from the host capture subsystem."""

  async def request_source(self, target: str, mode: CaptureMode, kind: SourceKind) -> SourceTrack:
    """
    Obtain a track for `target`.

    With `CaptureMode.PRIMARY` the exact target is requested silently; with
    `CaptureMode.ALTERNATE` the user is asked to pick a source interactively.
    Raises any exception when the request cannot be satisfied.
    """
    ...

  def anchor(self, track: SourceTrack, gain: float) -> Anchor:
    """Play `track` into a non-interactive sink so the host does not suspend it."""
    ...

  def subscribe_remote_tracks(self, callback: Callable[[SourceTrack], None]) -> Callable[[], None]:
    """Call `callback` for every new remote peer track. Returns an unsubscribe function."""
    ...


@dataclass(frozen=True)
class SourceSpec:
  """What to capture and how to try first."""

  target: str
  kind: SourceKind = SourceKind.LOOPBACK
  mode: CaptureMode = CaptureMode.PRIMARY


_handle_ids = itertools.count(1)


@dataclass(eq=False)
class AudioSourceHandle:
  """Uniform reference to one live audio input."""

  kind: SourceKind
  track: SourceTrack
  mode: CaptureMode = CaptureMode.PRIMARY
  primary: bool = False
  """The session's main target, as opposed to a microphone or peer added alongside it."""
  owned: bool = True
  """Whether releasing the handle also stops the track."""
  id: str = field(default_factory=lambda: f"src{next(_handle_ids)}")
  anchor: Anchor | None = None
  released: bool = False
  _ended_listeners: list[Callable[["AudioSourceHandle"], None]] = field(
    default_factory=list, init=False, repr=False
  )

  def __post_init__(self) -> None:
    self.track.add_ended_listener(self._on_track_ended)

  @property
  def track_state(self) -> TrackState:
    return TrackState.ENDED if self.released or self.track.ended else TrackState.LIVE

  def on_ended(self, listener: Callable[["AudioSourceHandle"], None]) -> None:
    self._ended_listeners.append(listener)

  def _on_track_ended(self) -> None:
    if self.anchor is not None:
      self.anchor.release()
      self.anchor = None
    for listener in list(self._ended_listeners):
      listener(self)


@dataclass
class AcquiredSources:
  """Result of acquiring every source of a session."""

  handles: list[AudioSourceHandle]
  capture_mode: CaptureMode
  warnings: list[str] = field(default_factory=list)

  @property
  def primary(self) -> AudioSourceHandle:
    return self.handles[0]


class AudioSourceManager:
  """
  Acquires audio sources and owns the capture fallback policy.

  The preferred path is a silent capture of the exact target. If that fails, the
  interactive picker is tried and the alternate mode is recorded on the handle. The
  microphone is best effort: failing to get it produces a warning event, not an error.
  """

  def __init__(
    self,
    backend: CaptureBackend,
    events: EventSink | None = None,
    anchor_loopback: bool = True,
    anchor_gain: float = 1.0,
  ):
    self._backend = backend
    self._events = events
    self._anchor_loopback = anchor_loopback
    self._anchor_gain = anchor_gain
    self.logger = get_logger("src")

  async def acquire(self, spec: SourceSpec) -> AudioSourceHandle:
    """
    Acquire a single source, falling back to the picker when the silent capture fails.

    :raises AcquisitionError: When neither mode produced a track.
    """
    primary_failure: Exception | None = None

    if spec.mode is CaptureMode.PRIMARY:
      try:
        track = await self._backend.request_source(spec.target, CaptureMode.PRIMARY, spec.kind)
        return self._wrap(track, spec.kind, CaptureMode.PRIMARY)
      except Exception as e:
        primary_failure = e
        self.logger.info(
          "Silent capture failed, falling back to picker", target=spec.target, reason=str(e)
        )

    try:
      track = await self._backend.request_source(spec.target, CaptureMode.ALTERNATE, spec.kind)
    except Exception as e:
      self.logger.warning("Source acquisition failed", target=spec.target, reason=str(e))
      reasons = [str(e)] if primary_failure is None else [str(primary_failure), str(e)]
      raise AcquisitionError(f"No usable source for {spec.target!r}: {'; '.join(reasons)}") from e

    return self._wrap(track, spec.kind, CaptureMode.ALTERNATE)

  async def acquire_microphone(self, target: str = "default") -> AudioSourceHandle | None:
    """Acquire the microphone, or return None (and emit a warning) if it is unavailable."""
    try:
      track = await self._backend.request_source(
        target, CaptureMode.PRIMARY, SourceKind.MICROPHONE
      )
    except Exception as e:
      self.logger.warning("Microphone unavailable", reason=str(e))
      if self._events is not None:
        self._events.emit(RecordingWarningEvent(error=MICROPHONE_UNAVAILABLE))
      return None

    return AudioSourceHandle(kind=SourceKind.MICROPHONE, track=track)

  async def acquire_session_sources(
    self, spec: SourceSpec, include_microphone: bool = True
  ) -> AcquiredSources:
    """
    Acquire the primary source and, optionally, the microphone.

    :raises AcquisitionError: When the primary source could not be obtained.
    """
    primary = await self.acquire(spec)
    primary.primary = True
    acquired = AcquiredSources(handles=[primary], capture_mode=primary.mode)

    if include_microphone:
      microphone = await self.acquire_microphone()
      if microphone is None:
        acquired.warnings.append(MICROPHONE_UNAVAILABLE)
      else:
        acquired.handles.append(microphone)

    self.logger.info(
      "Sources acquired",
      target=spec.target,
      capture_mode=acquired.capture_mode,
      sources=[h.kind.value for h in acquired.handles],
    )
    return acquired

  def watch_remote_tracks(
    self, callback: Callable[[AudioSourceHandle], None]
  ) -> Callable[[], None]:
    """Wrap every new remote peer track in a handle and hand it to `callback`."""

    def on_track(track: SourceTrack) -> None:
      handle = AudioSourceHandle(kind=SourceKind.REMOTE_PEER, track=track, owned=False)
      self.logger.info("Remote peer track arrived", handle=handle.id, track=track.id)
      callback(handle)

    return self._backend.subscribe_remote_tracks(on_track)

  def release(self, handle: AudioSourceHandle) -> bool:
    """
    Release a handle: drop its anchor and stop the track if this manager created it.

    :returns:
        False if the handle had already been released.
    """
    if handle.released:
      return False

    handle.released = True
    if handle.anchor is not None:
      handle.anchor.release()
      handle.anchor = None
    if handle.owned and not handle.track.ended:
      handle.track.stop()

    self.logger.debug("Source released", handle=handle.id, kind=handle.kind)
    return True

  def _wrap(self, track: SourceTrack, kind: SourceKind, mode: CaptureMode) -> AudioSourceHandle:
    handle = AudioSourceHandle(kind=kind, track=track, mode=mode)
    if kind is SourceKind.LOOPBACK and self._anchor_loopback:
      try:
        handle.anchor = self._backend.anchor(track, self._anchor_gain)
      except Exception:
        self.logger.warning("Could not anchor loopback source", handle=handle.id, exc_info=True)
    return handle
