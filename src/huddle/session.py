"""
One recording, from source acquisition to backend finalize.

`StreamingSession` walks INIT -> OPENING_TRANSPORT -> ACTIVE -> FINALIZING -> CLOSED.
While ACTIVE it runs on either the low-latency socket or buffered HTTP; the switch only
ever goes from the socket to HTTP, on a failed handshake or a lost connection.
"""

import asyncio
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol

from pydantic import BaseModel

from huddle.audio.mixer import AudioMixer, MixedSignal, MixerBus
from huddle.audio.recorder import Chunk, ChunkRecorder
from huddle.audio.sources import AudioSourceHandle, AudioSourceManager, SourceSpec
from huddle.audio.types import CaptureMode, SourceKind, TrackState
from huddle.audio.volume import VolumeMonitor, VolumeSubscription
from huddle.config import HuddleConfig
from huddle.errors import AcquisitionError, FinalizeError, HuddleError, RecordingError
from huddle.events import EventSink, RecordingErrorEvent
from huddle.logs import get_logger
from huddle.transport.base import ChannelState, SessionMeta, TransportChannel, TransportKind

ALL_SOURCES_ENDED = "All audio sources ended"


class SessionState(StrEnum):
  INIT = "init"
  OPENING_TRANSPORT = "opening_transport"
  ACTIVE = "active"
  FINALIZING = "finalizing"
  CLOSED = "closed"


@dataclass(frozen=True)
class SessionParams:
  """What a start request asks for."""

  source_id: str
  meeting_name: str = ""
  mode: CaptureMode = CaptureMode.PRIMARY
  kind: SourceKind = SourceKind.LOOPBACK
  include_microphone: bool = True


class StopResult(BaseModel):
  """Outcome of stopping a session. Repeated stops return an equal result."""

  session_id: str | None
  success: bool = True
  error: str | None = None
  chunks_produced: int = 0
  transport: TransportKind | None = None


class Finalizer(Protocol):
  async def notify(self, session_id: str) -> None: ...


class ChannelProvider(Protocol):
  """Builds transport channels for a session (see `huddle.transport.ChannelFactory`)."""

  def create(self, kind: TransportKind) -> TransportChannel: ...

  def finalizer(self) -> Finalizer: ...


def new_session_id() -> str:
  return f"live_{int(time.time() * 1000)}_{secrets.token_hex(3)}"


class StreamingSession:
  """
  State machine for one recording.

  A session is started once and finalized at most once. `stop()` may be called any number
  of times, from any state; every call returns the same `StopResult`. A stop that
  arrives while the session is still starting waits for the start to settle first.
  """

  def __init__(
    self,
    params: SessionParams,
    *,
    config: HuddleConfig,
    sources: AudioSourceManager,
    mixer: AudioMixer,
    volume: VolumeMonitor,
    channels: ChannelProvider,
    events: EventSink,
    session_id: str | None = None,
    on_closed: Callable[["StreamingSession"], None] | None = None,
  ):
    self.id = session_id or new_session_id()
    self.params = params
    self.config = config
    self.state = SessionState.INIT
    self.started_at: float | None = None
    self.capture_mode: CaptureMode | None = None
    self.handles: list[AudioSourceHandle] = []
    self.transport: TransportChannel | None = None
    self.transport_history: list[TransportKind] = []
    self.recorder: ChunkRecorder | None = None
    self.bus: MixerBus | None = None
    self.error: str | None = None
    self.start_error: HuddleError | None = None
    """The exception `start()` raised, kept for callers waiting on the same start."""
    self.result: StopResult | None = None

    self._sources = sources
    self._mixer = mixer
    self._volume = volume
    self._channels = channels
    self._events = events
    self._on_closed = on_closed
    self._signal: MixedSignal | None = None
    self._volume_subscription: VolumeSubscription | None = None
    self._unwatch_remote: Callable[[], None] | None = None
    self._downgrade_task: asyncio.Task | None = None
    self._stop_task: asyncio.Task | None = None
    self._settled = asyncio.Event()
    self.logger = get_logger("sess", session_id=self.id)

  @property
  def meeting_name(self) -> str:
    return self.params.meeting_name

  @property
  def transport_kind(self) -> TransportKind | None:
    return self.transport.kind if self.transport is not None else None

  @property
  def transport_state(self) -> ChannelState | None:
    return self.transport.state if self.transport is not None else None

  @property
  def chunk_sequence(self) -> int:
    """Sequence number of the last chunk produced, 0 before the first one."""
    return self.recorder.chunks_produced if self.recorder is not None else 0

  @property
  def stop_requested(self) -> bool:
    return self._stop_task is not None

  async def wait_settled(self) -> None:
    """Wait until `start()` has either reached ACTIVE or failed."""
    await self._settled.wait()

  async def start(self) -> None:
    """
    Acquire sources, open a transport and start recording.

    :raises AcquisitionError: When no usable source was obtained. The session is CLOSED.
    :raises RecordingError: When the encoder could not start. The session is finalized.
    """
    if self.state is not SessionState.INIT:
      raise RuntimeError(f"Session {self.id} already started")

    try:
      await self._start()
    except AcquisitionError as e:
      self.start_error = e
      self._report_error(str(e))
      self.result = StopResult(session_id=self.id, success=False, error=str(e))
      self._set_state(SessionState.CLOSED)
      self._settled.set()
      self._notify_closed()
      raise
    except RecordingError as e:
      self.start_error = e
      self._report_error(str(e))
      self._settled.set()
      await self.stop()
      raise
    finally:
      self._settled.set()

  async def _start(self) -> None:
    spec = SourceSpec(target=self.params.source_id, kind=self.params.kind, mode=self.params.mode)
    acquired = await self._sources.acquire_session_sources(spec, self.params.include_microphone)
    self.started_at = time.time()
    self.capture_mode = acquired.capture_mode

    self.bus = self._mixer.create_bus(self.id)
    self._signal = self._mixer.output(self.bus)
    for handle in acquired.handles:
      self._attach(handle)
    if self.stop_requested:
      return

    self._set_state(SessionState.OPENING_TRANSPORT)
    meta = SessionMeta(session_id=self.id, meeting_name=self.params.meeting_name)
    channel = await self._open_transport(meta)
    if self.stop_requested:
      return

    self._set_state(SessionState.ACTIVE)
    self.recorder = ChunkRecorder(
      self.config.recorder,
      self.config.capture.sample_rate,
      on_chunk=self._on_chunk,
      on_error=self._on_recording_error,
    )
    self.recorder.start(self._signal, self._cadence_for(channel.kind))
    self.bus.start()
    self._volume_subscription = self._volume.start(self.id, self._mixer.tap(self.bus))
    self._unwatch_remote = self._sources.watch_remote_tracks(self._on_remote_track)

    self.logger.info(
      "Session active",
      source_id=self.params.source_id,
      capture_mode=self.capture_mode,
      transport=channel.kind,
      sources=[h.kind.value for h in self.handles],
    )

  async def _open_transport(self, meta: SessionMeta) -> TransportChannel:
    channel = self._channels.create(TransportKind.LOW_LATENCY_SOCKET)
    self.transport_history.append(channel.kind)
    if await channel.open(meta):
      self._install_transport(channel)
      return channel

    self.logger.info(
      "Low-latency transport unavailable, using buffered uploads",
      reason=channel.open_error.reason if channel.open_error else None,
    )
    buffered = self._channels.create(TransportKind.BUFFERED_HTTP)
    self.transport_history.append(buffered.kind)
    if not await buffered.open(meta):
      raise RecordingError(f"No transport could be opened: {buffered.open_error}")
    self._install_transport(buffered)
    return buffered

  def _install_transport(self, channel: TransportChannel) -> None:
    channel.on_lost = self._on_transport_lost
    self.transport = channel

  def _cadence_for(self, kind: TransportKind) -> float:
    if kind is TransportKind.LOW_LATENCY_SOCKET:
      return self.config.recorder.low_latency_cadence
    return self.config.recorder.buffered_cadence

  def _attach(self, handle: AudioSourceHandle) -> None:
    assert self.bus is not None
    self.handles.append(handle)
    self._mixer.connect(self.bus, handle)
    handle.on_ended(self._on_handle_ended)

  def _on_chunk(self, chunk: Chunk) -> None:
    if self.transport is None:
      self.logger.warning("Chunk produced without a transport", sequence_no=chunk.sequence_no)
      return
    self.transport.send(chunk)

  def _on_recording_error(self, error: RecordingError) -> None:
    self._report_error(str(error))
    self._request_stop()

  def _on_handle_ended(self, handle: AudioSourceHandle) -> None:
    if self.state in (SessionState.FINALIZING, SessionState.CLOSED) or self.stop_requested:
      return

    if self.bus is not None:
      self._mixer.disconnect(self.bus, handle)
    self._sources.release(handle)
    self.logger.info("Source ended", handle=handle.id, kind=handle.kind)

    if not any(h.track_state is TrackState.LIVE for h in self.handles):
      self._report_error(ALL_SOURCES_ENDED)
      self._request_stop()

  def _on_remote_track(self, handle: AudioSourceHandle) -> None:
    if self.state is not SessionState.ACTIVE or self.stop_requested:
      return
    self._attach(handle)

  def _on_transport_lost(self, channel: TransportChannel) -> None:
    if channel is not self.transport or self.state is not SessionState.ACTIVE:
      return
    if channel.kind is not TransportKind.LOW_LATENCY_SOCKET or self._downgrade_task is not None:
      return
    self._downgrade_task = asyncio.create_task(self._downgrade(channel), name="downgrade")

  async def _downgrade(self, lost: TransportChannel) -> None:
    """Replace a lost socket with buffered uploads for the rest of the session."""
    assert self.recorder is not None
    meta = SessionMeta(session_id=self.id, meeting_name=self.params.meeting_name)
    buffered = self._channels.create(TransportKind.BUFFERED_HTTP)
    self.transport_history.append(buffered.kind)
    if not await buffered.open(meta):
      self._report_error(f"Transport lost and buffered fallback failed: {buffered.open_error}")
      self._request_stop()
      return

    self._install_transport(buffered)
    self.recorder.set_cadence(self._cadence_for(buffered.kind))
    self.logger.info("Downgraded to buffered uploads", discarded=lost.discarded)
    await lost.close(0)

  def _report_error(self, message: str) -> None:
    if self.error is None:
      self.error = message
    self.logger.error("Session error", error=message)
    self._events.emit(RecordingErrorEvent(error=message))

  def _request_stop(self) -> None:
    if self._stop_task is None:
      self._stop_task = asyncio.create_task(self._finalize(), name=f"finalize_{self.id}")

  async def stop(self) -> StopResult:
    """Finalize the session, or return the result of the finalize already under way."""
    if self._stop_task is None and self.result is not None:
      return self.result
    self._request_stop()
    assert self._stop_task is not None
    return await asyncio.shield(self._stop_task)

  async def _finalize(self) -> StopResult:
    await self._settled.wait()
    if self.state is SessionState.CLOSED and self.result is not None:
      return self.result

    self._set_state(SessionState.FINALIZING)

    if self._unwatch_remote is not None:
      self._unwatch_remote()
    if self._volume_subscription is not None:
      self._volume_subscription.cancel()
    if self._downgrade_task is not None and not self._downgrade_task.done():
      self._downgrade_task.cancel()
      await asyncio.gather(self._downgrade_task, return_exceptions=True)

    if self.bus is not None:
      await self.bus.close()
    if self.recorder is not None:
      await self.recorder.stop()

    for handle in self.handles:
      self._sources.release(handle)

    transport = self.transport
    if transport is not None:
      await transport.close(self.config.transport.close_grace)
      try:
        await self._channels.finalizer().notify(self.id)
      except FinalizeError as e:
        self.logger.warning("Finalize notification failed", error=str(e))

    self.result = StopResult(
      session_id=self.id,
      success=True,
      error=self.error,
      chunks_produced=self.chunk_sequence,
      transport=self.transport_kind,
    )
    self._set_state(SessionState.CLOSED)
    self._notify_closed()
    return self.result

  def _notify_closed(self) -> None:
    if self._on_closed is not None:
      self._on_closed(self)

  def _set_state(self, state: SessionState) -> None:
    self.logger.debug("Session state", previous=self.state, state=state)
    self.state = state
