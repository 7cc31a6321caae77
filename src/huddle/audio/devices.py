"""
Capture backend for local sound devices, built on sounddevice (PortAudio).

A loopback target is any input device that exposes system or tab output (a PulseAudio
"monitor" source, BlackHole, a WASAPI loopback device, ...). The silent primary request
opens the named device directly; the alternate request asks the user to pick one.
"""

import asyncio
import itertools
from collections import deque
from collections.abc import Awaitable, Callable
from typing import TypedDict

import numpy as np
import sounddevice as sd

from huddle.audio.types import CaptureMode, SourceKind
from huddle.logs import get_logger

DTYPE = np.float32

logger = get_logger("dev")

_track_ids = itertools.count(1)


class AudioDevice(TypedDict):
  """Type definition for sounddevice query_devices() return value."""

  name: str
  hostapi: int
  max_input_channels: int
  max_output_channels: int
  default_low_input_latency: float
  default_high_input_latency: float
  default_samplerate: float


def list_input_devices() -> list[tuple[int, AudioDevice]]:
  """Return (index, device) for every device with at least one input channel."""
  devices: list[tuple[int, AudioDevice]] = []
  for index, device in enumerate(sd.query_devices()):
    if device["max_input_channels"] > 0:
      devices.append((index, device))
  return devices


def resolve_input_device(target: str) -> int | None:
  """
  Resolve `target` to an input device index without any user interaction.

  Accepts "default", a numeric index, or an exact device name.

  :raises LookupError: When nothing matches exactly.
  """
  if target == "default":
    return None

  inputs = list_input_devices()
  if target.isdigit():
    index = int(target)
    if any(i == index for i, _ in inputs):
      return index
    raise LookupError(f"No input device with index {index}")

  for index, device in inputs:
    if device["name"] == target:
      return index
  raise LookupError(f"No input device named {target!r}")


async def console_picker(target: str, devices: list[tuple[int, AudioDevice]]) -> int:
  """Ask on the terminal which input device to use instead of `target`."""

  def prompt() -> int:
    print(f"Could not capture {target!r} directly. Pick an input device:")
    for index, device in devices:
      print(f"  [{index}] {device['name']} ({device['max_input_channels']} ch)")
    answer = input("Device index: ").strip()
    return int(answer)

  return await asyncio.to_thread(prompt)


async def no_picker(target: str, devices: list[tuple[int, AudioDevice]]) -> int:
  """Picker for runs where stdin carries commands instead of a user."""
  raise LookupError(f"Cannot pick a device for {target!r} without an interactive terminal")


class SoundDeviceTrack:
  """A sounddevice input stream exposed as an async sequence of mono blocks."""

  def __init__(
    self,
    device: int | None,
    sample_rate: int,
    channels: int,
    blocksize: int,
    label: str,
  ):
    self.id = f"{label}#{next(_track_ids)}"
    self._loop = asyncio.get_running_loop()
    self._queue: asyncio.Queue[np.ndarray | None] = asyncio.Queue()
    self._taps: list[Callable[[np.ndarray], None]] = []
    self._ended_listeners: list[Callable[[], None]] = []
    self._ended = False
    self._stream = sd.InputStream(
      device=device,
      channels=channels,
      samplerate=sample_rate,
      dtype=DTYPE,
      latency="low",
      blocksize=blocksize,
      callback=self._audio_callback,
      finished_callback=self._finished_callback,
    )
    self._stream.start()

  @property
  def ended(self) -> bool:
    return self._ended

  def _audio_callback(self, indata: np.ndarray, frames: int, time_info, status) -> None:
    """PortAudio thread: downmix to mono and hand the block to the event loop."""
    if status:
      logger.debug("Audio status", track=self.id, status=str(status))
    block = indata.mean(axis=1).astype(DTYPE) if indata.ndim > 1 else indata.astype(DTYPE)
    self._loop.call_soon_threadsafe(self._deliver, block)

  def _finished_callback(self) -> None:
    self._loop.call_soon_threadsafe(self._mark_ended)

  def _deliver(self, block: np.ndarray) -> None:
    if self._ended:
      return
    self._queue.put_nowait(block)
    for tap in self._taps:
      tap(block)

  def _mark_ended(self) -> None:
    if self._ended:
      return
    self._ended = True
    self._queue.put_nowait(None)
    for listener in self._ended_listeners:
      listener()

  async def read(self) -> np.ndarray | None:
    if self._ended and self._queue.empty():
      return None
    return await self._queue.get()

  def add_tap(self, tap: Callable[[np.ndarray], None]) -> None:
    self._taps.append(tap)

  def remove_tap(self, tap: Callable[[np.ndarray], None]) -> None:
    if tap in self._taps:
      self._taps.remove(tap)

  def add_ended_listener(self, listener: Callable[[], None]) -> None:
    self._ended_listeners.append(listener)

  def stop(self) -> None:
    if self._ended:
      return
    try:
      self._stream.stop()
      self._stream.close()
    except sd.PortAudioError:
      logger.warning("Error stopping input stream", track=self.id, exc_info=True)
    self._mark_ended()


class PlaybackAnchor:
  """Plays a captured track on the default output so the host keeps producing it."""

  def __init__(self, track: SoundDeviceTrack, sample_rate: int, gain: float):
    self._track = track
    self._gain = gain
    self._pending: deque[np.ndarray] = deque(maxlen=32)
    self._stream = sd.OutputStream(
      samplerate=sample_rate, channels=1, dtype=DTYPE, callback=self._output_callback
    )
    track.add_tap(self._pending.append)
    self._stream.start()

  def _output_callback(self, outdata: np.ndarray, frames: int, time_info, status) -> None:
    outdata.fill(0)
    written = 0
    while written < frames and self._pending:
      block = self._pending.popleft()
      take = min(frames - written, len(block))
      outdata[written : written + take, 0] = block[:take] * self._gain
      if take < len(block):
        self._pending.appendleft(block[take:])
      written += take

  def release(self) -> None:
    self._track.remove_tap(self._pending.append)
    try:
      self._stream.stop()
      self._stream.close()
    except sd.PortAudioError:
      logger.warning("Error closing playback anchor", track=self._track.id, exc_info=True)


Picker = Callable[[str, list[tuple[int, AudioDevice]]], Awaitable[int]]


class SoundDeviceBackend:
  """`CaptureBackend` over local input devices."""

  def __init__(
    self,
    sample_rate: int = 16000,
    channels: int = 1,
    block_duration: float = 0.1,
    picker: Picker = console_picker,
  ):
    self._sample_rate = sample_rate
    self._channels = channels
    self._blocksize = int(sample_rate * block_duration)
    self._picker = picker
    self._remote_callbacks: list[Callable[[SoundDeviceTrack], None]] = []

  async def request_source(
    self, target: str, mode: CaptureMode, kind: SourceKind
  ) -> SoundDeviceTrack:
    if mode is CaptureMode.PRIMARY:
      device = resolve_input_device(target)
    else:
      device = await self._picker(target, list_input_devices())

    logger.info("Opening input device", target=target, device=device, mode=mode, kind=kind)
    return SoundDeviceTrack(
      device=device,
      sample_rate=self._sample_rate,
      channels=self._channels,
      blocksize=self._blocksize,
      label=kind.value,
    )

  def anchor(self, track: SoundDeviceTrack, gain: float) -> PlaybackAnchor:
    return PlaybackAnchor(track, self._sample_rate, gain)

  def subscribe_remote_tracks(
    self, callback: Callable[[SoundDeviceTrack], None]
  ) -> Callable[[], None]:
    self._remote_callbacks.append(callback)

    def unsubscribe() -> None:
      if callback in self._remote_callbacks:
        self._remote_callbacks.remove(callback)

    return unsubscribe

  def add_remote_track(self, track: SoundDeviceTrack) -> None:
    """Announce a remote peer track (e.g. bridged from a conferencing client)."""
    for callback in list(self._remote_callbacks):
      callback(track)
