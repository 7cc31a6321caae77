"""
Summing bus for audio source handles.

Every connected handle is pumped into its own pending buffer; on each mixing tick the bus
takes one block from each input, scales it by the input gain, sums, clips and publishes
the result to its outputs and to its analysis tap. Recorder and meter therefore see the
very same samples.
"""

import asyncio
import weakref
from collections import deque
from dataclasses import dataclass, field

import numpy as np

from huddle.audio.sources import AudioSourceHandle
from huddle.audio.types import SourceKind
from huddle.config import MixerConfig, VolumeConfig
from huddle.logs import get_logger

DTYPE = np.float32


class MixedSignal:
  """One consumer's view of a bus output. Ends (read returns None) when the bus closes."""

  def __init__(self, sample_rate: int):
    self.sample_rate = sample_rate
    self._queue: asyncio.Queue[np.ndarray | None] = asyncio.Queue()
    self._ended = False

  def push(self, block: np.ndarray) -> None:
    if not self._ended:
      self._queue.put_nowait(block)

  def end(self) -> None:
    if not self._ended:
      self._ended = True
      self._queue.put_nowait(None)

  async def read(self) -> np.ndarray | None:
    return await self._queue.get()

  def drain_nowait(self) -> list[np.ndarray]:
    """Take every block already queued, without waiting."""
    blocks: list[np.ndarray] = []
    while not self._queue.empty():
      block = self._queue.get_nowait()
      if block is not None:
        blocks.append(block)
    return blocks


class MonitorTap:
  """
  Analysis view of a bus, modelled on a Web Audio AnalyserNode.

  Keeps the last `fft_size` mixed samples and turns them into byte-scaled,
  time-smoothed frequency levels.
  """

  def __init__(self, config: VolumeConfig):
    self._config = config
    self._samples = np.zeros(config.fft_size, dtype=DTYPE)
    self._window = np.blackman(config.fft_size).astype(DTYPE)
    self._smoothed = np.zeros(config.fft_size // 2, dtype=np.float64)

  def update(self, block: np.ndarray) -> None:
    size = self._config.fft_size
    if len(block) >= size:
      self._samples[:] = block[-size:]
    else:
      self._samples = np.roll(self._samples, -len(block))
      self._samples[-len(block) :] = block

  @property
  def has_signal(self) -> bool:
    return bool(np.any(self._samples))

  def byte_frequency_data(self, buckets: int | None = None) -> list[int]:
    """Levels of the lowest `buckets` frequency bins, each in 0..255."""
    config = self._config
    count = buckets or config.buckets

    spectrum = np.fft.rfft(self._samples * self._window)[: config.fft_size // 2]
    magnitude = np.abs(spectrum) / config.fft_size
    self._smoothed = config.smoothing * self._smoothed + (1.0 - config.smoothing) * magnitude

    with np.errstate(divide="ignore"):
      decibels = 20.0 * np.log10(self._smoothed[:count])
    span = config.max_decibels - config.min_decibels
    scaled = (decibels - config.min_decibels) * (255.0 / span)
    return [int(v) for v in np.clip(np.nan_to_num(scaled, neginf=0.0), 0, 255)]


@dataclass(eq=False)
class _BusInput:
  handle_ref: "weakref.ReferenceType[AudioSourceHandle]"
  handle_id: str
  gain: float
  max_frames: int
  pending: deque[np.ndarray] = field(default_factory=deque)
  pending_frames: int = 0
  pump: asyncio.Task | None = None

  def push(self, block: np.ndarray) -> None:
    self.pending.append(block * self.gain if self.gain != 1.0 else block)
    self.pending_frames += len(block)
    while self.pending_frames > self.max_frames and len(self.pending) > 1:
      self.pending_frames -= len(self.pending.popleft())

  def take(self, frames: int) -> np.ndarray:
    """Up to `frames` samples, zero padded when the input has fallen behind."""
    out = np.zeros(frames, dtype=DTYPE)
    written = 0
    while written < frames and self.pending:
      block = self.pending.popleft()
      take = min(frames - written, len(block))
      out[written : written + take] = block[:take]
      if take < len(block):
        self.pending.appendleft(block[take:])
      written += take
      self.pending_frames -= take
    return out


class MixerBus:
  """A set of inputs summed into one signal on a fixed clock."""

  def __init__(self, name: str, sample_rate: int, config: MixerConfig, volume: VolumeConfig):
    self.name = name
    self.sample_rate = sample_rate
    self.block_frames = max(1, int(sample_rate * config.block_duration))
    self._block_seconds = self.block_frames / sample_rate
    self._max_pending_frames = int(sample_rate * config.max_pending)
    self._inputs: dict[str, _BusInput] = {}
    self._outputs: list[MixedSignal] = []
    self.tap = MonitorTap(volume)
    self._clock: asyncio.Task | None = None
    self.closed = False
    self.frames_mixed = 0
    self.logger = get_logger("mix", bus=name)

  @property
  def input_ids(self) -> list[str]:
    return list(self._inputs)

  def add_input(self, handle: AudioSourceHandle, gain: float) -> None:
    if self.closed:
      raise RuntimeError(f"Bus {self.name} is closed")
    if handle.id in self._inputs:
      self._inputs[handle.id].gain = gain
      return

    bus_input = _BusInput(
      handle_ref=weakref.ref(handle),
      handle_id=handle.id,
      gain=gain,
      max_frames=self._max_pending_frames,
    )
    bus_input.pump = asyncio.create_task(self._pump(bus_input), name=f"mix_{handle.id}")
    self._inputs[handle.id] = bus_input
    self.logger.debug("Input connected", handle=handle.id, gain=gain)

  def remove_input(self, handle_id: str) -> bool:
    bus_input = self._inputs.pop(handle_id, None)
    if bus_input is None:
      return False
    if bus_input.pump is not None and not bus_input.pump.done():
      bus_input.pump.cancel()
    self.logger.debug("Input disconnected", handle=handle_id)
    return True

  def add_output(self) -> MixedSignal:
    signal = MixedSignal(self.sample_rate)
    if self.closed:
      signal.end()
    else:
      self._outputs.append(signal)
    return signal

  async def _pump(self, bus_input: _BusInput) -> None:
    """Move blocks from one source track into its pending buffer until the track ends."""
    while True:
      handle = bus_input.handle_ref()
      if handle is None:
        break
      track = handle.track
      del handle
      block = await track.read()
      if block is None:
        break
      bus_input.push(block)

  @property
  def backlog_frames(self) -> int:
    """Frames the fullest input holds that the clock has not mixed yet."""
    return max((i.pending_frames for i in self._inputs.values()), default=0)

  def mix_block(self, frames: int | None = None) -> np.ndarray:
    """Mix one block from every input and publish it to the outputs and the tap."""
    frames = frames or self.block_frames
    mixed = np.zeros(frames, dtype=DTYPE)
    for bus_input in self._inputs.values():
      mixed += bus_input.take(frames)
    np.clip(mixed, -1.0, 1.0, out=mixed)

    self.tap.update(mixed)
    for signal in self._outputs:
      signal.push(mixed)
    self.frames_mixed += len(mixed)
    return mixed

  def start(self) -> None:
    """
    Start the mixing clock.

    Audio the inputs queued before the clock started is dropped, so the mix begins at
    the moment of the call instead of trailing it by the queued amount.
    """
    if self._clock is None and not self.closed:
      dropped = 0
      for bus_input in self._inputs.values():
        dropped += bus_input.pending_frames
        bus_input.pending.clear()
        bus_input.pending_frames = 0
      if dropped:
        self.logger.debug("Dropped audio queued before start", frames=dropped)
      self._clock = asyncio.create_task(self._run_clock(), name=f"mix_clock_{self.name}")

  async def _run_clock(self) -> None:
    loop = asyncio.get_running_loop()
    next_tick = loop.time()
    while not self.closed:
      next_tick += self._block_seconds
      await asyncio.sleep(max(0.0, next_tick - loop.time()))
      if self.closed:
        break
      self.mix_block()

  async def close(self) -> None:
    """
    Stop the clock, mix out what the inputs still hold, disconnect every input and end
    every output.
    """
    if self.closed:
      return
    self.closed = True

    tasks = [t for t in [self._clock] if t is not None and not t.done()]
    tasks += [i.pump for i in self._inputs.values() if i.pump is not None and not i.pump.done()]
    for task in tasks:
      task.cancel()
    if tasks:
      await asyncio.gather(*tasks, return_exceptions=True)

    drained = 0
    if self._clock is not None:
      while (backlog := self.backlog_frames) > 0:
        drained += len(self.mix_block(min(backlog, self.block_frames)))
    self._inputs.clear()

    for signal in self._outputs:
      signal.end()
    self.logger.debug("Bus closed", frames_mixed=self.frames_mixed, drained=drained)


class AudioMixer:
  """Creates buses and wires source handles into them."""

  def __init__(self, sample_rate: int, config: MixerConfig, volume: VolumeConfig):
    self._sample_rate = sample_rate
    self._config = config
    self._volume = volume
    self._buses = 0

  def create_bus(self, name: str | None = None) -> MixerBus:
    self._buses += 1
    return MixerBus(name or f"bus{self._buses}", self._sample_rate, self._config, self._volume)

  def default_gain(self, handle: AudioSourceHandle) -> float:
    """Unity for the primary source; secondary loopback monitoring is attenuated."""
    if handle.kind is SourceKind.LOOPBACK and not handle.primary:
      return self._config.loopback_gain
    return self._config.primary_gain

  def connect(self, bus: MixerBus, handle: AudioSourceHandle, gain: float | None = None) -> None:
    bus.add_input(handle, self.default_gain(handle) if gain is None else gain)

  def disconnect(self, bus: MixerBus, handle: AudioSourceHandle) -> bool:
    return bus.remove_input(handle.id)

  def tap(self, bus: MixerBus) -> MonitorTap:
    return bus.tap

  def output(self, bus: MixerBus) -> MixedSignal:
    return bus.add_output()
