"""
Chunk recorder: cuts the mixed signal into sequenced, individually encoded chunks.

Each chunk is a complete audio file (FLAC by default) so the backend can decode any chunk
on its own. The encoder is re-armed right after every flush, so capture is continuous
across chunk boundaries.
"""

import asyncio
import io
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
import soundfile as sf

from huddle.audio.mixer import MixedSignal
from huddle.config import RecorderConfig
from huddle.errors import RecordingError
from huddle.logs import get_logger

if TYPE_CHECKING:
  from huddle.transport.base import TransportKind

_MIME_TYPES = {
  "FLAC": "audio/flac",
  "WAV": "audio/wav",
  "OGG": "audio/ogg",
}


@dataclass(eq=False)
class Chunk:
  """A contiguous, sequenced slice of encoded mixed audio."""

  sequence_no: int
  payload: bytes
  start_offset: float
  """Seconds from the start of the recording to the first sample of this chunk."""
  end_offset: float
  final: bool = False
  """Whether this is the flush produced by stopping the recorder."""
  transport: "TransportKind | None" = None
  """Transport active when the chunk was produced; it is never delivered on another one."""
  sent: bool = False

  @property
  def duration(self) -> float:
    return self.end_offset - self.start_offset


def mime_type_for(audio_format: str) -> str:
  return _MIME_TYPES.get(audio_format.upper(), "application/octet-stream")


class ChunkEncoder:
  """Encodes float32 blocks into one in-memory audio file."""

  def __init__(self, sample_rate: int, audio_format: str = "FLAC", subtype: str = "PCM_16"):
    self.frames = 0
    self._buffer = io.BytesIO()
    try:
      self._file = sf.SoundFile(
        self._buffer,
        mode="w",
        samplerate=sample_rate,
        channels=1,
        format=audio_format,
        subtype=subtype,
      )
    except (sf.SoundFileError, ValueError, TypeError) as e:
      raise RecordingError(f"Could not start {audio_format}/{subtype} encoder: {e}") from e

  def write(self, block: np.ndarray) -> None:
    try:
      self._file.write(block)
    except (sf.SoundFileError, ValueError, TypeError) as e:
      raise RecordingError(f"Encoding failed: {e}") from e
    self.frames += len(block)

  def finish(self) -> bytes:
    try:
      self._file.close()
    except sf.SoundFileError as e:
      raise RecordingError(f"Could not finalize encoded chunk: {e}") from e
    return self._buffer.getvalue()


EncoderFactory = Callable[[], ChunkEncoder]


class ChunkRecorder:
  """
  Reads a mixed signal and emits `Chunk`s at a transport-dependent cadence.

  Sequence numbers start at 1 and stay contiguous for the whole life of the recorder,
  across cadence changes. `stop()` flushes whatever audio is buffered as a final chunk.
  """

  def __init__(
    self,
    config: RecorderConfig,
    sample_rate: int,
    on_chunk: Callable[[Chunk], None],
    on_error: Callable[[RecordingError], None] | None = None,
    encoder_factory: EncoderFactory | None = None,
  ):
    self._config = config
    self._sample_rate = sample_rate
    self._on_chunk = on_chunk
    self._on_error = on_error
    self._encoder_factory = encoder_factory or (
      lambda: ChunkEncoder(sample_rate, config.format, config.subtype)
    )
    self._signal: MixedSignal | None = None
    self._encoder: ChunkEncoder | None = None
    self._task: asyncio.Task | None = None
    self._cadence = config.low_latency_cadence
    self._next_sequence = 1
    self._frames_flushed = 0
    self.stopped = False
    self.logger = get_logger("rec")

  @property
  def cadence(self) -> float:
    return self._cadence

  @property
  def chunks_produced(self) -> int:
    return self._next_sequence - 1

  @property
  def buffered_duration(self) -> float:
    return (self._encoder.frames if self._encoder else 0) / self._sample_rate

  def start(self, signal: MixedSignal, cadence: float) -> asyncio.Task:
    """
    Start encoding `signal`, emitting a chunk every `cadence` seconds of audio.

    :raises RecordingError: When the encoder cannot be armed.
    """
    if self._task is not None:
      raise RuntimeError("Recorder already started")

    self._signal = signal
    self._cadence = cadence
    self._arm()
    self._task = asyncio.create_task(self._run(), name="chunk_recorder")
    self.logger.info("Recorder started", cadence=cadence, format=self._config.format)
    return self._task

  def set_cadence(self, cadence: float) -> None:
    """Change the cadence. Audio already buffered counts toward the next chunk."""
    self.logger.info("Recorder cadence changed", previous=self._cadence, cadence=cadence)
    self._cadence = cadence

  async def stop(self) -> Chunk | None:
    """
    Stop reading and flush buffered audio as the final chunk.

    :returns:
        The final chunk, or None when nothing was buffered (or already stopped).
    """
    if self.stopped:
      return None
    self.stopped = True

    if self._task is not None and not self._task.done():
      self._task.cancel()
      await asyncio.gather(self._task, return_exceptions=True)

    final: Chunk | None = None
    try:
      if self._signal is not None and self._encoder is not None:
        for block in self._signal.drain_nowait():
          self._append(block)
      final = self._flush(final=True)
    except RecordingError:
      self.logger.exception("Final flush failed")
    self._encoder = None

    self.logger.info(
      "Recorder stopped",
      chunks=self.chunks_produced,
      final_duration=final.duration if final else 0.0,
    )
    return final

  async def _run(self) -> None:
    assert self._signal is not None
    try:
      while True:
        block = await self._signal.read()
        if block is None:
          break
        self._append(block)
    except RecordingError as e:
      self.logger.error("Recording pipeline failed", error=str(e))
      if self._on_error is not None:
        self._on_error(e)

  def _append(self, block: np.ndarray) -> None:
    if self._encoder is None:
      self._arm()
    assert self._encoder is not None
    self._encoder.write(block)
    if self._encoder.frames >= int(self._cadence * self._sample_rate):
      self._flush()
      if not self.stopped:
        self._arm()

  def _arm(self) -> None:
    self._encoder = self._encoder_factory()

  def _flush(self, final: bool = False) -> Chunk | None:
    encoder, self._encoder = self._encoder, None
    if encoder is None or encoder.frames == 0:
      return None

    payload = encoder.finish()
    start = self._frames_flushed / self._sample_rate
    self._frames_flushed += encoder.frames
    chunk = Chunk(
      sequence_no=self._next_sequence,
      payload=payload,
      start_offset=start,
      end_offset=self._frames_flushed / self._sample_rate,
      final=final,
    )
    self._next_sequence += 1

    self.logger.debug(
      "Chunk produced",
      sequence_no=chunk.sequence_no,
      duration=chunk.duration,
      bytes=len(payload),
      final=final,
    )
    self._on_chunk(chunk)
    return chunk
