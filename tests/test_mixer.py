"""Tests for the mixing bus and its analysis tap."""

import asyncio

import numpy as np
import pytest
from fakes import FakeTrack

from huddle.audio.mixer import AudioMixer, MonitorTap
from huddle.audio.sources import AudioSourceHandle
from huddle.audio.types import SourceKind
from huddle.config import MixerConfig, VolumeConfig

SAMPLE_RATE = 16000
BLOCK = 160


@pytest.fixture
def mixer():
  return AudioMixer(SAMPLE_RATE, MixerConfig(block_duration=0.01), VolumeConfig())


def make_handle(kind=SourceKind.LOOPBACK, primary=False, track_id="t"):
  return AudioSourceHandle(kind=kind, track=FakeTrack(track_id), primary=primary)


def tone(frequency: float, frames: int, amplitude: float = 0.5) -> np.ndarray:
  t = np.arange(frames) / SAMPLE_RATE
  return (amplitude * np.sin(2 * np.pi * frequency * t)).astype(np.float32)


class TestDefaultGain:
  def test_primary_is_unity(self, mixer):
    assert mixer.default_gain(make_handle(primary=True)) == 1.0

  def test_monitoring_loopback_is_attenuated(self, mixer):
    assert mixer.default_gain(make_handle(primary=False)) == 0.8

  def test_microphone_is_unity(self, mixer):
    assert mixer.default_gain(make_handle(kind=SourceKind.MICROPHONE)) == 1.0


class TestMixerBus:
  """Summing, clipping and fan-out of a bus."""

  async def test_sources_are_summed_with_gain(self, mixer):
    bus = mixer.create_bus()
    primary = make_handle(primary=True, track_id="a")
    microphone = make_handle(kind=SourceKind.MICROPHONE, track_id="b")
    mixer.connect(bus, primary)
    mixer.connect(bus, microphone, gain=0.5)

    primary.track.feed(np.full(BLOCK, 0.25, dtype=np.float32))
    microphone.track.feed(np.full(BLOCK, 0.25, dtype=np.float32))
    await asyncio.sleep(0.01)

    mixed = bus.mix_block()

    np.testing.assert_allclose(mixed, 0.375, rtol=1e-6)
    await bus.close()

  async def test_sum_is_clipped(self, mixer):
    bus = mixer.create_bus()
    handles = [make_handle(kind=SourceKind.MICROPHONE, track_id=str(i)) for i in range(2)]
    for handle in handles:
      mixer.connect(bus, handle)
      handle.track.feed(np.full(BLOCK, 0.8, dtype=np.float32))
    await asyncio.sleep(0.01)

    mixed = bus.mix_block()

    assert mixed.max() == pytest.approx(1.0)
    await bus.close()

  async def test_output_and_tap_see_the_same_samples(self, mixer):
    bus = mixer.create_bus()
    handle = make_handle(primary=True)
    mixer.connect(bus, handle)
    signal = mixer.output(bus)
    handle.track.feed(tone(440.0, BLOCK))
    await asyncio.sleep(0.01)

    mixed = bus.mix_block()

    [recorded] = signal.drain_nowait()
    np.testing.assert_array_equal(recorded, mixed)
    assert mixer.tap(bus).has_signal
    await bus.close()

  async def test_input_behind_is_zero_padded(self, mixer):
    bus = mixer.create_bus()
    handle = make_handle(primary=True)
    mixer.connect(bus, handle)
    handle.track.feed(np.full(BLOCK // 2, 0.5, dtype=np.float32))
    await asyncio.sleep(0.01)

    mixed = bus.mix_block()

    np.testing.assert_allclose(mixed[: BLOCK // 2], 0.5)
    np.testing.assert_array_equal(mixed[BLOCK // 2 :], 0.0)
    await bus.close()

  async def test_disconnect_removes_contribution(self, mixer):
    bus = mixer.create_bus()
    handle = make_handle(primary=True)
    mixer.connect(bus, handle)
    handle.track.feed(np.full(BLOCK, 0.5, dtype=np.float32))
    await asyncio.sleep(0.01)

    assert mixer.disconnect(bus, handle) is True
    assert mixer.disconnect(bus, handle) is False
    assert not np.any(bus.mix_block())
    await bus.close()

  async def test_clock_produces_blocks(self, mixer):
    bus = mixer.create_bus()
    signal = mixer.output(bus)

    bus.start()
    block = await asyncio.wait_for(signal.read(), timeout=1.0)

    assert block is not None
    assert len(block) == bus.block_frames == BLOCK
    await bus.close()

  async def test_close_ends_outputs(self, mixer):
    bus = mixer.create_bus()
    handle = make_handle(primary=True)
    mixer.connect(bus, handle)
    signal = mixer.output(bus)
    bus.start()

    await bus.close()

    assert bus.closed
    assert bus.input_ids == []
    while (block := await signal.read()) is not None:
      assert len(block) == BLOCK
    assert mixer.output(bus).drain_nowait() == []

  async def test_start_drops_audio_queued_before_it(self, mixer):
    bus = mixer.create_bus()
    handle = make_handle(primary=True)
    mixer.connect(bus, handle)
    signal = mixer.output(bus)
    for _ in range(3):
      handle.track.feed(np.full(BLOCK, 0.5, dtype=np.float32))
    await asyncio.sleep(0.01)
    assert bus.backlog_frames == 3 * BLOCK

    bus.start()

    assert bus.backlog_frames == 0
    await asyncio.sleep(0.03)
    await bus.close()
    blocks = signal.drain_nowait()
    assert blocks
    assert not any(np.any(block) for block in blocks)

  async def test_close_mixes_out_pending_audio(self, mixer):
    bus = mixer.create_bus()
    handle = make_handle(primary=True)
    mixer.connect(bus, handle)
    signal = mixer.output(bus)
    bus.start()

    fed = 5 * BLOCK + BLOCK // 2
    handle.track.feed(np.full(fed, 0.5, dtype=np.float32))
    await asyncio.sleep(0)
    await bus.close()

    blocks = signal.drain_nowait()
    assert bus.backlog_frames == 0
    assert bus.frames_mixed >= fed
    assert sum(int(np.count_nonzero(block)) for block in blocks) == fed
    assert sum(float(block.sum()) for block in blocks) == pytest.approx(fed * 0.5)

  async def test_close_before_start_mixes_nothing(self, mixer):
    bus = mixer.create_bus()
    handle = make_handle(primary=True)
    mixer.connect(bus, handle)
    signal = mixer.output(bus)
    handle.track.feed(np.full(BLOCK, 0.5, dtype=np.float32))
    await asyncio.sleep(0.01)

    await bus.close()

    assert bus.frames_mixed == 0
    assert await signal.read() is None

  async def test_connect_after_close_is_rejected(self, mixer):
    bus = mixer.create_bus()
    await bus.close()

    with pytest.raises(RuntimeError):
      mixer.connect(bus, make_handle())


class TestMonitorTap:
  """Analyser-style frequency levels."""

  def test_silence(self):
    tap = MonitorTap(VolumeConfig())

    assert not tap.has_signal
    assert tap.byte_frequency_data() == [0] * 15

  def test_tone_peaks_in_its_bucket(self):
    tap = MonitorTap(VolumeConfig())
    # 250 Hz lands in bin 4 of a 256-point FFT at 16 kHz
    tap.update(tone(250.0, 512))

    levels = tap.byte_frequency_data()

    assert len(levels) == 15
    assert all(0 <= level <= 255 for level in levels)
    assert levels[4] == max(levels)
    assert levels[4] > 0

  def test_levels_are_smoothed(self):
    tap = MonitorTap(VolumeConfig())
    tap.update(tone(250.0, 256))

    first = tap.byte_frequency_data()[4]
    second = tap.byte_frequency_data()[4]

    assert second > first

  def test_short_blocks_roll_in(self):
    tap = MonitorTap(VolumeConfig())
    tap.update(np.full(16, 0.5, dtype=np.float32))

    assert tap.has_signal
