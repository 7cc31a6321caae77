"""Process-wide level meter sampling the current session's monitor tap."""

import asyncio

from huddle.audio.mixer import MonitorTap
from huddle.config import VolumeConfig
from huddle.events import EventSink, VolumeUpdate
from huddle.logs import get_logger


class VolumeSubscription:
  """Registration of one session's tap with the monitor."""

  def __init__(self, monitor: "VolumeMonitor", session_id: str):
    self._monitor = monitor
    self.session_id = session_id
    self.cancelled = False

  def cancel(self) -> None:
    if not self.cancelled:
      self.cancelled = True
      self._monitor._unregister(self.session_id)


class VolumeMonitor:
  """
  Emits `VOLUME_UPDATE` events on a fixed period.

  A single sampling loop runs no matter how many sessions are registered. Each tick
  inspects the current session (the earliest registered one still active) and skips the
  emission when its tap holds no signal. The loop stops once the last session leaves.
  """

  def __init__(self, events: EventSink, config: VolumeConfig):
    self._events = events
    self._config = config
    self._taps: dict[str, MonitorTap] = {}
    self._loop_task: asyncio.Task | None = None
    self.logger = get_logger("vol")

  @property
  def running(self) -> bool:
    return self._loop_task is not None and not self._loop_task.done()

  def start(self, session_id: str, tap: MonitorTap) -> VolumeSubscription:
    self._taps[session_id] = tap
    if not self.running:
      self._loop_task = asyncio.create_task(self._run(), name="volume_monitor")
      self.logger.debug("Volume monitor started", interval=self._config.interval)
    return VolumeSubscription(self, session_id)

  def _unregister(self, session_id: str) -> None:
    self._taps.pop(session_id, None)
    if not self._taps and self._loop_task is not None:
      self._loop_task.cancel()
      self._loop_task = None
      self.logger.debug("Volume monitor stopped")

  def sample(self) -> VolumeUpdate | None:
    """Take one sample of the current session, or None when there is nothing to report."""
    if not self._taps:
      return None
    tap = next(iter(self._taps.values()))
    if not tap.has_signal:
      return None
    return VolumeUpdate(volumes=tap.byte_frequency_data(self._config.buckets))

  async def _run(self) -> None:
    while self._taps:
      await asyncio.sleep(self._config.interval)
      try:
        update = self.sample()
      except Exception:
        # One bad tick must not stop metering
        self.logger.warning("Volume sample failed", exc_info=True)
        continue
      if update is not None:
        self._events.emit(update)
