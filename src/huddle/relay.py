"""Republishes transcript text from whichever transport produced it."""

import time
from collections.abc import Callable
from dataclasses import dataclass

from huddle.events import EventSink, TranscriptUpdate
from huddle.logs import get_logger


@dataclass(frozen=True)
class TranscriptFragment:
  session_id: str
  text: str
  received_at: float


FragmentListener = Callable[[TranscriptFragment], None]


class TranscriptRelay:
  """
  Forwards fragments to subscribers in the order the transports hand them over.

  Nothing is buffered or reordered. Across a transport downgrade a late response from the
  old transport may therefore land after fragments from the new one.
  """

  def __init__(self, events: EventSink | None = None):
    self._events = events
    self._listeners: list[FragmentListener] = []
    self.logger = get_logger("relay")

  def subscribe(self, listener: FragmentListener) -> Callable[[], None]:
    self._listeners.append(listener)

    def unsubscribe() -> None:
      if listener in self._listeners:
        self._listeners.remove(listener)

    return unsubscribe

  def publish(self, session_id: str, text: str) -> TranscriptFragment | None:
    if not text or not text.strip():
      return None

    fragment = TranscriptFragment(session_id=session_id, text=text, received_at=time.time())
    for listener in list(self._listeners):
      try:
        listener(fragment)
      except Exception:
        self.logger.warning("Transcript listener failed", session_id=session_id, exc_info=True)

    if self._events is not None:
      self._events.emit(TranscriptUpdate(text=text))
    return fragment
