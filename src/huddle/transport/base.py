"""
The chunk delivery contract shared by both transport strategies.

A channel opens once, then accepts chunks without blocking the caller. A single sender
task delivers them in FIFO order; a chunk that fails is logged and dropped, never
retried. Closing waits a bounded grace period for in-flight deliveries and then tears
the channel down regardless.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import ClassVar

from huddle.audio.recorder import Chunk
from huddle.errors import ChunkDeliveryError, TransportOpenError
from huddle.logs import get_logger

TokenProvider = Callable[[], str | None]
"""Returns the current bearer token from the external token store, if any."""


class TransportKind(StrEnum):
  LOW_LATENCY_SOCKET = "low_latency_socket"
  BUFFERED_HTTP = "buffered_http"


class ChannelState(StrEnum):
  CONNECTING = "connecting"
  OPEN = "open"
  DEGRADED = "degraded"
  CLOSED = "closed"


@dataclass(frozen=True)
class SessionMeta:
  session_id: str
  meeting_name: str


def bearer_headers(token_provider: TokenProvider | None) -> dict[str, str]:
  token = token_provider() if token_provider is not None else None
  return {"Authorization": f"Bearer {token}"} if token else {}


class TransportChannel(ABC):
  """Delivers the chunks of one session to the backend."""

  kind: ClassVar[TransportKind]

  def __init__(self) -> None:
    self.state = ChannelState.CONNECTING
    self.meta: SessionMeta | None = None
    self.open_error: TransportOpenError | None = None
    self.retry_count = 0
    """Failed delivery attempts. Failures are counted, never retried."""
    self.delivered = 0
    self.discarded = 0
    self.on_lost: Callable[["TransportChannel"], None] | None = None
    self._queue: asyncio.Queue[Chunk] = asyncio.Queue()
    self._sender: asyncio.Task | None = None
    self.logger = get_logger(self._logger_name())

  def _logger_name(self) -> str:
    return "ws" if self.kind is TransportKind.LOW_LATENCY_SOCKET else "http"

  @property
  def pending(self) -> int:
    return self._queue.qsize()

  async def open(self, meta: SessionMeta) -> bool:
    """
    Open the channel for a session.

    A failed or timed-out open is an expected outcome: it returns False and keeps the
    reason on `open_error` instead of raising.
    """
    self.meta = meta
    try:
      await self._connect(meta)
    except TransportOpenError as e:
      self.open_error = e
      self.state = ChannelState.CLOSED
      self.logger.info("Transport did not open", session_id=meta.session_id, reason=e.reason)
      return False

    self.state = ChannelState.OPEN
    self._sender = asyncio.create_task(self._send_loop(), name=f"{self.kind}_sender")
    self.logger.info("Transport open", session_id=meta.session_id, kind=self.kind)
    return True

  def send(self, chunk: Chunk) -> bool:
    """Queue a chunk for delivery. Returns False (and drops it) unless the channel is open."""
    if self.state is not ChannelState.OPEN:
      self.discarded += 1
      self.logger.warning(
        "Chunk dropped, channel not open", sequence_no=chunk.sequence_no, state=self.state
      )
      return False

    chunk.transport = self.kind
    self._queue.put_nowait(chunk)
    return True

  async def close(self, grace: float) -> None:
    """Wait up to `grace` seconds for queued chunks, then tear the channel down."""
    if self.state is ChannelState.CLOSED:
      return

    if self.state is ChannelState.OPEN and self._sender is not None:
      try:
        await asyncio.wait_for(self._queue.join(), timeout=grace)
      except TimeoutError:
        self.logger.warning(
          "Close grace expired with chunks in flight", pending=self.pending, grace=grace
        )

    self.state = ChannelState.CLOSED
    if self._sender is not None and not self._sender.done():
      self._sender.cancel()
      await asyncio.gather(self._sender, return_exceptions=True)
    self._discard_pending()

    await self._teardown()
    self.logger.info(
      "Transport closed",
      session_id=self.meta.session_id if self.meta else None,
      delivered=self.delivered,
      failed=self.retry_count,
      discarded=self.discarded,
    )

  def _mark_lost(self, reason: str) -> None:
    """The connection went away on its own: stop delivering and discard what is queued."""
    if self.state is not ChannelState.OPEN:
      return
    self.state = ChannelState.DEGRADED
    dropped = self._discard_pending()
    self.logger.warning("Transport lost", reason=reason, discarded=dropped)
    if self.on_lost is not None:
      self.on_lost(self)

  def _discard_pending(self) -> int:
    dropped = 0
    while not self._queue.empty():
      self._queue.get_nowait()
      self._queue.task_done()
      dropped += 1
    self.discarded += dropped
    return dropped

  async def _send_loop(self) -> None:
    while True:
      chunk = await self._queue.get()
      try:
        if self.state is not ChannelState.OPEN:
          self.discarded += 1
          continue
        await self._deliver(chunk)
        chunk.sent = True
        self.delivered += 1
      except ChunkDeliveryError as e:
        self.retry_count += 1
        self.logger.warning("Chunk delivery failed", sequence_no=e.sequence_no, reason=e.reason)
      finally:
        self._queue.task_done()

  @abstractmethod
  async def _connect(self, meta: SessionMeta) -> None:
    """
    Establish the channel.

    :raises TransportOpenError: When the channel cannot be used.
    """

  @abstractmethod
  async def _deliver(self, chunk: Chunk) -> None:
    """
    Deliver one chunk.

    :raises ChunkDeliveryError: When the chunk could not be delivered.
    """

  @abstractmethod
  async def _teardown(self) -> None:
    """Release connection resources. Called once, after the sender has stopped."""
