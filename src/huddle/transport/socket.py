"""
Low-latency strategy: one persistent websocket per session.

After connecting, a single JSON config frame announces the session; every chunk then
goes out as one binary frame. The only inbound frame interpreted is `transcript`.
"""

import asyncio
from urllib.parse import urlencode

import websockets
from pydantic import ValidationError
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed, WebSocketException

from huddle.audio.recorder import Chunk
from huddle.errors import ChunkDeliveryError, TransportOpenError
from huddle.relay import TranscriptRelay
from huddle.transport.base import (
  SessionMeta,
  TokenProvider,
  TransportChannel,
  TransportKind,
)
from huddle.wire import (
  ConfigFrame,
  ConfigPayload,
  TranscriptFrame,
  deserialize_frame,
  serialize_frame,
)


class LowLatencySocketChannel(TransportChannel):
  """Streams chunks over a websocket and relays transcript frames pushed back."""

  kind = TransportKind.LOW_LATENCY_SOCKET

  def __init__(
    self,
    url: str,
    relay: TranscriptRelay,
    open_timeout: float,
    token_provider: TokenProvider | None = None,
  ):
    super().__init__()
    self.url = url
    self.open_timeout = open_timeout
    self._relay = relay
    self._token_provider = token_provider
    self.ws: ClientConnection | None = None
    self._reader: asyncio.Task | None = None

  def connect_url(self) -> str:
    token = self._token_provider() if self._token_provider is not None else None
    if not token:
      return self.url
    separator = "&" if "?" in self.url else "?"
    return f"{self.url}{separator}{urlencode({'token': token})}"

  async def _connect(self, meta: SessionMeta) -> None:
    try:
      await asyncio.wait_for(self._handshake(meta), timeout=self.open_timeout)
    except TimeoutError as e:
      await self._drop_socket()
      raise TransportOpenError(self.kind, f"handshake timed out after {self.open_timeout}s") from e
    except (OSError, WebSocketException) as e:
      await self._drop_socket()
      raise TransportOpenError(self.kind, str(e) or type(e).__name__) from e

    self._reader = asyncio.create_task(self._read_loop(), name="ws_reader")

  async def _handshake(self, meta: SessionMeta) -> None:
    self.ws = await websockets.connect(self.connect_url())
    config = ConfigFrame(
      payload=ConfigPayload(session_id=meta.session_id, meeting_name=meta.meeting_name)
    )
    await self.ws.send(serialize_frame(config))

  async def _read_loop(self) -> None:
    assert self.ws is not None
    reason = "closed by server"
    try:
      async for message in self.ws:
        self._handle_message(message)
    except ConnectionClosed as e:
      reason = f"connection lost: {e}"

    self._mark_lost(reason)

  def _handle_message(self, message: str | bytes) -> None:
    try:
      frame = deserialize_frame(message)
    except (ValidationError, UnicodeDecodeError):
      self.logger.debug("Ignoring unrecognized frame", size=len(message))
      return

    match frame:
      case TranscriptFrame(text=text):
        assert self.meta is not None
        self._relay.publish(self.meta.session_id, text)
      case _:
        self.logger.debug("Ignoring frame", frame_type=frame.type)

  async def _deliver(self, chunk: Chunk) -> None:
    if self.ws is None:
      raise ChunkDeliveryError(chunk.sequence_no, "socket not connected")
    try:
      await self.ws.send(chunk.payload)
    except (ConnectionClosed, OSError) as e:
      raise ChunkDeliveryError(chunk.sequence_no, str(e)) from e

  async def _teardown(self) -> None:
    if self._reader is not None and not self._reader.done():
      self._reader.cancel()
      await asyncio.gather(self._reader, return_exceptions=True)
    await self._drop_socket()

  async def _drop_socket(self) -> None:
    ws, self.ws = self.ws, None
    if ws is None:
      return
    try:
      await ws.close()
    except (OSError, WebSocketException):
      self.logger.debug("Error closing websocket", exc_info=True)
