"""
Buffered strategy: every chunk is uploaded as its own multipart POST.

Also home of the finalize notification sent once a session ends.
"""

import aiohttp
from pydantic import ValidationError

from huddle.audio.recorder import Chunk, mime_type_for
from huddle.config import TransportConfig
from huddle.errors import ChunkDeliveryError, FinalizeError
from huddle.logs import get_logger
from huddle.relay import TranscriptRelay
from huddle.transport.base import (
  ChannelState,
  SessionMeta,
  TokenProvider,
  TransportChannel,
  TransportKind,
  bearer_headers,
)
from huddle.wire import ProcessingParameters, QuickTranscriptionResponse


class BufferedHttpChannel(TransportChannel):
  """Uploads chunks to the quick transcription endpoint and relays any transcript returned."""

  kind = TransportKind.BUFFERED_HTTP

  def __init__(
    self,
    api_base_url: str,
    relay: TranscriptRelay,
    config: TransportConfig,
    audio_format: str = "FLAC",
    token_provider: TokenProvider | None = None,
    session: aiohttp.ClientSession | None = None,
  ):
    super().__init__()
    self.upload_url = f"{api_base_url.rstrip('/')}/transcription/quick"
    self._relay = relay
    self._config = config
    self._audio_format = audio_format
    self._token_provider = token_provider
    self._session = session
    self._owns_session = session is None
    self._parameters = ProcessingParameters(
      model=config.model,
      diarize=config.diarize,
      vad_onset=config.vad_onset,
      vad_offset=config.vad_offset,
    )

  async def _connect(self, meta: SessionMeta) -> None:
    if self._session is None:
      self._session = aiohttp.ClientSession(
        timeout=aiohttp.ClientTimeout(total=self._config.request_timeout)
      )

  def build_form(self, chunk: Chunk) -> aiohttp.FormData:
    assert self.meta is not None
    form = aiohttp.FormData()
    form.add_field(
      "audio",
      chunk.payload,
      filename=f"chunk.{self._audio_format.lower()}",
      content_type=mime_type_for(self._audio_format),
    )
    form.add_field(
      "parameters", self._parameters.model_dump_json(), content_type="application/json"
    )
    form.add_field("session_id", self.meta.session_id)
    form.add_field("title", self.meta.meeting_name)
    form.add_field("save_to_portal", "true" if self._config.save_to_portal else "false")
    return form

  async def _deliver(self, chunk: Chunk) -> None:
    assert self._session is not None and self.meta is not None
    try:
      async with self._session.post(
        self.upload_url,
        data=self.build_form(chunk),
        headers=bearer_headers(self._token_provider),
      ) as response:
        if response.status >= 400:
          detail = (await response.text())[:200]
          raise ChunkDeliveryError(chunk.sequence_no, f"HTTP {response.status}: {detail}")
        body = await response.read()
    except (aiohttp.ClientError, TimeoutError) as e:
      raise ChunkDeliveryError(chunk.sequence_no, str(e) or type(e).__name__) from e

    text = self._transcript_text(body)
    if text and self.state is not ChannelState.CLOSED:
      self._relay.publish(self.meta.session_id, text)

  def _transcript_text(self, body: bytes) -> str | None:
    if not body.strip():
      return None
    try:
      return QuickTranscriptionResponse.model_validate_json(body).text
    except ValidationError:
      self.logger.debug("Upload response carried no transcript", size=len(body))
      return None

  async def _teardown(self) -> None:
    if self._owns_session and self._session is not None:
      await self._session.close()
    self._session = None


class FinalizeNotifier:
  """Tells the backend that no more chunks will arrive for a session."""

  def __init__(
    self,
    api_base_url: str,
    request_timeout: float,
    token_provider: TokenProvider | None = None,
  ):
    self._base = f"{api_base_url.rstrip('/')}/transcription/quick"
    self._timeout = aiohttp.ClientTimeout(total=request_timeout)
    self._token_provider = token_provider
    self.logger = get_logger("http")

  def url_for(self, session_id: str) -> str:
    return f"{self._base}/{session_id}/finalize"

  async def notify(self, session_id: str) -> None:
    """
    :raises FinalizeError: When the request failed or was rejected.
    """
    try:
      async with aiohttp.ClientSession(timeout=self._timeout) as session:
        async with session.post(
          self.url_for(session_id), headers=bearer_headers(self._token_provider)
        ) as response:
          if response.status >= 400:
            raise FinalizeError(f"finalize of {session_id} rejected: HTTP {response.status}")
    except (aiohttp.ClientError, TimeoutError) as e:
      raise FinalizeError(f"finalize of {session_id} failed: {e}") from e

    self.logger.info("Session finalized on backend", session_id=session_id)
