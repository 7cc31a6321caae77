"""Builds the channels and finalize notifier a session uses, from configuration."""

from huddle.config import HuddleConfig
from huddle.relay import TranscriptRelay
from huddle.transport.base import TokenProvider, TransportChannel, TransportKind
from huddle.transport.http import BufferedHttpChannel, FinalizeNotifier
from huddle.transport.socket import LowLatencySocketChannel


class ChannelFactory:
  """Builds the transport channels and finalize notifier of a session from configuration."""

  def __init__(
    self,
    config: HuddleConfig,
    relay: TranscriptRelay,
    token_provider: TokenProvider | None = None,
  ):
    self.config = config
    self.relay = relay
    self.token_provider = token_provider

  def create(self, kind: TransportKind) -> TransportChannel:
    if kind is TransportKind.LOW_LATENCY_SOCKET:
      return LowLatencySocketChannel(
        self.config.server.ws_url,
        self.relay,
        open_timeout=self.config.transport.open_timeout,
        token_provider=self.token_provider,
      )
    return BufferedHttpChannel(
      self.config.server.api_base_url,
      self.relay,
      self.config.transport,
      audio_format=self.config.recorder.format,
      token_provider=self.token_provider,
    )

  def finalizer(self) -> FinalizeNotifier:
    return FinalizeNotifier(
      self.config.server.api_base_url,
      self.config.transport.request_timeout,
      token_provider=self.token_provider,
    )
