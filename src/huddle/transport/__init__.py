"""Chunk delivery to the transcription backend."""

from .base import ChannelState, SessionMeta, TokenProvider, TransportChannel, TransportKind
from .factory import ChannelFactory
from .http import BufferedHttpChannel, FinalizeNotifier
from .socket import LowLatencySocketChannel

__all__ = [
  "BufferedHttpChannel",
  "ChannelFactory",
  "ChannelState",
  "FinalizeNotifier",
  "LowLatencySocketChannel",
  "SessionMeta",
  "TokenProvider",
  "TransportChannel",
  "TransportKind",
]
