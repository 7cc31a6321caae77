import os

import yaml
from pydantic import BaseModel, Field, model_validator, validate_call
from pydantic.dataclasses import dataclass
from pydantic.types import FilePath

from huddle.logs import get_logger

logger = get_logger("cfg")


class ServerConfig(BaseModel):
  """Where the transcription backend lives."""

  api_base_url: str = "http://localhost:8081/api/v1"
  """Base URL for the buffered upload and finalize endpoints."""

  ws_url: str = "ws://localhost:8081/api/v1/ws/transcription"
  """Websocket URL of the low-latency transcription channel."""


class CaptureConfig(BaseModel):
  """Configuration for raw source acquisition."""

  sample_rate: int = Field(default=16000, gt=0)
  """Sample rate, in Hz, shared by every source, the mixer and the encoder."""

  channels: int = Field(default=1, ge=1, le=2)
  """Channels requested from the capture device. Sources are downmixed to mono."""

  block_duration: float = Field(default=0.1, gt=0.0)
  """Duration of a single driver block in seconds."""

  include_microphone: bool = True
  """Whether to add the default microphone alongside the primary source."""

  anchor_loopback: bool = True
  """Whether loopback sources are anchored into a playback sink to keep them alive."""


class MixerConfig(BaseModel):
  """Configuration for the summing bus."""

  block_duration: float = Field(default=0.02, gt=0.0)
  """Mixing tick in seconds."""

  primary_gain: float = Field(default=1.0, ge=0.0)
  """Gain applied to primary sources."""

  loopback_gain: float = Field(default=0.8, ge=0.0)
  """Gain applied to secondary loopback (monitoring) sources, attenuated against feedback."""

  max_pending: float = Field(default=2.0, gt=0.0)
  """Seconds of audio an input may queue ahead of the mixing clock before old audio drops."""


class VolumeConfig(BaseModel):
  """Configuration for level metering."""

  interval: float = Field(default=0.1, gt=0.0)
  """Seconds between two volume samples."""

  buckets: int = Field(default=15, gt=0)
  """Number of frequency buckets reported per sample."""

  fft_size: int = Field(default=256, ge=32)
  """FFT window length in samples."""

  smoothing: float = Field(default=0.8, ge=0.0, lt=1.0)
  """Time smoothing between consecutive spectra."""

  min_decibels: float = -100.0
  """Level mapped to byte value 0."""

  max_decibels: float = -30.0
  """Level mapped to byte value 255."""

  @model_validator(mode="after")
  def validate_ranges(self) -> "VolumeConfig":
    if self.min_decibels >= self.max_decibels:
      raise ValueError(
        f"min_decibels ({self.min_decibels}) must be less than max_decibels ({self.max_decibels})"
      )
    if self.buckets > self.fft_size // 2:
      raise ValueError(f"buckets ({self.buckets}) cannot exceed fft_size / 2")
    return self


@dataclass
class RecorderConfig:
  """Configuration for chunk segmentation and encoding."""

  low_latency_cadence: float = Field(default=1.0, gt=0.0)
  """Chunk duration in seconds while streaming over the websocket."""

  buffered_cadence: float = Field(default=5.0, gt=0.0)
  """Chunk duration in seconds while uploading over buffered HTTP."""

  format: str = "FLAC"
  """libsndfile container format of chunk payloads."""

  subtype: str = "PCM_16"
  """libsndfile sample subtype of chunk payloads."""

  @model_validator(mode="after")
  def validate_cadences(self) -> "RecorderConfig":
    """The buffered cadence accumulates at least as much audio as the streaming one."""
    if self.low_latency_cadence > self.buffered_cadence:
      raise ValueError(
        f"low_latency_cadence ({self.low_latency_cadence}s) must not exceed "
        f"buffered_cadence ({self.buffered_cadence}s)"
      )
    return self


class TransportConfig(BaseModel):
  """Configuration for chunk delivery."""

  open_timeout: float = Field(default=2.5, gt=0.0, le=10.0)
  """Seconds allowed for the websocket handshake before falling back to HTTP."""

  close_grace: float = Field(default=2.0, ge=0.0)
  """Seconds to wait for in-flight deliveries when a channel closes."""

  request_timeout: float = Field(default=30.0, gt=0.0)
  """Total timeout of a single HTTP request."""

  model: str = "base"
  """Model identifier sent with every buffered upload."""

  diarize: bool = True
  """Whether the backend should diarize uploaded chunks."""

  vad_onset: float = Field(default=0.5, ge=0.0, le=1.0)
  """Voice activity onset threshold sent with every buffered upload."""

  vad_offset: float = Field(default=0.363, ge=0.0, le=1.0)
  """Voice activity offset threshold sent with every buffered upload."""

  save_to_portal: bool = False
  """Whether the backend should keep the uploaded session in its portal."""


class HuddleConfig(BaseModel):
  """Top-level huddle configuration."""

  server: ServerConfig = Field(default_factory=ServerConfig)
  capture: CaptureConfig = Field(default_factory=CaptureConfig)
  mixer: MixerConfig = Field(default_factory=MixerConfig)
  volume: VolumeConfig = Field(default_factory=VolumeConfig)
  recorder: RecorderConfig = Field(default_factory=RecorderConfig)
  transport: TransportConfig = Field(default_factory=TransportConfig)

  def pretty_print(self) -> None:
    """Log every configuration property at INFO, defaults included."""
    logger.info("=" * 60)
    logger.info("HUDDLE CONFIGURATION")
    logger.info("=" * 60)

    logger.info("SERVER:")
    logger.info(f"  API Base URL: {self.server.api_base_url}")
    logger.info(f"  Websocket URL: {self.server.ws_url}")

    logger.info("CAPTURE:")
    logger.info(f"  Sample Rate: {self.capture.sample_rate}")
    logger.info(f"  Channels: {self.capture.channels}")
    logger.info(f"  Block Duration: {self.capture.block_duration}s")
    logger.info(f"  Include Microphone: {self.capture.include_microphone}")
    logger.info(f"  Anchor Loopback: {self.capture.anchor_loopback}")

    logger.info("MIXER:")
    logger.info(f"  Block Duration: {self.mixer.block_duration}s")
    logger.info(f"  Primary Gain: {self.mixer.primary_gain}")
    logger.info(f"  Loopback Gain: {self.mixer.loopback_gain}")
    logger.info(f"  Max Pending: {self.mixer.max_pending}s")

    logger.info("VOLUME:")
    logger.info(f"  Interval: {self.volume.interval}s")
    logger.info(f"  Buckets: {self.volume.buckets}")
    logger.info(f"  FFT Size: {self.volume.fft_size}")
    logger.info(f"  Range: {self.volume.min_decibels}dB .. {self.volume.max_decibels}dB")

    logger.info("RECORDER:")
    logger.info(f"  Low Latency Cadence: {self.recorder.low_latency_cadence}s")
    logger.info(f"  Buffered Cadence: {self.recorder.buffered_cadence}s")
    logger.info(f"  Format: {self.recorder.format}/{self.recorder.subtype}")

    logger.info("TRANSPORT:")
    logger.info(f"  Open Timeout: {self.transport.open_timeout}s")
    logger.info(f"  Close Grace: {self.transport.close_grace}s")
    logger.info(f"  Request Timeout: {self.transport.request_timeout}s")
    logger.info(f"  Model: {self.transport.model}")
    logger.info(f"  Diarize: {self.transport.diarize}")
    logger.info(f"  VAD Onset/Offset: {self.transport.vad_onset}/{self.transport.vad_offset}")
    logger.info(f"  Save To Portal: {self.transport.save_to_portal}")

    logger.info("=" * 60)


@validate_call
def load_config_from_file(config_path: FilePath) -> HuddleConfig:
  """Load and validate huddle configuration from a YAML file."""

  logger.info("Loading huddle configuration", path=str(config_path))

  try:
    with open(config_path, "r", encoding="utf-8") as file:
      config_data = yaml.safe_load(file)
  except yaml.YAMLError as e:
    raise ValueError(f"Invalid YAML in configuration file: {e}") from e
  except OSError as e:
    raise ValueError(f"Error reading configuration file: {e}") from e

  if config_data is None:
    raise ValueError("Configuration file is empty")

  if not isinstance(config_data, dict):
    raise ValueError("Configuration file must contain a YAML dictionary")

  config = HuddleConfig.model_validate(config_data)
  config.pretty_print()

  return config


def token_from_env() -> str | None:
  """Bearer token for the backend, taken from HUDDLE_TOKEN on every call."""
  return os.getenv("HUDDLE_TOKEN") or None


def load_config(config_path: str | None = None) -> HuddleConfig:
  """Load configuration from a path, the HUDDLE_CONFIG variable, or defaults."""
  path = config_path or os.getenv("HUDDLE_CONFIG")
  if not path:
    return HuddleConfig()
  return load_config_from_file(path)
