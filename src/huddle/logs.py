"""Structured logging setup for huddle, built on structlog over stdlib logging."""

import logging
import os
import time
from typing import Any

import numpy as np
import structlog
from structlog.dev import DIM, RESET_ALL, Column, ConsoleRenderer, KeyValueColumnFormatter
from structlog.typing import EventDict, Processor, WrappedLogger

_PROGRAM_START_TIME = time.time()

# Library loggers that are noisy at INFO and below
_CAPPED_LIBRARY_LOGGERS = ["websockets", "aiohttp"]


def hex_to_ansi_fg(hex_color: int) -> str:
  """Convert hex color (e.g., 0x9ccfd8) to an ANSI 24-bit foreground escape code."""
  r = (hex_color >> 16) & 0xFF
  g = (hex_color >> 8) & 0xFF
  b = hex_color & 0xFF
  return f"\x1b[38;2;{r};{g};{b}m"


_LEVEL_STYLES = {
  "debug": ("dbug", 0x908CAA),
  "info": ("info", 0x9CCFD8),
  "warning": ("warn", 0xF6C177),
  "error": ("eror", 0xEB6F92),
  "exception": ("exc!", 0xEB6F92),
  "critical": ("crit", 0xEB6F92),
}


class FloatPrecisionProcessor:
  """
  A structlog processor rounding floats, both bare and inside lists, dicts or numpy arrays.

  Audio levels, offsets and durations otherwise print with full float noise.
  """

  def __init__(self, digits: int = 3, np_array_to_list: bool = True):
    self.digits = digits
    self.np_array_to_list = np_array_to_list

  def _round(self, value: Any) -> Any:
    if isinstance(value, float):
      return round(value, self.digits)
    if self.np_array_to_list and isinstance(value, np.ndarray):
      return self._round(value.tolist())
    if isinstance(value, list):
      return [self._round(item) for item in value]
    if isinstance(value, dict):
      return {k: self._round(v) for k, v in value.items()}
    return value

  def __call__(self, _: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    for key, value in event_dict.items():
      if isinstance(value, bool):
        continue
      event_dict[key] = self._round(value)
    return event_dict


def _relative_time_processor(_logger: WrappedLogger, _method: str, event_dict: EventDict):
  """Stamp events with the time elapsed since the process started, as +[mm:]ss.mmm."""
  elapsed = time.time() - _PROGRAM_START_TIME
  minutes = int(elapsed // 60)
  seconds = elapsed % 60

  if minutes:
    event_dict["timestamp"] = f"+{minutes:02d}:{seconds:06.3f}"
  else:
    event_dict["timestamp"] = f"+{seconds:06.3f}"
  return event_dict


def _compact_level_processor(_logger: WrappedLogger, _method: str, event_dict: EventDict):
  """Render the level as a 4-character colored tag, e.g. [warn]."""
  level = event_dict.get("level")
  if level in _LEVEL_STYLES:
    label, color = _LEVEL_STYLES[level]
    event_dict["level"] = f"[{hex_to_ansi_fg(color)}{label}{RESET_ALL}]"
  return event_dict


def _console_renderer() -> ConsoleRenderer:
  logger_name_formatter = KeyValueColumnFormatter(
    key_style=None,
    value_style=hex_to_ansi_fg(0x7D6B95),
    reset_style=RESET_ALL,
    value_repr=str,
    prefix="[",
    postfix="]",
  )

  return ConsoleRenderer(
    colors=True,
    columns=[
      Column(
        "",
        KeyValueColumnFormatter(
          key_style=hex_to_ansi_fg(0x6E6A86),
          value_style=hex_to_ansi_fg(0xF6C177),
          reset_style=RESET_ALL,
          value_repr=str,
        ),
      ),
      Column(
        "timestamp",
        KeyValueColumnFormatter(
          key_style=None, value_style=DIM, reset_style=RESET_ALL, value_repr=str
        ),
      ),
      Column(
        "level",
        KeyValueColumnFormatter(
          key_style=None, value_style="", reset_style=RESET_ALL, value_repr=str
        ),
      ),
      Column("logger", logger_name_formatter),
      Column(
        "event",
        KeyValueColumnFormatter(
          key_style=None, value_style="", reset_style=RESET_ALL, value_repr=str, width=32
        ),
      ),
    ],
  )


def setup_logging(
  level: str = "INFO", json_output: bool = False, correlation_id: str | None = None
) -> None:
  """Configure structured logging for the application."""
  shared_processors: list[Processor] = [
    structlog.stdlib.filter_by_level,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.stdlib.PositionalArgumentsFormatter(),
    structlog.stdlib.ExtraAdder(),
    FloatPrecisionProcessor(digits=3),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
  ]

  if correlation_id:
    shared_processors.insert(0, structlog.contextvars.merge_contextvars)
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)

  if json_output:
    shared_processors.append(structlog.processors.TimeStamper(fmt="iso"))
    log_renderer: Processor = structlog.processors.JSONRenderer()
  else:
    shared_processors.extend([_compact_level_processor, _relative_time_processor])
    log_renderer = _console_renderer()

  structlog.configure(
    processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
    wrapper_class=structlog.stdlib.BoundLogger,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
  )

  formatter = structlog.stdlib.ProcessorFormatter(
    foreign_pre_chain=shared_processors,
    processors=[
      structlog.stdlib.ProcessorFormatter.remove_processors_meta,
      log_renderer,
    ],
  )

  # stderr, so that `huddle serve` keeps stdout for JSON lines
  handler = logging.StreamHandler()
  handler.setFormatter(formatter)
  root_logger = logging.getLogger()
  root_logger.handlers.clear()
  root_logger.addHandler(handler)
  root_logger.setLevel(level)

  for liblog in [logging.getLogger(name) for name in _CAPPED_LIBRARY_LOGGERS]:
    liblog.handlers.clear()
    liblog.setLevel(logging.WARNING)
    liblog.propagate = True


def get_logger(
  name: str | None = None, *args: Any, **initial_values: Any
) -> structlog.stdlib.BoundLogger:
  """Get a structured logger instance."""
  return structlog.get_logger(*([name] + list(args)), **initial_values)


def setup_logging_from_env() -> None:
  """Setup logging using environment variables."""
  log_level = os.getenv("LOG_LEVEL", "INFO").upper()
  json_output = os.getenv("JSON_LOGS", "false").lower() in ("true", "1", "yes", "on")
  correlation_id = os.getenv("CORRELATION_ID")

  setup_logging(level=log_level, json_output=json_output, correlation_id=correlation_id)
