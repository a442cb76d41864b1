"""Logging configuration using structlog.

Every run logs to the console and to its own file; both outputs carry the same
leveled, timestamped events.
"""
from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any, List, Optional

import structlog

ROOT_LOGGER = "kbudget_deploy"
SUCCESS_LEVEL = "success"


def mark_success(_: Any, __: str, event_dict: dict) -> dict:
  """Render ``log.info(..., success=True)`` events at the ``success`` level."""
  if event_dict.pop("success", False):
    event_dict["level"] = SUCCESS_LEVEL
  return event_dict


def _renderer(use_color: bool) -> structlog.dev.ConsoleRenderer:
  styles = structlog.dev.ConsoleRenderer.get_default_level_styles(colors=use_color)
  styles[SUCCESS_LEVEL] = "\033[32m" if use_color else ""
  return structlog.dev.ConsoleRenderer(colors=use_color, level_styles=styles)


def configure_logging(
  log_file: Optional[Path] = None,
  *,
  level: str = "INFO",
  use_color: bool = False,
) -> Optional[Path]:
  logger = logging.getLogger(ROOT_LOGGER)
  for handler in list(logger.handlers):
    logger.removeHandler(handler)
    handler.close()
  logger.setLevel(getattr(logging, level))
  logger.propagate = False

  pre_chain: List[Any] = [
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
  ]

  console_handler = logging.StreamHandler(sys.stderr)
  console_handler.setFormatter(
    structlog.stdlib.ProcessorFormatter(
      processors=[
        structlog.stdlib.ProcessorFormatter.remove_processors_meta,
        _renderer(use_color),
      ],
      foreign_pre_chain=pre_chain,
    )
  )
  logger.addHandler(console_handler)

  if log_file is not None:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(
      structlog.stdlib.ProcessorFormatter(
        processors=[
          structlog.stdlib.ProcessorFormatter.remove_processors_meta,
          _renderer(False),
        ],
        foreign_pre_chain=pre_chain,
      )
    )
    logger.addHandler(file_handler)

  structlog.configure(
    processors=[
      structlog.stdlib.filter_by_level,
      structlog.stdlib.add_logger_name,
      structlog.stdlib.add_log_level,
      structlog.stdlib.PositionalArgumentsFormatter(),
      structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
      mark_success,
      structlog.processors.StackInfoRenderer(),
      structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=False,
  )
  return log_file


def shutdown_logging() -> None:
  logger = logging.getLogger(ROOT_LOGGER)
  for handler in list(logger.handlers):
    handler.flush()
    handler.close()
    logger.removeHandler(handler)


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
  """Get a structured logger instance."""
  return structlog.get_logger(name or ROOT_LOGGER)
