"""
Apply log level from the command line or env.

Single log level for all loggers. --log-level takes precedence over
IOT_SANDBOX_LOG_LEVEL.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

LOG_LEVEL_ENV = "IOT_SANDBOX_LOG_LEVEL"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _parse_level(raw: str) -> int:
    if not raw or not str(raw).strip():
        return logging.INFO
    raw = str(raw).strip().upper()
    if raw.isdigit():
        return int(raw)
    return int(getattr(logging, raw, logging.INFO))


def level_from_arg_or_env(arg: Optional[str]) -> int:
    """Resolve level: arg if given, else IOT_SANDBOX_LOG_LEVEL env, else INFO."""
    if arg:
        return _parse_level(arg)
    raw = os.environ.get(LOG_LEVEL_ENV, "").strip()
    return _parse_level(raw) if raw else logging.INFO


def configure_logging(arg: Optional[str] = None) -> int:
    """Install the root handler once and set the root level. Returns the level."""
    level = level_from_arg_or_env(arg)
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger().setLevel(level)
    return level
