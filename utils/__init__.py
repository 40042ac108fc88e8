"""Shared utilities: config, logger, retry, JSON repair, image helpers, telemetry."""

from utils.config import AppConfig, load_config
from utils.logger import setup_logging, log_structured
from utils.retry import with_retry, backoff_delay
from utils.json_repair import SafeJsonParser

__all__ = [
    "AppConfig",
    "load_config",
    "setup_logging",
    "log_structured",
    "with_retry",
    "backoff_delay",
    "SafeJsonParser",
]
