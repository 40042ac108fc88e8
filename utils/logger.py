"""Structured logging; no global state beyond logging tree."""

from __future__ import annotations

import logging
import sys
from typing import Any

DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(
    level: str = "INFO",
    format_string: str | None = None,
    stream: Any = None,
) -> None:
    """
    Configure root logger once. Safe to call from main or tests.
    Chatty HTTP libraries are held at WARNING so provider calls don't flood the log.
    """
    stream = stream or sys.stderr
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=format_string or DEFAULT_FORMAT,
        datefmt="%Y-%m-%dT%H:%M:%S",
        stream=stream,
        force=True,
    )
    for noisy in ("urllib3", "requests", "PIL"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def log_structured(logger: logging.Logger, level: int, msg: str, **kwargs: Any) -> None:
    """Emit a log record with extra keys (trace_id, provider, verdict, ...) for structured aggregation."""
    extra = {k: v for k, v in kwargs.items() if v is not None}
    if extra:
        pairs = " ".join(f"{k}={v}" for k, v in extra.items())
        logger.log(level, "%s | %s", msg, pairs, extra=extra)
    else:
        logger.log(level, msg)
