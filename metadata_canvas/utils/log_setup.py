"""Loguru sink configuration.

Extraction, normalization and geocoding failures are not raised to
callers. They are logged with ``extraction_failure=True`` bound on the record so an
operator can route them to a dedicated sink.
"""

from __future__ import annotations

import sys
from pathlib import Path

from loguru import logger

from metadata_canvas.utils.config import LoggingConfig

CONSOLE_FORMAT = "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <level>{message}</level>"


def failure_logger():
    """Logger bound for silent-failure records."""
    return logger.bind(extraction_failure=True)


def _is_failure_record(record) -> bool:
    return bool(record["extra"].get("extraction_failure"))


def setup_logging(config: LoggingConfig | None = None, *, verbose: bool = False) -> None:
    """Configure Loguru sinks for the pipeline."""
    config = config or LoggingConfig()
    level = "DEBUG" if verbose else config.level.upper()

    logger.remove()
    logger.add(sys.stderr, format=CONSOLE_FORMAT, level=level)

    if config.file:
        log_file = Path(config.file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(log_file),
            rotation=config.rotation,
            retention=config.retention,
            level="DEBUG",
        )

    if config.extraction_failure_log:
        failure_file = Path(config.extraction_failure_log)
        failure_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(failure_file),
            level="DEBUG",
            filter=_is_failure_record,
            serialize=True,
        )
