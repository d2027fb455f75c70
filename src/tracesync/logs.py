"""Loguru sink configuration."""

import sys
from pathlib import Path

from loguru import logger

from .config import LoggingConfig

DEFAULT_FORMAT = LoggingConfig.model_fields["format"].default


def setup_logging(log_config: LoggingConfig, debug: bool = False) -> None:
    """Replace loguru's default sink with the configured console and file sinks."""
    logger.remove()

    level = "DEBUG" if debug else log_config.level.upper()
    log_format = log_config.format
    if log_format == "text":
        log_format = DEFAULT_FORMAT

    logger.add(
        sink=lambda msg: print(msg, end="", file=sys.stderr),
        format=log_format,
        level=level,
        colorize=True,
    )

    if log_config.file_enabled:
        log_path = Path(log_config.file_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        logger.add(
            sink=log_path,
            format=log_format,
            level=level,
            rotation=log_config.file_rotation,
            retention=log_config.file_retention,
            serialize=log_config.json_logs,
        )
