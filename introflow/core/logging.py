"""Logging configuration and setup for IntroFlow.

Everything logs through the root logger to the console and ``introflow.log``.
Dead-lettered work is also written to its own ``dead_letters.log`` so
operators can tail the failures that need a human without the poll noise.
"""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from introflow.core.config.models import LoggingConfig

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DEAD_LETTER_LOGGER = "introflow.dead_letters"


def _rotating_handler(path: Path, config: LoggingConfig) -> RotatingFileHandler:
    return RotatingFileHandler(
        path,
        maxBytes=config.max_size_mb * 1024 * 1024,
        backupCount=config.backup_count,
        encoding="utf-8",
    )


def setup_logging(config: LoggingConfig | None = None, verbose: bool = False) -> None:
    """Configure the root logger and the dead-letter log.

    Args:
        config: Logging section of the loaded config. None uses defaults.
        verbose: Force DEBUG regardless of the configured level.
    """
    config = config or LoggingConfig()
    level = logging.DEBUG if verbose else getattr(logging, config.level.upper())
    log_dir = Path(config.directory)
    log_dir.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    file_handler = _rotating_handler(log_dir / "introflow.log", config)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    # Propagates to root as well, so dead letters show up in both files
    dead_letter_logger = logging.getLogger(DEAD_LETTER_LOGGER)
    dead_letter_logger.handlers.clear()
    dead_letter_handler = _rotating_handler(log_dir / "dead_letters.log", config)
    dead_letter_handler.setFormatter(logging.Formatter("%(asctime)s - %(message)s", datefmt=DATE_FORMAT))
    dead_letter_logger.addHandler(dead_letter_handler)

    # Poll loops run every few seconds
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

    logging.info(f"Logging initialized: level={logging.getLevelName(level)}, directory={log_dir}")


def get_dead_letter_logger() -> logging.Logger:
    """Get the logger that records dead-lettered events and tasks."""
    return logging.getLogger(DEAD_LETTER_LOGGER)
