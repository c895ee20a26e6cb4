"""Logging setup shared by every module."""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

from dvr_manager.config import env

_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class CustomLogger(logging.Logger):
    """Logger with a shortcut for errors that should carry a traceback."""

    def error_trace(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        """Log an error message with the active exception's traceback."""
        kwargs.setdefault("exc_info", True)
        self.error(msg, *args, **kwargs)


def setup_logger(name: str, log_file: Optional[Path] = None) -> CustomLogger:
    """Return a configured logger for ``name``.

    Handlers are attached once per logger name; calling this repeatedly for
    the same module is safe.
    """
    logging.setLoggerClass(CustomLogger)
    logger = logging.getLogger(name)
    logging.setLoggerClass(logging.Logger)

    if logger.handlers:
        return logger  # type: ignore[return-value]

    logger.setLevel(env.LOG_LEVEL)
    logger.propagate = False
    formatter = logging.Formatter(_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if env.ENABLE_LOGGING:
        log_file = log_file or env.LOG_FILE
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=10 * 1024 * 1024,
                backupCount=5,
            )
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
        except OSError as e:
            logger.warning(f"File logging disabled, cannot open {log_file}: {e}")

    return logger  # type: ignore[return-value]
