# logging_config.py
import logging
from pathlib import Path
from typing import Optional

DEFAULT_LOG_FILE = Path.home() / ".cache" / "ytqueue" / "ytqueue.log"


def setup_logging(level: str = "INFO", log_file: Optional[Path] = DEFAULT_LOG_FILE) -> None:
    """Configures the 'ytqueue' logger.

    The terminal belongs to the TUI, so records only go to a file. With no
    log file, a NullHandler keeps library records from reaching stderr.
    """
    logger = logging.getLogger("ytqueue")
    logger.setLevel(getattr(logging, level.upper()))
    logger.handlers.clear()
    logger.propagate = False

    if log_file is None:
        logger.addHandler(logging.NullHandler())
        return

    log_file = Path(log_file)
    log_file.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s"
    ))
    logger.addHandler(file_handler)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"ytqueue.{name}")


class YTQueueError(Exception):
    """Base exception for ytqueue."""


class OperationCancelled(YTQueueError):
    """A blocking operation observed a cancelled token."""


class PlayerError(YTQueueError):
    """Media player control errors."""


class ConnectionTimeout(PlayerError):
    """The player never exposed its IPC endpoint."""


class IpcError(PlayerError):
    """The IPC socket could not be written to or was closed."""


class PropertyUnavailable(PlayerError):
    """A get_property request returned no usable value."""
