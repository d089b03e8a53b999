from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s\t%(levelname)s %(name)s: %(message)s"
CONSOLE_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"
RUN_SEPARATOR = "************"
ROOT_LOGGER = "restic_backup"


class SingleLineFormatter(logging.Formatter):
    """Keeps one log record on one line so the log file stays greppable."""

    def format(self, record: logging.LogRecord) -> str:
        return flatten(super().format(record))


def flatten(message: str) -> str:
    return message.replace("\r\n", "\n").replace("\r", "\n").strip("\n").replace("\n", "   ")


def configure_logging(level: str = "INFO", log_file: Optional[Path] = None) -> logging.Logger:
    """Route package logs to stdout and, when possible, to an append-only file."""
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level.upper())
    logger.propagate = False

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(SingleLineFormatter(CONSOLE_FORMAT, DATE_FORMAT))
    logger.addHandler(console)

    if log_file:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        except OSError as exc:
            logger.warning("Could not open log file %s (%s); logging to console only", log_file, exc)
        else:
            file_handler.setFormatter(SingleLineFormatter(LOG_FORMAT, DATE_FORMAT))
            logger.addHandler(file_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Returns a logger under the package logger, also when run as ``__main__``."""
    if name != ROOT_LOGGER and not name.startswith(ROOT_LOGGER + "."):
        leaf = name.rsplit(".", 1)[-1].strip("_")
        name = f"{ROOT_LOGGER}.{leaf}"
    return logging.getLogger(name)


def write_separator(logger: Optional[logging.Logger] = None) -> None:
    """Writes an undated run boundary marker straight to every file handler."""
    logger = logger or logging.getLogger(ROOT_LOGGER)
    for handler in logger.handlers:
        if not isinstance(handler, logging.FileHandler):
            continue
        try:
            handler.acquire()
            try:
                handler.stream.write(RUN_SEPARATOR + "\n")
                handler.flush()
            finally:
                handler.release()
        except (OSError, ValueError) as exc:
            print(f"Could not write to log file {handler.baseFilename}: {exc}", file=sys.stderr)
