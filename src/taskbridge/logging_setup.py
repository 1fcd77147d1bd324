# src/taskbridge/logging_setup.py

from __future__ import annotations

import logging
import sys
from collections.abc import Mapping
from pathlib import Path

APP_LOGGER = "taskbridge"
LOG_FILE_NAME = "taskbridge.log"

# Minimum console level per third-party logger prefix; anything unlisted needs ERROR.
THIRD_PARTY_CONSOLE_LEVELS: Mapping[str, int] = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "py.warnings": logging.ERROR,
}

_FORMAT = "%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"


class _ConsoleNoiseFilter(logging.Filter):
    """Pass every taskbridge record; hold other loggers to their configured floor."""

    def __init__(self, floors: Mapping[str, int] = THIRD_PARTY_CONSOLE_LEVELS) -> None:
        super().__init__()
        # longest prefix wins
        self._floors = sorted(floors.items(), key=lambda kv: len(kv[0]), reverse=True)

    def filter(self, record: logging.LogRecord) -> bool:
        name = record.name
        if name == APP_LOGGER or name.startswith(APP_LOGGER + "."):
            return True
        for prefix, floor in self._floors:
            if name == prefix or name.startswith(prefix + "."):
                return record.levelno >= floor
        return record.levelno >= logging.ERROR


def _file_handler(log_dir: str | Path, level: int, fmt: logging.Formatter) -> logging.Handler:
    path = Path(log_dir)
    path.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(str(path / LOG_FILE_NAME), encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(fmt)
    return handler


def setup_logging(
    *,
    log_dir: str | Path | None = ".local/taskbridge",
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG,
) -> None:
    """
    Console on stderr (filtered), plus a full log file under `log_dir`.

    Passing log_dir=None keeps logging console-only. Safe to call again:
    existing root handlers are replaced.
    """
    fmt = logging.Formatter(fmt=_FORMAT, datefmt=_DATEFMT)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(fmt)
    console.addFilter(_ConsoleNoiseFilter())

    handlers: list[logging.Handler] = [console]
    if log_dir is not None:
        handlers.append(_file_handler(log_dir, file_level, fmt))

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for old in list(root.handlers):
        root.removeHandler(old)
    for handler in handlers:
        root.addHandler(handler)

    logging.captureWarnings(True)
    # per-request lines stay out of the file too
    for name in ("httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)
