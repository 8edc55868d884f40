"""Logging for the studio entry points.

app.py and studio_cli.py call configure() at import; library modules only
ever do ``log = logging.getLogger(__name__)``.

Handlers installed on the root logger:
  console   STUDIO_LOG_LEVEL (default INFO), one line per record
  file      <STUDIO_LOG_DIR or ./logs>/studio.log, DEBUG, rotating 5 × 5 MB

Provider SDK and HTTP client loggers are held at WARNING unless the console
runs at DEBUG.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
from pathlib import Path
from typing import Optional, Union

DEFAULT_LOGS_DIR = Path(__file__).parent / "logs"
LOG_FILENAME = "studio.log"

_CONSOLE_FMT = "%(asctime)s  %(levelname)-7s  %(name)s: %(message)s"
_FILE_FMT    = "%(asctime)s  %(levelname)-7s  %(name)-20s  %(filename)s:%(lineno)d  %(message)s"
_DATE_FMT    = "%Y-%m-%d %H:%M:%S"

_THIRD_PARTY = ("urllib3", "httpx", "httpcore", "werkzeug", "replicate", "google_genai", "PIL")


def _level(level: Union[str, int]) -> int:
    if isinstance(level, int):
        return level
    return getattr(logging, str(level).upper(), logging.INFO)


def _console_handler() -> Optional[logging.Handler]:
    for handler in logging.getLogger().handlers:
        if handler.get_name() == "console":
            return handler
    return None


def _tune_third_party(console_level: int) -> None:
    target = logging.DEBUG if console_level <= logging.DEBUG else logging.WARNING
    for name in _THIRD_PARTY:
        logging.getLogger(name).setLevel(target)


def configure(level: Union[str, int] = "INFO", log_dir: Optional[Union[str, Path]] = None) -> Path:
    """Install console and rotating-file handlers once; returns the log file path."""
    directory = Path(log_dir or os.environ.get("STUDIO_LOG_DIR") or DEFAULT_LOGS_DIR)
    log_file = directory / LOG_FILENAME

    root = logging.getLogger()
    if _console_handler() is not None:
        return log_file

    directory.mkdir(parents=True, exist_ok=True)
    console_level = _level(level)
    root.setLevel(logging.DEBUG)

    console = logging.StreamHandler()
    console.set_name("console")
    console.setLevel(console_level)
    console.setFormatter(logging.Formatter(_CONSOLE_FMT, datefmt=_DATE_FMT))
    root.addHandler(console)

    rotating = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=5 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    rotating.set_name("file")
    rotating.setLevel(logging.DEBUG)
    rotating.setFormatter(logging.Formatter(_FILE_FMT, datefmt=_DATE_FMT))
    root.addHandler(rotating)

    _tune_third_party(console_level)
    return log_file


def set_console_level(level: Union[str, int]) -> None:
    """Change the console verbosity after configure() (e.g. CLI --verbose)."""
    handler = _console_handler()
    if handler is None:
        return
    lvl = _level(level)
    handler.setLevel(lvl)
    _tune_third_party(lvl)
