"""Logging setup and secret redaction for palacechat."""

from __future__ import annotations

import logging
import logging.handlers
import os
from pathlib import Path

__all__ = ["setup_logging", "get_log_path", "redact_secret", "LOG_DIR_ENV"]

LOG_DIR_ENV = "PALACECHAT_LOG_DIR"
_DEFAULT_LOG_DIR = Path("~/.palacechat/logs")
_LOG_FILENAME = "palacechat.log"
_FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_CONSOLE_FORMAT = "%(levelname)s %(name)s: %(message)s"
# SDK and HTTP loggers log every request at INFO/DEBUG.
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "anthropic", "openai")

_LOG_PATH: Path | None = None


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Route root logging to a rotating file and, optionally, stderr.

    The console handler never goes below WARNING so that log output does not
    interleave with the streamed conversation; the file receives ``level``.
    Calling again is a no-op unless ``force`` is set.
    """

    global _LOG_PATH
    if _LOG_PATH is not None and not force:
        return _LOG_PATH

    directory = _resolve_log_dir(log_dir)
    directory.mkdir(parents=True, exist_ok=True)
    log_path = directory / _LOG_FILENAME

    handlers: list[logging.Handler] = [_file_handler(log_path, level, max_bytes, backup_count)]
    if console:
        handlers.append(_console_handler(level))

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    quiet_level = max(level, logging.WARNING)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)

    _LOG_PATH = log_path
    return log_path


def get_log_path() -> Path | None:
    """Return the log file chosen by the last :func:`setup_logging` call."""

    return _LOG_PATH


def redact_secret(value: str | None) -> str:
    """Mask all but the first and last two characters of a credential."""

    secret = (value or "").strip()
    if len(secret) <= 4:
        return "*" * len(secret)
    return secret[:2] + "*" * (len(secret) - 4) + secret[-2:]


def _file_handler(path: Path, level: int, max_bytes: int, backup_count: int) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    return handler


def _console_handler(level: int) -> logging.Handler:
    handler = logging.StreamHandler()
    handler.setLevel(max(level, logging.WARNING))
    handler.setFormatter(logging.Formatter(_CONSOLE_FORMAT))
    return handler


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    return Path(log_dir or os.environ.get(LOG_DIR_ENV) or _DEFAULT_LOG_DIR).expanduser()
