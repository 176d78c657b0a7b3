"""
Logging setup for the RISKEN MCP server: console + optional rotating file.

Usage:

    from risken_mcp.logging_util import configure_logging, get_logger

    configure_logging(level="DEBUG", console_level="INFO", log_file="risken-mcp.log")

    logger = get_logger(__name__)
    logger.info("Loaded JWKS from IdP")

Bearer tokens, authorization codes and client secrets must never be logged in
full; pass them through `redact()` first.
"""

import logging
from logging.handlers import RotatingFileHandler
from typing import Optional, Union


_LEVEL_MAP = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}

# Chatty third-party loggers; they only get through at WARNING unless we run at DEBUG.
_NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "sse_starlette")

DEFAULT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def _to_level(level: Union[int, str]) -> int:
    if isinstance(level, int):
        return level
    return _LEVEL_MAP.get(level.upper(), logging.INFO)


def configure_logging(
    *,
    level: Union[int, str] = "INFO",
    console_level: Optional[Union[int, str]] = None,
    file_level: Optional[Union[int, str]] = None,
    log_file: Optional[str] = None,
    max_bytes: int = 10 * 1024 * 1024,  # 10 MB
    backup_count: int = 5,
    fmt: str = DEFAULT_FORMAT,
    datefmt: str = "%Y-%m-%d %H:%M:%S",
) -> None:
    """
    Configure process-wide logging.

    Parameters
    ----------
    level:
        Root logger level. `DEBUG` also lets httpx/uvicorn access chatter through.
    console_level:
        Level for the stderr handler. Defaults to `level`.
    file_level:
        Level for the file handler. Defaults to `level`.
    log_file:
        When set, logs are also written to a `RotatingFileHandler`.
    max_bytes, backup_count:
        Rotation policy for `log_file`.

    Calling this more than once replaces the handlers installed previously.
    """
    root = logging.getLogger()
    root_level = _to_level(level)
    root.setLevel(root_level)

    for h in list(root.handlers):
        root.removeHandler(h)

    formatter = logging.Formatter(fmt=fmt, datefmt=datefmt)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(_to_level(console_level or level))
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    if log_file:
        file_handler = RotatingFileHandler(
            filename=log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(_to_level(file_level or level))
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    noisy_level = logging.DEBUG if root_level <= logging.DEBUG else logging.WARNING
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(noisy_level)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(name)


def redact(value: Optional[str], keep: int = 6) -> str:
    """Shorten a secret-bearing value to a recognisable prefix for log lines."""
    if not value:
        return "<empty>"
    if len(value) <= keep:
        return "***"
    return f"{value[:keep]}...({len(value)} chars)"
