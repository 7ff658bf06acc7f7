"""Diagnostic logging for helmsman.

Operator-facing run reports go through the event broadcaster. This module
configures the standard ``logging`` tree used for developer diagnostics:

- console and optional file handlers on the root logger
- -v/-vv/-vvv verbosity mapped to INFO/DEBUG/TRACE
- StructuredLogger, which appends ``(key=value, ...)`` context to messages
"""

import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

DEFAULT_FORMAT = "%(levelname)s [%(name)s] %(message)s"
DEBUG_FORMAT = "%(asctime)s %(levelname)s [%(name)s:%(funcName)s:%(lineno)d] %(message)s"
TRACE_FORMAT = "%(asctime)s.%(msecs)03d %(levelname)s [%(name)s:%(funcName)s:%(lineno)d] %(message)s"

# Below DEBUG; also lets asyncssh's own debug output through
TRACE = 5
logging.addLevelName(TRACE, "TRACE")

VERBOSITY_LEVELS = {
    0: logging.WARNING,
    1: logging.INFO,
    2: logging.DEBUG,
    3: TRACE,
}

LEVEL_NAMES = {
    "trace": TRACE,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}

# Third-party loggers that are far chattier than ours at the same level
NOISY_LOGGERS = ("asyncssh",)


def get_level_from_verbosity(verbosity: int) -> int:
    """Convert a count of -v flags to a logging level."""
    return VERBOSITY_LEVELS[max(0, min(verbosity, 3))]


def get_level_from_name(level_name: str) -> int:
    """Convert a level name to a logging level.

    Raises:
        ValueError: If the name is not one of LEVEL_NAMES
    """
    try:
        return LEVEL_NAMES[level_name.lower()]
    except KeyError:
        valid = ", ".join(LEVEL_NAMES)
        raise ValueError(f"Invalid log level: {level_name}. Valid levels: {valid}") from None


def configure_logging(
    level: int = logging.WARNING,
    format_string: str | None = None,
    debug: bool = False,
    log_file: str | Path | None = None,
    file_level: int | None = None,
) -> None:
    """Install helmsman's handlers on the root logger.

    Existing root handlers are replaced, so calling this twice is safe.

    Args:
        level: Console level
        format_string: Console format (chosen from the level if None)
        debug: Use the detailed format regardless of level
        log_file: Also write to this file, always in the detailed format
        file_level: Level for the file (defaults to ``level``)

    Example:
        >>> configure_logging(level=logging.INFO, log_file="/tmp/helmsman.log",
        ...                   file_level=logging.DEBUG)
    """
    if format_string is None:
        if level <= TRACE:
            format_string = TRACE_FORMAT
        elif debug or level <= logging.DEBUG:
            format_string = DEBUG_FORMAT
        else:
            format_string = DEFAULT_FORMAT

    root_logger = logging.getLogger()
    root_logger.setLevel(min(level, file_level or level))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(format_string))
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(file_level or level)
        file_handler.setFormatter(logging.Formatter(DEBUG_FORMAT))
        root_logger.addHandler(file_handler)

    quiet = logging.DEBUG if min(level, file_level or level) <= TRACE else logging.WARNING
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(quiet)


def format_context(context: dict[str, Any]) -> str:
    return ", ".join(f"{k}={v}" for k, v in context.items())


class StructuredLogger:
    """Logger that appends structured context to every message.

    Attributes:
        logger: Underlying Python logger
        context: Context added to every message

    Example:
        >>> log = StructuredLogger("helmsman.cli", task="deploy")
        >>> log.info("Resolved targets", count=3)
        INFO [helmsman.cli] Resolved targets (task=deploy, count=3)
    """

    def __init__(self, name: str, **context: Any) -> None:
        self.logger = logging.getLogger(name)
        self.context: dict[str, Any] = dict(context)

    def bind(self, **context: Any) -> "StructuredLogger":
        """A new logger with this one's context plus ``context``."""
        return StructuredLogger(self.logger.name, **{**self.context, **context})

    def _format(self, message: str, **extra: Any) -> str:
        combined = {**self.context, **extra}
        if not combined:
            return message
        return f"{message} ({format_context(combined)})"

    def log(self, level: int, message: str, **extra: Any) -> None:
        self.logger.log(level, self._format(message, **extra))

    def trace(self, message: str, **extra: Any) -> None:
        self.log(TRACE, message, **extra)

    def debug(self, message: str, **extra: Any) -> None:
        self.log(logging.DEBUG, message, **extra)

    def info(self, message: str, **extra: Any) -> None:
        self.log(logging.INFO, message, **extra)

    def warning(self, message: str, **extra: Any) -> None:
        self.log(logging.WARNING, message, **extra)

    def error(self, message: str, **extra: Any) -> None:
        self.log(logging.ERROR, message, **extra)

    @contextmanager
    def performance(
        self,
        operation: str,
        level: int = logging.INFO,
        threshold: float | None = None,
        **context: Any,
    ) -> Generator[None, None, None]:
        """Time a block and log its duration.

        Nothing is logged when ``threshold`` is set and the block was faster.
        """
        start = time.perf_counter()
        try:
            yield
        finally:
            duration = time.perf_counter() - start
            if threshold is None or duration >= threshold:
                self.log(level, f"{operation} completed in {duration:.3f}s", **context)


def get_logger(name: str, **context: Any) -> StructuredLogger:
    """Get a StructuredLogger for a module.

    Example:
        >>> log = get_logger(__name__, component="executor")
    """
    return StructuredLogger(name, **context)
