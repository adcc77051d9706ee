"""Logging configuration for the voxline CLI and service hosts.

Provides helpers:
* ``setup_logging`` – idempotent configuration with a console stream and two
    daily rotating files (info and debug/trace).
* ``get_logger`` – convenience that ensures configuration first.
* ``log_call`` – lightweight decorator for entry/exit tracing of sync and
    async callables.

Library modules only call ``logging.getLogger(__name__)``; configuring
handlers is left to entry points.
"""

from __future__ import annotations

import inspect
import logging
import os
from collections.abc import Callable
from functools import wraps
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Any, ParamSpec

__all__ = ["TRACE_LEVEL", "setup_logging", "get_logger", "log_call"]

# ----- Custom TRACE level -------------------------------------------------
TRACE_LEVEL = 5
if logging.getLevelName(TRACE_LEVEL) != "TRACE":
    logging.addLevelName(TRACE_LEVEL, "TRACE")


def _trace(
    self: logging.Logger,
    msg: str,
    *args: object,
    **kwargs: object,
) -> None:  # pragma: no cover - simple passthrough
    if self.isEnabledFor(TRACE_LEVEL):
        self._log(TRACE_LEVEL, msg, args, **kwargs)  # type: ignore[arg-type]


logging.Logger.trace = _trace  # type: ignore[attr-defined]

DEFAULT_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(funcName)s | %(message)s"
CONSOLE_FORMAT = "%(levelname)s %(name)s: %(message)s"


def _level_from_env(default: str = "INFO") -> int:
    name = os.getenv("LOG_LEVEL", default).upper()
    if name == "TRACE":
        return TRACE_LEVEL
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def setup_logging(force: bool = False, log_dir: Path | None = None) -> None:
    """Configure root logging.

    Args:
        force: Replace previously installed handlers.
        log_dir: Directory for ``voxline.log`` and ``voxline-debug.log``
            (rotated at midnight, 7 backups). Defaults to ``$VOXLINE_LOG_DIR``
            or ``./logs``.

    The root level comes from ``LOG_LEVEL`` (``TRACE`` accepted). The console
    handler writes to stderr so command output on stdout stays parseable.
    """
    if getattr(setup_logging, "_configured", False) and not force:
        return

    log_dir = Path(log_dir or os.getenv("VOXLINE_LOG_DIR", "logs"))
    log_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    if force:
        for h in list(root.handlers):
            root.removeHandler(h)
            h.close()

    level = _level_from_env()
    root.setLevel(min(level, logging.INFO))

    fmt = logging.Formatter(DEFAULT_FORMAT)

    info_handler = TimedRotatingFileHandler(
        log_dir / "voxline.log",
        when="midnight",
        backupCount=7,
        encoding="utf-8",
    )
    info_handler.setFormatter(fmt)
    info_handler.setLevel(logging.INFO)

    debug_handler = TimedRotatingFileHandler(
        log_dir / "voxline-debug.log",
        when="midnight",
        backupCount=7,
        encoding="utf-8",
    )
    debug_handler.setFormatter(fmt)
    debug_handler.setLevel(level)

    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    console.setLevel(max(level, logging.WARNING))

    root.addHandler(info_handler)
    root.addHandler(debug_handler)
    root.addHandler(console)

    # chatty third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    setup_logging._configured = True  # type: ignore[attr-defined]


def get_logger(name: str) -> logging.Logger:
    """Return a logger ensuring configuration is applied first."""
    setup_logging()
    return logging.getLogger(name)


P = ParamSpec("P")


def log_call(
    level: int = logging.DEBUG,
) -> Callable[[Callable[P, Any]], Callable[P, Any]]:
    """Return decorator logging entry/exit of the target callable.

    Coroutine functions get an async wrapper. Exceptions are logged with
    their classification (``kind`` when present) and re-raised.

    Example::

        @log_call()
        async def resolve_line(...): ...
    """

    def _decorator(fn: Callable[P, Any]) -> Callable[P, Any]:
        logger = logging.getLogger(fn.__module__)

        def _enter(args: tuple, kwargs: dict) -> None:
            if logger.isEnabledFor(level):
                logger.log(level, "ENTER %s args=%s kwargs=%s", fn.__qualname__, _shorten(args), _shorten(kwargs))

        def _exit(result: object) -> None:
            if logger.isEnabledFor(level):
                logger.log(level, "EXIT %s -> %s", fn.__qualname__, _shorten(result))

        def _error(exc: Exception) -> None:
            logger.warning("ERROR in %s: %s: %s", fn.__qualname__, getattr(exc, "kind", type(exc).__name__), exc)

        if inspect.iscoroutinefunction(fn):

            @wraps(fn)
            async def async_wrapper(*args: P.args, **kwargs: P.kwargs) -> Any:
                _enter(args, kwargs)
                try:
                    result = await fn(*args, **kwargs)
                except Exception as e:  # noqa: BLE001
                    _error(e)
                    raise
                _exit(result)
                return result

            return async_wrapper

        @wraps(fn)
        def sync_wrapper(*args: P.args, **kwargs: P.kwargs) -> Any:
            _enter(args, kwargs)
            try:
                result = fn(*args, **kwargs)
            except Exception as e:  # noqa: BLE001
                _error(e)
                raise
            _exit(result)
            return result

        return sync_wrapper

    return _decorator


def _shorten(obj: object, limit: int = 120) -> str:
    """Return a truncated repr for logging (never raises)."""
    try:
        s = repr(obj)
    except Exception:  # noqa: BLE001
        return type(obj).__name__
    if len(s) > limit:
        return s[: limit - 3] + "..."
    return s
