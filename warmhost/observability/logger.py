"""Loguru-style logger facade backed by stdlib logging + rich.

Usage::

    from warmhost.observability.logger import logger

    log = logger.bind(component="router")
    log.info("Routed message for {user}", user=user_id)

Nothing is printed until a sink is added with ``logger.add(...)``;
the instance and gateway entry points do that once at startup.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import sys
from typing import TextIO

from rich.console import Console
from rich.logging import RichHandler

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

_root = logging.getLogger("warmhost")


def _caller_module(depth: int) -> tuple[str, str, int, str]:
    frame = sys._getframe(depth)
    return (
        frame.f_globals.get("__name__", "warmhost"),
        frame.f_code.co_filename,
        frame.f_lineno,
        frame.f_code.co_name,
    )


def _format_message(msg: str, args: tuple[object, ...], kwargs: dict[str, object]) -> str:
    try:
        if kwargs:
            return msg.format(**kwargs)
        if args:
            return msg.format(*args)
    except (IndexError, KeyError, ValueError):
        return msg
    return msg


class BoundLogger:
    __slots__ = ("_extras",)

    def __init__(self, extras: dict[str, object] | None = None) -> None:
        self._extras = extras or {}

    def bind(self, **kwargs: object) -> BoundLogger:
        return BoundLogger({**self._extras, **kwargs})

    def _log(self, depth: int, level: int, message: str, /, *args: object, **kwargs: object) -> None:
        module, path, lineno, func = _caller_module(depth)
        lib_logger = logging.getLogger(module if module.startswith("warmhost") else "warmhost")
        if not lib_logger.isEnabledFor(level):
            return
        record = lib_logger.makeRecord(
            name=lib_logger.name,
            level=level,
            fn=path,
            lno=lineno,
            msg=_format_message(message, args, kwargs),
            args=(),
            exc_info=None,
            func=func,
        )
        record.filename = os.path.basename(path)
        for k, v in self._extras.items():
            setattr(record, k, v)
        record.extras = self._extras  # type: ignore[attr-defined]
        lib_logger.handle(record)

    def trace(self, message: str, /, *args: object, **kwargs: object) -> None:
        self._log(3, TRACE, message, *args, **kwargs)

    def debug(self, message: str, /, *args: object, **kwargs: object) -> None:
        self._log(3, logging.DEBUG, message, *args, **kwargs)

    def info(self, message: str, /, *args: object, **kwargs: object) -> None:
        self._log(3, logging.INFO, message, *args, **kwargs)

    def warning(self, message: str, /, *args: object, **kwargs: object) -> None:
        self._log(3, logging.WARNING, message, *args, **kwargs)

    def error(self, message: str, /, *args: object, **kwargs: object) -> None:
        self._log(3, logging.ERROR, message, *args, **kwargs)


class _ContextFilter(logging.Filter):
    """Prefixes the message with the bound component."""

    def filter(self, record: logging.LogRecord) -> bool:
        component = getattr(record, "component", None)
        if component and not getattr(record, "_component_prefixed", False):
            record.msg = f"[{component}] {record.msg}"
            record._component_prefixed = True  # type: ignore[attr-defined]
        return True


_context_filter = _ContextFilter()


def _make_file_handler(path: str, *, level: int, max_bytes: int, backups: int) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backups)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s.%(msecs)03d | %(levelname)-8s | "
        "%(name)s:%(funcName)s:%(lineno)d - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    return handler


def _make_console_handler(stream: TextIO, level: int) -> logging.Handler:
    handler = RichHandler(
        level=level,
        console=Console(file=stream),
        show_time=True,
        show_level=True,
        show_path=True,
        markup=False,
        rich_tracebacks=True,
    )
    handler.setLevel(level)
    return handler


class LoguruCompat:
    def __init__(self) -> None:
        self._bound = BoundLogger()

    def bind(self, **kwargs: object) -> BoundLogger:
        return self._bound.bind(**kwargs)

    def add(
        self,
        sink: str | TextIO,
        *,
        level: str = "INFO",
        max_bytes: int = 50 * 1024 * 1024,
        backups: int = 10,
    ) -> None:
        numeric_level = TRACE if level.upper() == "TRACE" else getattr(logging, level.upper(), logging.INFO)

        match sink:
            case str() as path:
                handler = _make_file_handler(path, level=numeric_level, max_bytes=max_bytes, backups=backups)
            case stream:
                handler = _make_console_handler(stream, numeric_level)

        handler.addFilter(_context_filter)
        _root.addHandler(handler)


logger = LoguruCompat()

_root.setLevel(TRACE)
_root.propagate = False
