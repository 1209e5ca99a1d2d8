# SPDX-License-Identifier: LGPL-3.0-or-later
# hyper2kubevirt/core/logger.py
from __future__ import annotations

import datetime as _dt
import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from termcolor import colored

from .exceptions import redact_context

TRACE = 5
if logging.getLevelName(TRACE) != "TRACE":
    logging.addLevelName(TRACE, "TRACE")

# level -> (emoji, termcolor colour)
_LEVELS = {
    "TRACE": ("🧬", "cyan"),
    "DEBUG": ("🔍", "blue"),
    "INFO": ("✅", "green"),
    "WARNING": ("⚠️", "yellow"),
    "ERROR": ("💥", "red"),
    "CRITICAL": ("🧨", "red"),
}

Ctx = Mapping[str, Any]


def _is_tty(stream: Any) -> bool:
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty())


def _one_value(v: Any, *, max_len: int = 240) -> str:
    s = str(v).replace("\n", "\\n").replace("\r", "\\r")
    return s if len(s) <= max_len else s[: max_len - 1] + "…"


def _safe_ctx(ctx: Optional[Ctx]) -> Dict[str, str]:
    """Context as printable strings, credentials masked."""
    if not ctx:
        return {}
    return {str(k): _one_value(v) for k, v in redact_context(dict(ctx)).items()}


class ContextLoggerAdapter(logging.LoggerAdapter):
    """
    Carries a persistent context (plan, vm, step...) into every record as
    `record.ctx`. Per-call `extra={"ctx": {...}}` is merged on top.

        log = Log.bind(logger, plan="p1", vm="vm-42")
        log.info("Created secret %s", path)
    """

    def __init__(self, logger: logging.Logger, ctx: Optional[Ctx] = None):
        super().__init__(logger, extra={"ctx": dict(ctx or {})})

    def process(self, msg: Any, kwargs: Dict[str, Any]) -> Tuple[Any, Dict[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        extra["ctx"] = {**self.extra["ctx"], **(extra.get("ctx") or {})}
        kwargs["extra"] = extra
        return msg, kwargs

    def bind(self, **ctx: Any) -> "ContextLoggerAdapter":
        return ContextLoggerAdapter(self.logger, {**self.extra["ctx"], **ctx})


@dataclass(frozen=True)
class LogStyle:
    color: bool = True
    show_ms: bool = False
    show_src: bool = False  # module:line
    show_logger: bool = False
    utc: bool = False


class EmojiFormatter(logging.Formatter):
    """Console line: `HH:MM:SS <emoji> LEVEL [src] message key=value...`."""

    def __init__(self, style: LogStyle):
        super().__init__()
        self._style = style

    def _timestamp(self, created: float) -> str:
        dt = _dt.datetime.fromtimestamp(created, tz=_dt.timezone.utc if self._style.utc else None)
        return dt.strftime("%H:%M:%S.%f")[:-3] if self._style.show_ms else dt.strftime("%H:%M:%S")

    def _source(self, record: logging.LogRecord) -> str:
        bits: List[str] = []
        if self._style.show_logger:
            bits.append(record.name)
        if self._style.show_src:
            bits.append(f"{record.module}:{record.lineno}")
        return f" [{' '.join(bits)}]" if bits else ""

    def format(self, record: logging.LogRecord) -> str:
        emoji, color = _LEVELS.get(record.levelname, ("•", None))
        use_color = bool(color) and self._style.color and _is_tty(sys.stderr)

        level = colored(record.levelname, color) if use_color else record.levelname
        msg = record.getMessage()
        if use_color and record.levelno >= logging.WARNING:
            msg = colored(msg, color, attrs=["bold"])

        ctx = _safe_ctx(getattr(record, "ctx", None))
        line = f"{self._timestamp(record.created)} {emoji} {level:<8}{self._source(record)} {msg}"
        if ctx:
            line += " " + " ".join(f"{k}={ctx[k]}" for k in sorted(ctx))
        if record.exc_info:
            tb = "\n".join("  " + ln for ln in self.formatException(record.exc_info).splitlines())
            line += "\n" + (colored(tb, "red") if use_color else tb)
        return line


class JsonFormatter(logging.Formatter):
    """One JSON object per line, for the cluster log collector."""

    def __init__(self, *, utc: bool = True):
        super().__init__()
        self._utc = utc

    def format(self, record: logging.LogRecord) -> str:
        ts = _dt.datetime.fromtimestamp(record.created, tz=_dt.timezone.utc if self._utc else None)
        obj: Dict[str, Any] = {
            "ts": ts.isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        ctx = _safe_ctx(getattr(record, "ctx", None))
        if ctx:
            obj["ctx"] = ctx
        if record.exc_info:
            obj["exc_type"] = record.exc_info[0].__name__ if record.exc_info[0] else "Exception"
            obj["traceback"] = self.formatException(record.exc_info)
        return json.dumps(obj, ensure_ascii=False)


class Log:
    @staticmethod
    def _level_from_flags(verbose: int, quiet: int) -> int:
        """-qq ERROR, -q WARNING, default INFO, -vv DEBUG, -vvv TRACE; quiet wins."""
        if quiet:
            return logging.ERROR if quiet >= 2 else logging.WARNING
        if verbose >= 3:
            return TRACE
        return logging.DEBUG if verbose >= 2 else logging.INFO

    @staticmethod
    def bind(logger: Any, **ctx: Any) -> ContextLoggerAdapter:
        if isinstance(logger, ContextLoggerAdapter):
            return logger.bind(**ctx)
        return ContextLoggerAdapter(logger, ctx)

    @staticmethod
    def _emit(logger: Any, level: int, marker: str, msg: str, ctx: Dict[str, Any]) -> None:
        logger.log(level, "%s %s", marker, msg, extra={"ctx": ctx} if ctx else None)

    @staticmethod
    def step(logger: Any, msg: str, **ctx: Any) -> None:
        Log._emit(logger, logging.INFO, "➡️ ", msg, ctx)

    @staticmethod
    def ok(logger: Any, msg: str, **ctx: Any) -> None:
        Log._emit(logger, logging.INFO, "✅", msg, ctx)

    @staticmethod
    def warn(logger: Any, msg: str, **ctx: Any) -> None:
        Log._emit(logger, logging.WARNING, "⚠️ ", msg, ctx)

    @staticmethod
    def fail(logger: Any, msg: str, **ctx: Any) -> None:
        Log._emit(logger, logging.ERROR, "💥", msg, ctx)

    @staticmethod
    def trace(logger: Any, msg: str, *args: Any, **ctx: Any) -> None:
        logger.log(TRACE, msg, *args, extra={"ctx": ctx} if ctx else None)

    @staticmethod
    def setup(
        verbose: int = 0,
        log_file: Optional[str] = None,
        *,
        quiet: int = 0,
        color: bool = True,
        utc: bool = False,
        json_logs: bool = False,
        logger_name: str = "hyper2kubevirt",
    ) -> logging.Logger:
        """
        (Re)configure the package logger: stderr handler plus an optional
        file. With json_logs both emit NDJSON for the controller's collector.
        """
        level = Log._level_from_flags(verbose, quiet)
        logger = logging.getLogger(logger_name)
        logger.propagate = False
        logger.setLevel(level)
        for h in list(logger.handlers):
            logger.removeHandler(h)
            h.close()

        def add(handler: logging.Handler, style: LogStyle) -> None:
            handler.setLevel(level)
            handler.setFormatter(JsonFormatter(utc=utc) if json_logs else EmojiFormatter(style))
            logger.addHandler(handler)

        add(
            logging.StreamHandler(stream=sys.stderr),
            LogStyle(color=color, show_ms=verbose >= 3, show_src=verbose >= 3, utc=utc),
        )
        if log_file:
            path = Path(log_file).expanduser().resolve()
            path.parent.mkdir(parents=True, exist_ok=True)
            add(
                logging.FileHandler(path, encoding="utf-8"),
                LogStyle(color=False, show_ms=True, show_src=True, show_logger=True, utc=utc),
            )

        logger.debug("Logger initialized (level=%s)", logging.getLevelName(level))
        return logger
