from __future__ import annotations

import logging
import os
import sys
from typing import Any, MutableMapping

_DEFAULT_LOG_LEVEL = "INFO"
_RESET = "\x1b[0m"
_LEVEL_COLORS = {
    "DEBUG": "\x1b[36m",
    "INFO": "\x1b[32m",
    "WARNING": "\x1b[33m",
    "ERROR": "\x1b[31m",
    "CRITICAL": "\x1b[1;31m",
}
_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | env=%(environment_id)s | %(message)s"


class _EnvironmentFilter(logging.Filter):
    """Guarantee every record carries an environment_id so the format never breaks."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "environment_id"):
            record.environment_id = "-"
        return True


class EnvironmentLogger(logging.LoggerAdapter):
    """Logger adapter tagging records with the environment a run operates on."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        extra.setdefault("environment_id", self.extra.get("environment_id", "-"))
        kwargs["extra"] = extra
        return msg, kwargs


def bind_environment(logger: logging.Logger, environment_id: str | None) -> EnvironmentLogger:
    return EnvironmentLogger(logger, {"environment_id": environment_id or "-"})


class _ColorFormatter(logging.Formatter):
    def __init__(self, fmt: str, datefmt: str, *, use_color: bool) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        original = record.levelname
        color = _LEVEL_COLORS.get(original) if self._use_color else None
        if color:
            record.levelname = f"{color}{original}{_RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = original


def _should_use_color() -> bool:
    return not os.getenv("NO_COLOR") and sys.stderr.isatty()


def _resolve_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    candidate = (level or os.getenv("SANDBOX_LOG_LEVEL", _DEFAULT_LOG_LEVEL)).upper()
    resolved = logging.getLevelName(candidate)
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(*, level: str | int | None = None, force: bool = False) -> None:
    root = logging.getLogger()
    resolved_level = _resolve_level(level)
    root.setLevel(resolved_level)

    if root.handlers and not force:
        for handler in root.handlers:
            handler.setLevel(resolved_level)
            if not any(isinstance(f, _EnvironmentFilter) for f in handler.filters):
                handler.addFilter(_EnvironmentFilter())
        return

    handler = logging.StreamHandler()
    handler.setLevel(resolved_level)
    handler.addFilter(_EnvironmentFilter())
    handler.setFormatter(
        _ColorFormatter(fmt=_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S", use_color=_should_use_color())
    )
    root.handlers.clear()
    root.addHandler(handler)
