"""Structured logging for pv2mqtt.

Every module logs through ``get_logger(__name__)``. Records can be written as
JSON lines (for log shipping) and/or as human-readable text, and both carry the
correlation id of the event the bridge is currently handling.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import cast

from typing_extensions import override

__all__ = [
    "HumanReadableFormatter",
    "JSONFormatter",
    "PvLogger",
    "get_logger",
    "quiet_foreign_loggers",
    "set_package_level",
]

# library loggers that are chatty at INFO
FOREIGN_LOGGERS: dict[str, int] = {
    "uvicorn": logging.WARNING,
    "uvicorn.error": logging.WARNING,
    "uvicorn.access": logging.WARNING,
    "aiomqtt": logging.ERROR,
    "mqtt": logging.ERROR,
    "zeroconf": logging.WARNING,
    "asyncio": logging.WARNING,
}


def _context_of(record: logging.LogRecord) -> Mapping[str, object] | None:
    extra_data = getattr(record, "extra_data", None)
    if isinstance(extra_data, Mapping) and extra_data:
        return cast("Mapping[str, object]", extra_data)
    return None


class JSONFormatter(logging.Formatter):
    """Formatter that outputs one JSON object per record."""

    @override
    def format(self, record: logging.LogRecord) -> str:
        from pv2mqtt.correlation import get_correlation_id

        log_data: dict[str, object] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "message": record.getMessage(),
            "correlation_id": get_correlation_id(),
        }
        context = _context_of(record)
        if context:
            log_data["context"] = dict(context)
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            log_data["stack_info"] = self.formatStack(record.stack_info)

        return json.dumps(log_data, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Formatter for console output: ``ts level [module:line] [corr] > msg | k=v``."""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s.%(msecs)03d %(levelname)s [%(module)s:%(lineno)d] %(correlation_id)s > %(message)s",
            datefmt="%m/%d/%y %H:%M:%S",
        )

    @override
    def format(self, record: logging.LogRecord) -> str:
        from pv2mqtt.correlation import get_correlation_id

        correlation_id = get_correlation_id()
        record.correlation_id = f"[{correlation_id[:8]}]" if correlation_id else "[--------]"
        formatted = super().format(record)

        context = _context_of(record)
        if context:
            context_str = " | ".join(f"{k}={v}" for k, v in context.items())
            formatted = f"{formatted} | {context_str}"

        return formatted


class PvLogger:
    """Thin wrapper around :class:`logging.Logger` that accepts structured ``extra`` context.

    ``extra`` is a plain mapping; it is stored on the record as ``extra_data``
    so both formatters can render it without colliding with LogRecord attributes.
    """

    def __init__(
        self,
        name: str,
        log_format: str = "human",
        json_file: str | Path | None = None,
        human_output: str | None = "stdout",
    ) -> None:
        self.name: str = name
        self.logger: logging.Logger = logging.getLogger(name)
        self.log_format: str = log_format

        from pv2mqtt.const import PV_DEBUG

        self.logger.setLevel(logging.DEBUG if PV_DEBUG else logging.INFO)
        # loggers are process-wide; only the first wrapper installs handlers
        if not self.logger.handlers:
            self._configure_handlers(json_file, human_output)
            self.logger.propagate = False

    def _configure_handlers(self, json_file: str | Path | None, human_output: str | None) -> None:
        handler_level = self.logger.level

        if self.log_format in ("json", "both") and json_file:
            try:
                json_path = Path(json_file)
                json_path.parent.mkdir(parents=True, exist_ok=True)
                json_handler = logging.FileHandler(json_path, mode="a")
            except OSError as e:
                print(f"Warning: Failed to create JSON log file {json_file}: {e}", file=sys.stderr)
            else:
                json_handler.setFormatter(JSONFormatter())
                json_handler.setLevel(handler_level)
                self.logger.addHandler(json_handler)
        elif self.log_format == "json":
            # no file configured, JSON goes to stdout
            json_stream = logging.StreamHandler(sys.stdout)
            json_stream.setFormatter(JSONFormatter())
            json_stream.setLevel(handler_level)
            self.logger.addHandler(json_stream)

        if self.log_format in ("human", "both"):
            output = human_output or "stdout"
            human_handler: logging.Handler
            if output == "stdout":
                human_handler = logging.StreamHandler(sys.stdout)
            elif output == "stderr":
                human_handler = logging.StreamHandler(sys.stderr)
            else:
                try:
                    human_path = Path(output)
                    human_path.parent.mkdir(parents=True, exist_ok=True)
                    human_handler = logging.FileHandler(human_path, mode="a")
                except OSError as e:
                    print(f"Warning: Failed to create human log file {output}: {e}", file=sys.stderr)
                    human_handler = logging.StreamHandler(sys.stdout)

            human_handler.setFormatter(HumanReadableFormatter())
            human_handler.setLevel(handler_level)
            self.logger.addHandler(human_handler)

    def _log(self, level: int, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        extra_payload = {"extra_data": dict(extra)} if extra else None
        self.logger.log(level, msg, *args, extra=extra_payload, stacklevel=3)

    def debug(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._log(logging.DEBUG, msg, *args, extra=extra)

    def info(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._log(logging.INFO, msg, *args, extra=extra)

    def warning(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._log(logging.WARNING, msg, *args, extra=extra)

    def error(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._log(logging.ERROR, msg, *args, extra=extra)

    def critical(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._log(logging.CRITICAL, msg, *args, extra=extra)

    def exception(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        """Log at ERROR with the active exception's traceback."""
        log_extra = {"extra_data": dict(extra)} if extra else None
        self.logger.exception(msg, *args, extra=log_extra, stacklevel=2)

    def set_level(self, level: int) -> None:
        """Set the level on the logger and every handler it owns."""
        self.logger.setLevel(level)
        for handler in self.logger.handlers:
            handler.setLevel(level)

    @property
    def handlers(self) -> list[logging.Handler]:
        return self.logger.handlers


def get_logger(
    name: str,
    log_format: str | None = None,
    json_file: str | Path | None = None,
    human_output: str | None = None,
) -> PvLogger:
    """Get a PvLogger for ``name``.

    Args:
        name: Logger name, normally ``__name__``
        log_format: "json", "human" or "both" (defaults to PV_LOG_FORMAT)
        json_file: JSON output file (defaults to PV_LOG_JSON_FILE)
        human_output: "stdout", "stderr" or a file path (defaults to PV_LOG_HUMAN_OUTPUT)

    """
    from pv2mqtt.const import PV_LOG_FORMAT, PV_LOG_HUMAN_OUTPUT, PV_LOG_JSON_FILE

    return PvLogger(
        name=name,
        log_format=log_format or PV_LOG_FORMAT,
        json_file=json_file or PV_LOG_JSON_FILE,
        human_output=human_output or PV_LOG_HUMAN_OUTPUT,
    )


def quiet_foreign_loggers() -> None:
    """Route third-party loggers through a single stdout handler at reduced verbosity."""
    from pv2mqtt.const import FOREIGN_LOG_FORMATTER

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(FOREIGN_LOG_FORMATTER)
    for name, level in FOREIGN_LOGGERS.items():
        foreign = logging.getLogger(name)
        foreign.setLevel(level)
        foreign.propagate = False
        if not foreign.handlers:
            foreign.addHandler(handler)


def set_package_level(level: int, package: str = "pv2mqtt") -> None:
    """Apply ``level`` to every logger (and its handlers) already created under ``package``."""
    for name in list(logging.root.manager.loggerDict):
        if name != package and not name.startswith(f"{package}."):
            continue
        pkg_logger = logging.getLogger(name)
        pkg_logger.setLevel(level)
        for handler in pkg_logger.handlers:
            handler.setLevel(level)
