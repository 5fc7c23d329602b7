"""Structured ECS logging and user-facing notices."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
import json
import logging
from pathlib import Path
from typing import Callable

from b6p_session.config.schema import LoggingConfig


ROOT_LOGGER_NAME = "b6p_session"


def _strip_empty(value: object) -> object | None:
    if isinstance(value, dict):
        cleaned = {key: _strip_empty(item) for key, item in value.items()}
        return {key: item for key, item in cleaned.items() if item is not None} or None
    if isinstance(value, list):
        cleaned_list = [_strip_empty(item) for item in value]
        return [item for item in cleaned_list if item is not None] or None
    if value in ("", None):
        return None
    return value


class ECSJsonFormatter(logging.Formatter):
    def __init__(self, service_name: str = "b6p-session") -> None:
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created, UTC).isoformat(timespec="microseconds")
        payload: dict[str, object] = {
            "@timestamp": timestamp,
            "message": record.getMessage(),
            "log": {
                "level": record.levelname.lower(),
                "logger": record.name,
            },
            "service": {
                "name": getattr(record, "service_name", self.service_name),
            },
            "event": {
                "kind": "event",
                "category": getattr(record, "event_category", "web"),
                "action": getattr(record, "event_action", None),
                "outcome": getattr(record, "event_outcome", None),
            },
            "url": {
                "origin": getattr(record, "origin", None),
            },
            "organization": {
                "id": getattr(record, "org_u", None),
            },
            "b6p": {
                "component": getattr(record, "service", None),
                "payload": getattr(record, "payload", None),
            },
        }
        if record.exc_info:
            payload["error"] = {"message": self.formatException(record.exc_info)}
        cleaned = _strip_empty(payload) or {}
        return json.dumps(cleaned, separators=(",", ":"))


class FlatJsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, UTC).isoformat(timespec="milliseconds"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
            "component": getattr(record, "service", None),
            "origin": getattr(record, "origin", None),
            "payload": getattr(record, "payload", None),
        }
        return json.dumps({key: value for key, value in payload.items() if value is not None}, separators=(",", ":"))


def _formatter(config: LoggingConfig) -> logging.Formatter:
    if config.fmt == "json":
        return FlatJsonFormatter()
    return ECSJsonFormatter(service_name=config.service_name)


def _sink_handler(config: LoggingConfig, formatter: logging.Formatter) -> logging.Handler:
    if config.sink == "file":
        log_file = Path(config.file_path or "logs/b6p-session.log")
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.FileHandler(log_file, encoding="utf-8")
    else:
        handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    return handler


def configure_logging(config: LoggingConfig, force: bool = False) -> None:
    root = logging.getLogger(ROOT_LOGGER_NAME)
    if getattr(root, "_b6p_configured", False) and not force:
        return

    root.setLevel(config.level)
    for existing in list(root.handlers):
        existing.close()
    root.handlers.clear()
    root.addHandler(_sink_handler(config, _formatter(config)))
    root.propagate = False
    setattr(root, "_b6p_configured", True)


def get_logger(name: str, level: str = "INFO") -> logging.Logger:
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    if name.startswith(ROOT_LOGGER_NAME):
        parent = logging.getLogger(ROOT_LOGGER_NAME)
        if parent.handlers:
            logger.setLevel(level)
            logger.propagate = True
            return logger

    # Unconfigured: defer to whatever the host application set up (pytest caplog included).
    logger.setLevel(level)
    return logger


NoticeHook = Callable[[dict[str, object]], None]


@dataclass(slots=True)
class EventLogger:
    """Logs user-facing notices and forwards them to an observer.

    The observer is whatever the host surfaces messages through (a status bar,
    a toast, a test list). It is advisory: hook failures are logged and dropped.
    """

    logger: logging.Logger
    service_name: str
    publish_hook: NoticeHook | None = None

    def emit(
        self,
        *,
        message: str,
        action: str,
        origin: str | None = None,
        outcome: str | None = None,
        payload: dict[str, object] | None = None,
        level: str = "INFO",
    ) -> dict[str, object]:
        event_payload: dict[str, object] = {
            "service_name": self.service_name,
            "action": action,
            "origin": origin or "",
            "outcome": outcome or "",
            "message": message,
            "payload": payload or {},
            "timestamp": datetime.now(UTC).isoformat(timespec="microseconds"),
            "level": level.upper(),
        }
        self.logger.log(
            getattr(logging, level.upper(), logging.INFO),
            message,
            extra={
                "service_name": self.service_name,
                "service": "notice",
                "event_action": action,
                "event_category": "session",
                "event_outcome": outcome,
                "origin": origin,
                "payload": payload or {},
            },
        )
        if self.publish_hook:
            try:
                self.publish_hook(event_payload)
            except Exception as exc:
                self.logger.debug(
                    "notice observer failed",
                    extra={"service": "notice", "payload": {"error": str(exc)}},
                )
        return event_payload
