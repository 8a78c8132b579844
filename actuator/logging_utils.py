#!/usr/bin/env python3
"""
Actuator - Logging Utilities

Structured logging for the Actuator service.

Key Features:
- NDJSON (newline-delimited JSON) output, opt-in via LOG_JSON_ENABLED
- Plain text output otherwise, with the request correlation ID in each line
- CorrelationIdFilter that reads the ID from the Flask request context
- LoggingEventSink, the dispatcher's structured event collaborator

Usage:
    from actuator.logging_utils import setup_json_logging

    logger = setup_json_logging(service_name="actuator", version="1.0.0")
    logger.info("Processing payload", extra={"alerts": 3})

Environment Variables:
    LOG_JSON_ENABLED: Enable JSON logging (default: false)
    LOG_LEVEL: Logging level (default: INFO)
    POD_NAME: Kubernetes pod name for metadata
"""

import os
import json
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from flask import g, has_request_context

TEXT_FORMAT = "%(asctime)s - %(levelname)s - [%(correlation_id)s] - %(message)s"

# Attributes every LogRecord carries; anything else came in via extra={}.
_RESERVED_ATTRS = frozenset([
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "thread",
    "threadName",
    "taskName",
    "exc_info",
    "exc_text",
    "stack_info",
    "correlation_id",
])


class NDJSONFormatter(logging.Formatter):
    """
    Formats each record as a single-line JSON object.

    Fields included:
    - timestamp, level, message, logger, module, function, line, thread
    - service, version, pod_name
    - correlation_id ("system" outside a request)
    - error: exception type, message and traceback (if present)
    - any fields passed through `extra={}`
    """

    def __init__(self, service_name: str, version: str):
        super().__init__()
        self.service_name = service_name
        self.version = version
        self.pod_name = os.getenv("POD_NAME", "unknown")

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "thread": threading.get_ident(),
            "service": self.service_name,
            "version": self.version,
            "pod_name": self.pod_name,
            "correlation_id": getattr(record, "correlation_id", None) or "system",
        }

        if record.exc_info:
            log_entry["error"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info),
            }

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS:
                continue
            try:
                json.dumps(value)
                log_entry[key] = value
            except (TypeError, ValueError):
                log_entry[key] = str(value)

        try:
            return json.dumps(log_entry, default=str)
        except Exception as e:
            return json.dumps(
                {
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                    "level": "ERROR",
                    "message": f"Failed to serialize log record: {e}",
                    "service": self.service_name,
                    "correlation_id": "system",
                }
            )


class CorrelationIdFilter(logging.Filter):
    """Automatically adds the request correlation ID to all log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "correlation_id", None):
            return True
        if has_request_context():
            record.correlation_id = g.get("correlation_id", "system")
        else:
            record.correlation_id = "system"
        return True


def setup_json_logging(
    service_name: str,
    version: str,
    level: str = "INFO",
) -> logging.Logger:
    """
    Configure root logging for an Actuator process.

    JSON (NDJSON) output is used when LOG_JSON_ENABLED is truthy, otherwise
    the text format. Safe to call more than once; existing root handlers are
    replaced.

    Args:
        service_name: Name reported in every JSON record
        version: Service version string
        level: Default level; LOG_LEVEL overrides it

    Returns:
        The configured root logger
    """
    json_enabled = os.getenv("LOG_JSON_ENABLED", "false").lower() in (
        "true",
        "1",
        "yes",
        "on",
    )
    log_level = os.getenv("LOG_LEVEL", level).upper()

    logger = logging.getLogger()
    logger.handlers.clear()
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    handler = logging.StreamHandler()
    handler.setLevel(logger.level)
    # Handler-level so records from every named logger get an ID.
    handler.addFilter(CorrelationIdFilter())

    if json_enabled:
        handler.setFormatter(NDJSONFormatter(service_name=service_name, version=version))
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))

    logger.addHandler(handler)

    if json_enabled:
        logger.info(f"JSON logging enabled for service={service_name} version={version}")
    else:
        logger.info(f"Standard logging enabled for service={service_name}")

    return logger


class LoggingEventSink:
    """
    Event sink that turns dispatcher events into log records.

    Events ending in "failed" or "cancelled" are logged at WARNING, the rest
    at DEBUG so busy receivers stay quiet by default.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger("actuator.events")

    def emit(self, event: str, **fields: Any) -> None:
        level = logging.DEBUG
        if event.endswith(("failed", "cancelled")):
            level = logging.WARNING
        details = " ".join(f"{k}={v}" for k, v in fields.items())
        self.logger.log(level, f"{event} {details}".rstrip(), extra={"event": event, **_safe_extra(fields)})


def _safe_extra(fields: Dict[str, Any]) -> Dict[str, Any]:
    # LogRecord refuses extra keys that shadow its own attributes.
    return {(f"event_{k}" if k in _RESERVED_ATTRS else k): v for k, v in fields.items()}
