"""Logging setup: console formatter with structured ``data`` extras."""

import json
import logging
import os
import time
import traceback
from logging.config import dictConfig
from typing import Any, Dict, Mapping, Optional


def _should_emit_json_payload() -> bool:
    # Cloud Run and Kubernetes parse JSON log lines into structured payloads.
    return bool(os.getenv("K_SERVICE") or os.getenv("KUBERNETES_SERVICE_HOST"))


def _structured_payload(record: logging.LogRecord) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "message": record.getMessage(),
        "severity": record.levelname,
        "logger": record.name,
        "timestamp": (
            f"{time.strftime('%Y-%m-%dT%H:%M:%S', time.gmtime(record.created))}"
            f".{int(record.msecs):03d}Z"
        ),
    }
    data = record.__dict__.get("data")
    if data:
        payload["data"] = data
    if record.exc_info:
        payload["exception"] = "".join(traceback.format_exception(*record.exc_info)).rstrip("\n")
    return payload


class ExtrasFormatter(logging.Formatter):
    """Append structured `data` payloads when present."""

    def format(self, record: logging.LogRecord) -> str:
        if _should_emit_json_payload():
            return json.dumps(_structured_payload(record), sort_keys=True, separators=(",", ":"), default=str)

        formatted = super().format(record)
        record_data = record.__dict__.get("data")
        if record_data:
            try:
                encoded = json.dumps(record_data, sort_keys=True, separators=(",", ":"))
            except TypeError:
                encoded = str(record_data)
            return f"{formatted} | data={encoded}"
        return formatted


def build_log_config(
    level: str = "INFO",
    extra_loggers: Optional[Mapping[str, Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    """Return a dictConfig-compatible logging configuration."""
    loggers: Dict[str, Dict[str, Any]] = {
        "livepreview": {"level": level.upper(), "handlers": ["console"], "propagate": False},
        "httpx": {
            "level": os.getenv("HTTPX_LOG_LEVEL", "WARNING").upper(),
            "handlers": ["console"],
            "propagate": False,
        },
        "httpcore": {
            "level": os.getenv("HTTPX_LOG_LEVEL", "WARNING").upper(),
            "handlers": ["console"],
            "propagate": False,
        },
        "docker": {
            "level": os.getenv("DOCKER_LOG_LEVEL", "WARNING").upper(),
            "handlers": ["console"],
            "propagate": False,
        },
    }
    if extra_loggers:
        loggers.update(extra_loggers)

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "console": {
                "()": ExtrasFormatter,
                "format": "%(asctime)s %(levelname)s %(name)s: %(message)s",
                "datefmt": "%Y-%m-%dT%H:%M:%S",
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "console",
                "stream": "ext://sys.stdout",
            }
        },
        "root": {"level": level.upper(), "handlers": ["console"]},
        "loggers": loggers,
    }


def configure_logging(level: str = "INFO", extra_loggers: Optional[Mapping[str, Dict[str, Any]]] = None) -> None:
    """Apply the logging config."""
    dictConfig(build_log_config(level, extra_loggers))
    logging.getLogger(__name__).debug("configured logging", extra={"data": {"level": level}})


__all__ = ["ExtrasFormatter", "build_log_config", "configure_logging"]
