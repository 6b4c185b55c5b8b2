"""Logging setup: JSON lines for Cloud Logging on Cloud Run, plain text locally.

Records may carry ``job_id`` / ``request_id`` extras; the JSON formatter
lifts them to top-level fields so a job's log lines can be filtered
together with its progress stream.
"""

from __future__ import annotations

import logging
import os
import uuid

from pythonjsonlogger.json import JsonFormatter

_CORRELATION_FIELDS = ("job_id", "request_id")

# Client libraries that log every request at INFO
_NOISY_LOGGERS = ("httpx", "google.auth.transport.requests", "urllib3")


class GCPJsonFormatter(JsonFormatter):
    """Emits ``severity`` (what Cloud Logging keys on) instead of ``levelname``."""

    def add_fields(
        self,
        log_record: dict[str, object],
        record: logging.LogRecord,
        message_dict: dict[str, object],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["severity"] = log_record.pop("levelname", record.levelname)
        for name in _CORRELATION_FIELDS:
            value = getattr(record, name, None)
            if value:
                log_record[name] = value


def _make_formatter(json_output: bool) -> logging.Formatter:
    if json_output:
        return GCPJsonFormatter(
            fmt="%(levelname)s %(message)s %(name)s %(lineno)d",
            rename_fields={"name": "logger"},
        )
    return logging.Formatter(
        "%(asctime)s %(levelname)-8s %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )


def setup_logging(*, level: str = "INFO") -> None:
    """Replace root handlers with one stderr handler for this process."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for h in root.handlers[:]:
        root.removeHandler(h)

    handler = logging.StreamHandler()
    handler.setFormatter(_make_formatter(json_output=bool(os.getenv("K_SERVICE"))))
    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def generate_request_id() -> str:
    return uuid.uuid4().hex[:16]
