"""Structured logging for rushvote.

Records carry the request's correlation ID and the acting voter when known,
so a round transition or a seal can be traced back to the request and the
admin behind it. Production runs emit one JSON object per line; local runs
get plain text with the same context as a bracketed prefix.

Environment Variables:
    LOG_FORMAT: "json" for JSON lines, anything else for plain text.
    LOG_LEVEL: DEBUG, INFO, WARNING or ERROR. Defaults to INFO.
"""

import copy
import logging
import os
import sys
from contextvars import ContextVar
from typing import Any

from pythonjsonlogger import jsonlogger

_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)
_current_voter: ContextVar[str | None] = ContextVar("current_voter", default=None)

LOG_FORMAT = os.getenv("LOG_FORMAT", "").lower()
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Third-party loggers that are chatty at INFO
NOISY_LOGGERS = ("sqlalchemy.engine", "httpx", "httpcore")


def get_correlation_id() -> str | None:
    return _correlation_id.get()


def set_correlation_id(correlation_id: str | None) -> None:
    _correlation_id.set(correlation_id)


def get_current_voter() -> str | None:
    return _current_voter.get()


def set_current_voter(voter_id: str | None) -> None:
    """Record who is acting in the current request."""
    _current_voter.set(voter_id)


def request_context() -> dict[str, str]:
    """Context fields known for the current request, empty ones omitted."""
    fields = {
        "correlation_id": _correlation_id.get(),
        "voter": _current_voter.get(),
    }
    return {key: value for key, value in fields.items() if value}


class ContextAwareJsonFormatter(jsonlogger.JsonFormatter):
    """One JSON object per record, with request context and structured extras.

    Structured fields go in ``extra={"extra_fields": {...}}`` and are merged
    into the top level of the object.
    """

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record.update(
            timestamp=self.formatTime(record, self.datefmt),
            level=record.levelname,
            logger=record.name,
            message=record.getMessage(),
        )
        log_record.update(request_context())
        log_record.update(getattr(record, "extra_fields", None) or {})


class ContextAwareFormatter(logging.Formatter):
    """Plain-text formatter; prefixes ``[correlation] [voter=...]`` when known."""

    def format(self, record: logging.LogRecord) -> str:
        context = request_context()
        prefix = []
        if "correlation_id" in context:
            prefix.append(f"[{context['correlation_id'][:8]}]")
        if "voter" in context:
            prefix.append(f"[voter={context['voter']}]")
        if not prefix:
            return super().format(record)

        # Handlers share the record; format a copy
        record = copy.copy(record)
        record.msg = " ".join([*prefix, record.getMessage()])
        record.args = ()
        return super().format(record)


def _build_formatter(json_output: bool) -> logging.Formatter:
    if json_output:
        return ContextAwareJsonFormatter(
            fmt="%(timestamp)s %(level)s %(logger)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S%z",
        )
    return ContextAwareFormatter(
        fmt="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def setup_logging() -> None:
    """Route all logging to stdout in the configured format.

    Safe to call more than once; earlier root handlers are replaced.
    """
    level = logging.getLevelName(LOG_LEVEL)
    if not isinstance(level, int):
        level = logging.INFO
    json_output = LOG_FORMAT == "json"

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_build_formatter(json_output))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)

    if level > logging.DEBUG:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        "Logging to stdout as %s at %s",
        "json" if json_output else "text",
        logging.getLevelName(level),
    )
