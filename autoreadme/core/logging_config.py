"""Structured logging configuration for autoreadme.

The API and the worker share one setup: JSON lines by default, plain text
for local runs. Records carry ``request_id`` while an HTTP request is being
handled and ``job_id`` while a worker thread runs a job.
"""

import contextvars
import json
import logging
import re
import sys
from datetime import datetime, timezone
from typing import Dict, Optional


request_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="")
job_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("job_id", default="")

# Third-party loggers that are chatty at INFO.
_QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "LiteLLM", "urllib3")

_TEXT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def _context_fields() -> Dict[str, str]:
    fields = {}
    for name, var in (("request_id", request_id_var), ("job_id", job_id_var)):
        value = var.get("")
        if value:
            fields[name] = value
    return fields


class _JsonFormatter(logging.Formatter):
    """One JSON object per record.

    Anything passed through ``extra=`` lands at the top level next to the
    standard fields, e.g. ``logger.info("Push admitted", extra={"repo_id": 42})``.
    """

    _RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None)))

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_context_fields(),
        }
        entry.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in self._RECORD_ATTRS and key not in entry
        )
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class _TextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        job_id = job_id_var.get("")
        return f"[job {job_id[:8]}] {line}" if job_id else line


# ---------------------------------------------------------------------------
# Secret redaction
# ---------------------------------------------------------------------------

_REDACTED = "***REDACTED***"

# Replaced as a whole.
_TOKEN_PATTERNS = (
    re.compile(r'\bgh[pousr]_[A-Za-z0-9]{30,}\b'),     # GitHub
    re.compile(r'\bsk-[a-zA-Z0-9]{20,}\b'),            # OpenAI / OpenRouter
    re.compile(r'\bgsk_[a-zA-Z0-9]{20,}\b'),           # Groq
    re.compile(r'\bAIza[0-9A-Za-z_\-]{30,}\b'),        # Google
)

# Group 1 is kept, the value after it is replaced.
_LABELLED_PATTERNS = (
    re.compile(r'(?i)(bearer\s+)[a-zA-Z0-9._\-]{20,}'),
    re.compile(r'(?i)((?:api_key|secret|password|token|authorization)[=:]\s*)[^\s,\'"]{8,}'),
)


def redact(text: str) -> str:
    for pattern in _TOKEN_PATTERNS:
        text = pattern.sub(_REDACTED, text)
    for pattern in _LABELLED_PATTERNS:
        text = pattern.sub(lambda m: m.group(1) + _REDACTED, text)
    return text


class _SecretFilter(logging.Filter):
    """Scrub tokens and API keys from the message and any cached traceback."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = redact(str(record.msg))
        if record.exc_text:
            record.exc_text = redact(record.exc_text)
        return True


def setup_logging(log_level: Optional[str] = None, log_format: Optional[str] = None) -> None:
    """Install a single stdout handler on the root logger.

    Args:
        log_level: Standard level name, case-insensitive. Defaults to INFO.
        log_format: ``"json"`` (default) or ``"text"``.
    """
    level = (log_level or "INFO").upper()
    fmt = (log_format or "json").lower()

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(_SecretFilter())
    if fmt == "json":
        handler.setFormatter(_JsonFormatter())
    else:
        handler.setFormatter(_TextFormatter(fmt=_TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info("Logging configured", extra={"level": level, "format": fmt})
