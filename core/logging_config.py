"""
core/logging_config.py
Logging setup for the relay, with a per-turn correlation id.

Every agent turn runs as its own asyncio task; the stream id (bot dialect)
or message id (agent dialect) is set as the correlation id at the start of
the task, so all log lines of one turn can be grepped together. Structured
mode writes one JSON object per line.
"""

from __future__ import annotations
import contextvars
import json
import logging
import os
import time
import uuid

# ── Correlation ID (per-turn tracing) ─────────────────────────────────────

# contextvars, not threading.local: turns share the event-loop thread and
# each asyncio task gets its own copy of the context.
_correlation_id: contextvars.ContextVar[str] = contextvars.ContextVar(
    "wecom_correlation_id", default="")


def set_correlation_id(cid: str = "") -> str:
    """Set the correlation id for the current task (ties logs to a turn)."""
    value = cid or str(uuid.uuid4())[:8]
    _correlation_id.set(value)
    return value


def get_correlation_id() -> str:
    return _correlation_id.get()


class CorrelationFilter(logging.Filter):
    """Expose the correlation id as ``%(cid)s`` to plain formatters."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.cid = get_correlation_id() or "-"
        return True


# ── Structured JSON Formatter ─────────────────────────────────────────────

class StructuredFormatter(logging.Formatter):
    """
    JSON log formatter for machine-parseable logs.
    Fields: ts, level, logger, msg, cid (correlation ID), extra
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        cid = get_correlation_id()
        if cid:
            entry["cid"] = cid

        # Dialect from logger name convention (adapters.channels.wecom.<module>)
        if record.name.startswith("adapters.channels.wecom."):
            entry["component"] = record.name.rsplit(".", 1)[1]

        if hasattr(record, "extra_data"):
            entry["extra"] = record.extra_data

        if record.exc_info and record.exc_info[0]:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False, default=str)


# ── Setup ─────────────────────────────────────────────────────────────────

def setup_logging(level: str = "INFO", structured: bool = False,
                  log_dir: str = ".logs", console_level: str = "WARNING"):
    """
    Configure root logging for the relay.
    Args:
        level: file log level (DEBUG/INFO/WARNING/ERROR)
        structured: if True, JSON lines; otherwise human-readable
        log_dir: directory for wecom-relay.log
        console_level: stderr threshold (warnings+ by default)
    """
    os.makedirs(log_dir, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for h in root.handlers[:]:
        root.removeHandler(h)

    if structured:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            "[%(asctime)s][%(name)s][%(levelname)s][%(cid)s] %(message)s",
            datefmt="%H:%M:%S",
        )

    cid_filter = CorrelationFilter()

    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter(
        "[%(asctime)s][%(name)s] %(message)s", datefmt="%H:%M:%S"))
    console.setLevel(getattr(logging, console_level.upper(), logging.WARNING))
    console.addFilter(cid_filter)
    root.addHandler(console)

    log_path = os.path.join(log_dir, "wecom-relay.log")
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(formatter)
    file_handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    file_handler.addFilter(cid_filter)
    root.addHandler(file_handler)

    # httpx logs every request at INFO, including access_token query strings
    logging.getLogger("httpx").setLevel(logging.WARNING)

    return root
