"""
Logging setup for the RFQ intake pipeline.

Console lines are human-readable (or JSON with LOG_JSON=1); the optional
file under DATA_DIR/logs always gets JSON lines. Pipeline code attaches
context with `extra={"message_id": ..., "verdict": ...}`; both formats
carry those fields.
"""
import json
import logging
import logging.handlers
import os
from datetime import datetime, timezone

from src.core.paths import LOG_DIR

LOG_FILE = "rfq_intake.log"
QUIET_LOGGERS = ("urllib3", "werkzeug", "PIL", "pdfminer", "httpx")

# Context fields passed through `extra=`
EXTRA_KEYS = ("route", "method", "message_id", "verdict", "items", "requests",
              "duration_ms", "trace_id", "source", "user")


def record_context(record: logging.LogRecord) -> dict:
    return {k: getattr(record, k) for k in EXTRA_KEYS if hasattr(record, k)}


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record):
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}:{record.lineno}",
        }
        entry.update(record_context(record))
        if record.exc_info and record.exc_info[0]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class HumanFormatter(logging.Formatter):
    """`12:04:31 I intake.pipeline: msg  [message_id=m-1 verdict=REQUEST]`"""

    def format(self, record):
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        line = f"{ts} {record.levelname[0]} {record.name}: {record.getMessage()}"
        ctx = record_context(record)
        if ctx:
            line += "  [" + " ".join(f"{k}={v}" for k, v in ctx.items()) + "]"
        if record.exc_info and record.exc_info[0]:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").lower() in ("1", "true", "yes")


def _file_handler(log_dir: str):
    os.makedirs(log_dir, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        os.path.join(log_dir, LOG_FILE), maxBytes=5_000_000, backupCount=5, encoding="utf-8",
    )
    handler.setFormatter(JSONFormatter())
    return handler


def setup_logging(level=None, json_logs=None, log_file=True, log_dir: str = None):
    """Configure the root logger once per process (app.py, scripts/).

    level defaults to LOG_LEVEL (INFO), json_logs to LOG_JSON, and the
    file goes to log_dir (DATA_DIR/logs by default).
    """
    level = str(level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    if json_logs is None:
        json_logs = _env_flag("LOG_JSON")

    root = logging.getLogger()
    root.setLevel(getattr(logging, level, logging.INFO))
    root.handlers.clear()

    console = logging.StreamHandler()
    console.setFormatter(JSONFormatter() if json_logs else HumanFormatter())
    root.addHandler(console)

    if log_file:
        try:
            root.addHandler(_file_handler(log_dir or LOG_DIR))
        except OSError as e:
            logging.getLogger("rfq").warning("File logging disabled: %s", e)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger("rfq").info("Logging initialized (%s%s)", level, ", json" if json_logs else "")
