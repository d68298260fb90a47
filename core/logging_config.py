"""
Structured logging configuration for Measure2Code.

Provides two formatters:
- **ConsoleFormatter**: Human-readable colored output (default for terminal)
- **JSONFormatter**: Machine-parseable JSON lines (for log files and collectors)

Usage:
    from core.logging_config import configure_logging
    configure_logging(json_mode=True, log_file="logs/extraction.jsonl")
"""

import json
import logging
import sys
from pathlib import Path
from typing import Optional

# Extras copied from a record into the JSON entry when present
_CONTEXT_FIELDS = ("phase", "model", "population", "chunk")


class JSONFormatter(logging.Formatter):
    """Emit each log record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.name != "root":
            entry["module"] = record.module
        for name in _CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value not in (None, ""):
                entry[name] = value
        if record.exc_info and record.exc_info[1]:
            entry["error"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
            }
        return json.dumps(entry, ensure_ascii=False)


class ConsoleFormatter(logging.Formatter):
    """Human-readable formatter with level-based prefixes."""

    FORMATS = {
        logging.DEBUG: "\033[90m[DEBUG]\033[0m %(message)s",
        logging.INFO: "[%(levelname)s] %(message)s",
        logging.WARNING: "\033[33m[WARN]\033[0m %(message)s",
        logging.ERROR: "\033[31m[ERROR]\033[0m %(message)s",
        logging.CRITICAL: "\033[1;31m[CRIT]\033[0m %(message)s",
    }

    def format(self, record: logging.LogRecord) -> str:
        fmt = self.FORMATS.get(record.levelno, "[%(levelname)s] %(message)s")
        phase = getattr(record, "phase", "")
        if phase:
            fmt = fmt.replace("%(message)s", f"({phase}) %(message)s")
        return logging.Formatter(fmt).format(record)


def configure_logging(
    *,
    json_mode: bool = False,
    log_file: Optional[str] = None,
    level: int = logging.INFO,
    quiet: bool = False,
) -> None:
    """
    Configure root logger with appropriate handlers.

    Args:
        json_mode: If True, use JSON formatter for console output.
        log_file: If set, also write JSON logs to this file.
        level: Logging level (default INFO).
        quiet: If True, suppress console output (only file).
    """
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    if not quiet:
        console = logging.StreamHandler(sys.stderr)
        console.setLevel(level)
        console.setFormatter(JSONFormatter() if json_mode else ConsoleFormatter())
        root.addHandler(console)

    # File output is always JSON
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setLevel(level)
        fh.setFormatter(JSONFormatter())
        root.addHandler(fh)

    # SDK clients are chatty at INFO
    for noisy in ("httpx", "openai", "anthropic", "google.genai"):
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))


class PhaseLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that injects extraction context into every record."""

    def process(self, msg, kwargs):
        extra = kwargs.setdefault("extra", {})
        for name in _CONTEXT_FIELDS:
            extra.setdefault(name, self.extra.get(name, ""))
        return msg, kwargs
