import logging
import sys
import json
from typing import Any, Dict, Optional
from contextvars import ContextVar

# Context var for correlation ID
_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Attributes every LogRecord carries; anything else came in through `extra=`
_RESERVED = frozenset(vars(logging.makeLogRecord({})).keys()) | {"message", "asctime"}

class StructuredFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_record: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "module": record.name,
            "message": record.getMessage(),
            "correlation_id": _correlation_id.get(),
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED and not key.startswith("_"):
                log_record[key] = value

        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_record, default=str)

class TextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        record.correlation_id = _correlation_id.get() or "-"
        return super().format(record)

def setup_logging(level: str = "INFO", fmt: str = "json"):
    root = logging.getLogger()
    root.setLevel(level.upper())

    # Re-running setup replaces our handler instead of stacking a second one
    for existing in list(root.handlers):
        if getattr(existing, "_kiln_handler", False):
            root.removeHandler(existing)

    handler = logging.StreamHandler(sys.stdout)
    handler._kiln_handler = True
    if fmt == "text":
        handler.setFormatter(TextFormatter(
            "%(asctime)s %(levelname)s [%(correlation_id)s] %(name)s: %(message)s"
        ))
    else:
        handler.setFormatter(StructuredFormatter(datefmt="%Y-%m-%dT%H:%M:%S%z"))
    root.addHandler(handler)

def set_correlation_id(cid: Optional[str]):
    _correlation_id.set(cid)

def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()
