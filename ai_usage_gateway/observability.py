"""
Logging setup.

JSON lines for machines, a plain format for terminals.
"""

import json
import logging
from datetime import datetime, timezone

# extra= fields copied into JSON output when present
_EXTRA_FIELDS = ("actor_id", "group_id", "feature", "reason", "total_tokens")


class JSONFormatter(logging.Formatter):
    """Format log records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in _EXTRA_FIELDS:
            val = record.__dict__.get(key)
            if val is not None:
                log[key] = val
        if record.exc_info:
            log["exception"] = self.formatException(record.exc_info)
        return json.dumps(log, ensure_ascii=False)


def setup_logging(level: str = "INFO", fmt: str = "text") -> None:
    """Configure the root logger once.

    Args:
        level: Log level name
        fmt: "json" or "text"
    """
    handler = logging.StreamHandler()
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s - %(message)s",
        ))
    root = logging.getLogger()
    for existing in list(root.handlers):
        if getattr(existing, "_ai_usage_gateway", False):
            root.removeHandler(existing)
    handler._ai_usage_gateway = True
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
