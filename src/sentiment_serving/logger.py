"""Logging configuration for the sentiment serving API."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional

TEXT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class JsonFormatter(logging.Formatter):
    """One JSON object per log line, for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        if record.exc_info:
            payload['exc_info'] = self.formatException(record.exc_info)
        return json.dumps(payload)


def setup_logging(level: str = 'INFO', fmt: str = 'text', stream: Optional[object] = None) -> logging.Logger:
    """
    Configure the root logger.

    Replaces existing root handlers so calling this twice does not duplicate
    output.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        fmt: 'text' or 'json'
        stream: Output stream (defaults to stdout)

    Returns:
        The root logger
    """
    handler = logging.StreamHandler(stream or sys.stdout)
    if fmt == 'json':
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper()))

    return root
