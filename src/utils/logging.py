"""
Logging utility module for change stream consumers.

Provides JSON-structured logging with the name of the stream being driven bound
through a context variable, so records emitted by the cursor layers can be
attributed without threading the name through every call.
"""

import json
import logging
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from bson import json_util

_stream_name: ContextVar[Optional[str]] = ContextVar('stream_name', default=None)

# Attributes every LogRecord has; anything else came in through ``extra``.
_RESERVED_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


def get_stream_name() -> Optional[str]:
    """Get the stream name bound to the current context."""
    return _stream_name.get()


def _json_default(value: Any) -> Any:
    try:
        return json.loads(json_util.dumps(value))
    except TypeError:
        return str(value)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        BSON values passed through ``extra`` (resume tokens, timestamps) are
        rendered as relaxed extended JSON.

        Args:
            record: Log record to format

        Returns:
            JSON-formatted log string
        """
        log_data: Dict[str, Any] = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        stream_name = get_stream_name()
        if stream_name and 'stream' not in record.__dict__:
            log_data['stream'] = stream_name

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith('_'):
                log_data[key] = value

        return json.dumps(log_data, default=_json_default)


def get_logger(name: str, level: int = logging.INFO, json_format: bool = True) -> logging.Logger:
    """Get a logger writing to stderr.

    Args:
        name: Logger name (typically __name__ or a package name)
        level: Logging level (default: INFO)
        json_format: Use JSONFormatter, plain text otherwise

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    # Avoid adding handlers multiple times
    if logger.handlers:
        return logger

    logger.setLevel(level)

    handler = logging.StreamHandler()
    handler.setLevel(level)
    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    logger.addHandler(handler)
    logger.propagate = False

    return logger


def configure_logging(settings=None) -> logging.Logger:
    """Configure the ``src.connectors.cdc`` logger from LoggingSettings."""
    if settings is None:
        from config.settings import get_settings
        settings = get_settings().logging

    level = logging.getLevelName(settings.level.upper())
    return get_logger("src.connectors.cdc", level=level, json_format=settings.json_format)


class StreamContext:
    """Context manager binding a stream name to log records."""

    def __init__(self, stream_name: str):
        self.stream_name = stream_name
        self._token: Optional[Token] = None

    def __enter__(self) -> str:
        self._token = _stream_name.set(self.stream_name)
        return self.stream_name

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._token is not None:
            _stream_name.reset(self._token)
            self._token = None
