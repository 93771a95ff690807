"""
Logging utilities for safe log output.

Provides a custom LogRecord factory that sanitizes log arguments
to prevent log injection attacks (CWE-117). Provider-supplied values
(channel names, group titles, URLs) could contain newlines that forge
log entries.

Install once at startup via configure_logging(), or install_safe_logging()
when the handlers are set up elsewhere.
"""

import logging

_ORIGINAL_FACTORY = logging.getLogRecordFactory()

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DEFAULT_LEVEL = "INFO"


def _sanitize_value(value):
    """Escape newlines and carriage returns in a value for safe logging."""
    if isinstance(value, str):
        return value.replace('\r\n', '\\r\\n').replace('\r', '\\r').replace('\n', '\\n')
    return value


def _safe_record_factory(*args, **kwargs):
    """LogRecord factory that sanitizes args to prevent log injection."""
    record = _ORIGINAL_FACTORY(*args, **kwargs)
    if record.args:
        if isinstance(record.args, dict):
            record.args = {k: _sanitize_value(v) for k, v in record.args.items()}
        elif isinstance(record.args, tuple):
            record.args = tuple(_sanitize_value(a) for a in record.args)
    return record


def install_safe_logging():
    """Install a global LogRecord factory that sanitizes all log arguments."""
    logging.setLogRecordFactory(_safe_record_factory)


def resolve_level(level) -> int:
    """Map a level name or number to a logging level, INFO when unknown."""
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level or DEFAULT_LEVEL).strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(level=DEFAULT_LEVEL) -> int:
    """
    Set up the root handler once and apply the level.

    Safe to call repeatedly; later calls only change the level.
    Returns the effective numeric level.
    """
    install_safe_logging()
    numeric_level = resolve_level(level)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(format=LOG_FORMAT)
    root.setLevel(numeric_level)
    return numeric_level
