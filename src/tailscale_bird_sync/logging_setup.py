import os
import json
import logging
from logging.handlers import RotatingFileHandler

DEFAULT_LOGGER_NAME = "TAILSCALE_BIRD_SYNC"


def resolve_logger_name() -> str:
    """The daemon's logger name: LOGGER_NAME upper-cased, read at call time."""
    return os.getenv("LOGGER_NAME", DEFAULT_LOGGER_NAME).upper()


def _is_structured(record) -> bool:
    return bool(hasattr(record, 'json_fields') and record.json_fields.get('structured_event', False))


class StructuredFormatter(logging.Formatter):
    """
    Formatter that renders structured events as one compact JSON object per line.
    """
    def format(self, record):
        if _is_structured(record):
            return json.dumps(record.json_fields, separators=(',', ':'), default=str)
        return super().format(record)


class StructuredFilter(logging.Filter):
    """
    Filter that only allows structured log events to pass through.
    """
    def filter(self, record):
        return _is_structured(record)


class NonStructuredFilter(logging.Filter):
    """
    Filter that only allows non-structured log events to pass through.
    """
    def filter(self, record):
        return not _is_structured(record)


def setup_logger(name: str, level: str, log_file: str | None, max_bytes: int, backup_count: int,
                 enable_structured_console: bool = False, enable_structured_file: bool = False,
                 structured_log_file: str | None = None):
    """
    Logger setup with optional structured (JSON) output.

    Regular messages go to the console and, when configured, to a rotating
    text log. Structured events either replace the console output
    (enable_structured_console) or land in their own rotating JSON-lines
    file (enable_structured_file).

    Args:
        name (str): Logger name; falls back to LOGGER_NAME.
        level (str): Level name such as "INFO".
        log_file (str): Path of the human-readable log, or None.
        max_bytes (int): Rotation size for both files.
        backup_count (int): Rotated files to keep.
        enable_structured_console (bool): Output JSON to console for structured events
        enable_structured_file (bool): Output JSON to separate structured log file
        structured_log_file (str): Path to structured JSON lines file

    Returns:
        logging.Logger: The configured logger.
    """
    logger_name = name or resolve_logger_name()
    logger = logging.getLogger(logger_name)
    log_level = getattr(logging, level, logging.INFO)
    logger.setLevel(log_level)

    # Re-running setup (tests, reloads) must not stack duplicate handlers
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    regular_formatter = logging.Formatter('%(asctime)s %(levelname)s [%(name)s] %(message)s')
    structured_formatter = StructuredFormatter()

    ch = logging.StreamHandler()
    ch.setLevel(log_level)
    if enable_structured_console:
        ch.setFormatter(structured_formatter)
        ch.addFilter(StructuredFilter())
    else:
        ch.setFormatter(regular_formatter)
        ch.addFilter(NonStructuredFilter())
    logger.addHandler(ch)

    if log_file:
        try:
            log_dir = os.path.dirname(log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            fh = RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=backup_count)
            fh.setLevel(log_level)
            fh.setFormatter(regular_formatter)
            fh.addFilter(NonStructuredFilter())
            logger.addHandler(fh)
            logger.info(f"Regular file logging enabled: {log_file}")
        except Exception as e:
            logger.warning(f"Could not setup regular file logging at {log_file}: {e}")

    if enable_structured_file and structured_log_file:
        try:
            structured_dir = os.path.dirname(structured_log_file)
            if structured_dir:
                os.makedirs(structured_dir, exist_ok=True)
            sfh = RotatingFileHandler(structured_log_file, maxBytes=max_bytes, backupCount=backup_count)
            sfh.setLevel(log_level)
            sfh.setFormatter(structured_formatter)
            sfh.addFilter(StructuredFilter())
            logger.addHandler(sfh)
            logger.info(f"Structured JSON file logging enabled: {structured_log_file}")
        except Exception as e:
            logger.warning(f"Could not setup structured file logging at {structured_log_file}: {e}")

    if enable_structured_console:
        logger.info("Console structured logging enabled (JSON output for structured events only)")

    return logger
