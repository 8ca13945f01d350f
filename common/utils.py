import logging


JSON_CONTENT_TYPE = "application/json"

# Default exchange: routing key is the destination queue name
DEFAULT_EXCHANGE = ""

SERVER_PREFETCH_COUNT = 1

BLOCKED_CONNECTION_TIMEOUT = 300

logger = logging.getLogger(__name__)


def format_action(action, result, error=None, extra_fields=None):
    """
    Build a log line in the `action: x | result: y | key: value` format

    Args:
        action: The action being performed
        result: The result of the action (success, fail, etc.)
        error: Optional error information
        extra_fields: Optional dict with additional fields to log
    """
    log_parts = [
        f"action: {action}",
        f"result: {result}",
    ]

    if error:
        log_parts.append(f"error: {error}")

    if extra_fields:
        for key, value in extra_fields.items():
            log_parts.append(f"{key}: {value}")

    return " | ".join(log_parts)


def log_action(action, result, level=logging.INFO, error=None, extra_fields=None):
    """
    Centralized logging function for consistent log format

    Args:
        action: The action being performed
        result: The result of the action (success, fail, etc.)
        level: Logging level (INFO, ERROR, DEBUG, etc.)
        error: Optional error information
        extra_fields: Optional dict with additional fields to log (e.g., queue, etc.)
    """
    logger.log(level, format_action(action, result, error, extra_fields))
