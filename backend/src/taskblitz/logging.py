"""
Logging for the marketplace core and Lambda handlers.

All modules share the ``taskblitz`` logger; the level comes from LOG_LEVEL.
"""
import logging
import json

from taskblitz.config import config

# Request fields that may carry user content or credentials
REDACTED_KEYS = ('body', 'headers', 'multiValueHeaders')

logger = logging.getLogger('taskblitz')
logger.setLevel(config.LOG_LEVEL)

# Lambda reuses containers, so the handler is attached once
if not logger.handlers:
    stream = logging.StreamHandler()
    stream.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    ))
    logger.addHandler(stream)


def log_event(event: dict) -> None:
    """Log an API Gateway or EventBridge event without its payload."""
    try:
        summary = {key: value for key, value in event.items() if key not in REDACTED_KEYS}
        context = summary.get('requestContext') or {}
        if 'authorizer' in context:
            summary['requestContext'] = {k: v for k, v in context.items() if k != 'authorizer'}
        logger.info(f"Invocation: {json.dumps(summary, default=str)}")
    except (TypeError, ValueError, AttributeError) as e:
        logger.warning(f"Could not log event: {e}")


def log_admin_activity(admin_id: str, action: str, task_id: str, **details) -> None:
    """Record a moderation action in the log stream."""
    record = {'adminId': admin_id, 'action': action, 'taskId': task_id}
    record.update(details)
    logger.info(f"Admin activity: {json.dumps(record, default=str)}")
