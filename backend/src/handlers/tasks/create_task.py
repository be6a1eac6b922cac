"""
Create Task Handler.
POST /requester/tasks

Locks payment x workers plus the platform fee in escrow and opens the task.
"""
from taskblitz.auth import get_actor
from taskblitz.errors import MarketplaceError
from taskblitz.logging import log_event, logger
from taskblitz.models import TaskSpec
from taskblitz.service import get_marketplace
from taskblitz.utils import error_response, format_response, parse_body


def handler(event, context):
    """
    POST /requester/tasks
    Body: {
        "title": "...", "description": "...", "category": "...",
        "paymentPerTask": 0.50, "workersNeeded": 10,
        "deadline": "2025-01-31T00:00:00Z", "submissionType": "text",
        "rejectionLimitPercentage": 30
    }
    """
    log_event(event)
    try:
        requester = get_actor(event)
        if requester is None:
            return format_response(401, {'error': 'Unauthorized', 'message': 'Missing identity'})

        spec = TaskSpec.from_dict(parse_body(event))
        task = get_marketplace().create_task(spec, requester)

        return format_response(201, {
            'message': 'Task created',
            'task': task.to_dict()
        })

    except MarketplaceError as e:
        logger.warning(f"Task creation refused: {e.code}: {e}")
        return error_response(e)
    except Exception as e:
        logger.exception(f"Error creating task: {e}")
        return format_response(500, {'error': 'InternalError', 'message': 'Internal Server Error'})
