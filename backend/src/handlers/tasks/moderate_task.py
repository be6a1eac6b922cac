"""
Task Moderation Handler (admin only).
POST /admin/tasks/{taskId}/pause
POST /admin/tasks/{taskId}/resume
POST /admin/tasks/{taskId}/remove   body: {"reason": "..."}
"""
from taskblitz.auth import get_actor
from taskblitz.errors import MarketplaceError
from taskblitz.logging import log_event, logger
from taskblitz.service import get_marketplace
from taskblitz.utils import error_response, format_response, get_path_param, parse_body


def handler(event, context):
    """
    Pause blocks new submissions; pending ones can still be reviewed.
    Resume restores the status the task was paused from.
    Remove takes the task down for good and refunds its unspent escrow.
    """
    log_event(event)
    try:
        admin = get_actor(event)
        if admin is None:
            return format_response(401, {'error': 'Unauthorized', 'message': 'Missing identity'})

        task_id = get_path_param(event, 'taskId')
        action = get_path_param(event, 'action')
        marketplace = get_marketplace()

        if action == 'pause':
            task = marketplace.pause_task(task_id, admin)
        elif action == 'resume':
            task = marketplace.resume_task(task_id, admin)
        elif action == 'remove':
            body = parse_body(event)
            task = marketplace.remove_task(task_id, admin, body.get('reason'))
        else:
            return format_response(400, {'error': 'ValidationError', 'message': f"Unknown action: {action}"})

        return format_response(200, {'task': task.to_dict()})

    except MarketplaceError as e:
        logger.warning(f"Moderation refused: {e.code}: {e}")
        return error_response(e)
    except Exception as e:
        logger.exception(f"Error moderating task: {e}")
        return format_response(500, {'error': 'InternalError', 'message': 'Internal Server Error'})
