"""
Get Task Handler.
GET /tasks/{taskId}
"""
from taskblitz.auth import get_actor
from taskblitz.errors import MarketplaceError
from taskblitz.logging import log_event, logger
from taskblitz.service import get_marketplace
from taskblitz.utils import error_response, format_response, get_path_param


def handler(event, context):
    """
    Any signed-in user sees the task. Its requester and admins also get the
    submissions, the escrow movements and the rejection-limit status.
    """
    log_event(event)
    try:
        actor = get_actor(event)
        if actor is None:
            return format_response(401, {'error': 'Unauthorized', 'message': 'Missing identity'})

        task_id = get_path_param(event, 'taskId')
        marketplace = get_marketplace()
        task = marketplace.get_task(task_id)
        body = {'task': task.to_dict()}

        if actor.user_id == task.requester_id or actor.is_admin:
            body['submissions'] = [s.to_dict() for s in marketplace.list_submissions(task_id, actor)]
            body['transactions'] = [t.to_item() for t in marketplace.list_transactions(task_id, actor)]
            body['rejectionStatus'] = marketplace.get_rejection_status(task_id).to_dict()

        return format_response(200, body)

    except MarketplaceError as e:
        return error_response(e)
    except Exception as e:
        logger.exception(f"Error getting task: {e}")
        return format_response(500, {'error': 'InternalError', 'message': 'Internal Server Error'})
