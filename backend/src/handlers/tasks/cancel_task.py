"""
Cancel Task Handler.
POST /requester/tasks/{taskId}/cancel

Cancels an open or in-progress task and refunds the unspent escrow. Calling
it again on a cancelled task whose refund failed retries the refund.
"""
from taskblitz.auth import get_actor
from taskblitz.errors import MarketplaceError
from taskblitz.logging import log_event, logger
from taskblitz.service import get_marketplace
from taskblitz.utils import error_response, format_response, get_path_param


def handler(event, context):
    log_event(event)
    try:
        requester = get_actor(event)
        if requester is None:
            return format_response(401, {'error': 'Unauthorized', 'message': 'Missing identity'})

        task = get_marketplace().cancel_task(get_path_param(event, 'taskId'), requester)

        return format_response(200, {
            'message': 'Task cancelled' if task.settled else 'Task cancelled; refund pending',
            'task': task.to_dict()
        })

    except MarketplaceError as e:
        logger.warning(f"Cancel refused: {e.code}: {e}")
        return error_response(e)
    except Exception as e:
        logger.exception(f"Error cancelling task: {e}")
        return format_response(500, {'error': 'InternalError', 'message': 'Internal Server Error'})
