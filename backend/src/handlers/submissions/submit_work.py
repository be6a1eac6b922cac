"""
Submit Work Handler.
POST /worker/tasks/{taskId}/submit
"""
from taskblitz.auth import get_actor
from taskblitz.errors import MarketplaceError, ValidationError
from taskblitz.logging import log_event, logger
from taskblitz.service import get_marketplace
from taskblitz.utils import error_response, format_response, get_path_param, parse_body


def handler(event, context):
    """
    Handler for submitting work for a task.
    Body: { "payload": { "type": "text", "text": "..." } }
          { "payload": { "type": "url", "url": "https://..." } }
          { "payload": { "type": "file", "fileUrl": "https://..." } }
    """
    log_event(event)
    try:
        worker = get_actor(event)
        if worker is None:
            return format_response(401, {'error': 'Unauthorized', 'message': 'Missing identity'})

        task_id = get_path_param(event, 'taskId')
        payload = parse_body(event).get('payload')
        if payload is None:
            raise ValidationError('Missing payload')

        submission = get_marketplace().submit_work(task_id, worker, payload)

        return format_response(201, {
            'message': 'Work submitted successfully',
            'submission': submission.to_dict()
        })

    except MarketplaceError as e:
        logger.warning(f"Submission refused: {e.code}: {e}")
        return error_response(e)
    except Exception as e:
        logger.exception(f"Error submitting work: {e}")
        return format_response(500, {'error': 'InternalError', 'message': 'Internal Server Error'})
