"""
Review Submission Handler.
POST /requester/submissions/{submissionId}/approve
POST /requester/submissions/{submissionId}/reject

Approval pays the worker from the task escrow. A rejection that would push
the task past its rejection limit is recorded as an approval instead.
Repeating a decision is safe and answers with "replayed": true.
"""
from taskblitz.auth import get_actor
from taskblitz.errors import MarketplaceError
from taskblitz.logging import log_event, logger
from taskblitz.service import get_marketplace
from taskblitz.utils import error_response, format_response, get_path_param


def handler(event, context):
    log_event(event)
    try:
        reviewer = get_actor(event)
        if reviewer is None:
            return format_response(401, {'error': 'Unauthorized', 'message': 'Missing identity'})

        submission_id = get_path_param(event, 'submissionId')
        decision = get_path_param(event, 'decision')
        marketplace = get_marketplace()

        if decision == 'approve':
            result = marketplace.approve_submission(submission_id, reviewer)
        elif decision == 'reject':
            result = marketplace.reject_submission(submission_id, reviewer)
        else:
            return format_response(400, {'error': 'ValidationError', 'message': f"Unknown decision: {decision}"})

        body = result.to_dict()
        if result.task is not None:
            body['task'] = result.task.to_dict()
            body['rejectionStatus'] = marketplace.get_rejection_status(result.task.task_id).to_dict()
        return format_response(200, body)

    except MarketplaceError as e:
        logger.warning(f"Review refused: {e.code}: {e}")
        return error_response(e)
    except Exception as e:
        logger.exception(f"Error reviewing submission: {e}")
        return format_response(500, {'error': 'InternalError', 'message': 'Internal Server Error'})
