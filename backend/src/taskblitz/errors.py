"""
Error taxonomy for the marketplace core.

Every error raised to the API layer derives from MarketplaceError and carries
the HTTP status code and stable error code the handlers render.
"""
from typing import Any, Dict


class MarketplaceError(Exception):
    """Base class for errors surfaced by the marketplace core."""
    status_code = 500
    code = 'InternalError'
    retryable = False

    def __init__(self, message: str = None, **details):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body = {'error': self.code, 'message': self.message}
        if self.details:
            body['details'] = self.details
        if self.retryable:
            body['retryable'] = True
        return body


class ValidationError(MarketplaceError):
    """Request rejected before any state change."""
    status_code = 400
    code = 'ValidationError'


class NotFound(MarketplaceError):
    """Unknown task or submission."""
    status_code = 404
    code = 'NotFound'


class Unauthorized(MarketplaceError):
    """Actor lacks permission for this operation."""
    status_code = 403
    code = 'Unauthorized'


class InsufficientFunds(MarketplaceError):
    """Payer balance does not cover the escrow amount."""
    status_code = 402
    code = 'InsufficientFunds'


class LedgerUnavailable(MarketplaceError):
    """Settlement rail could not be reached."""
    status_code = 503
    code = 'LedgerUnavailable'
    retryable = True


class StoreUnavailable(MarketplaceError):
    """Task store could not be reached or throttled the request."""
    status_code = 503
    code = 'StoreUnavailable'
    retryable = True


class EscrowOverdraft(MarketplaceError):
    """Release would exceed the funds remaining in escrow."""
    status_code = 500
    code = 'EscrowOverdraft'


class DuplicateSubmission(MarketplaceError):
    """Worker already has a submission for this task."""
    status_code = 409
    code = 'DuplicateSubmission'


class CapacityReached(MarketplaceError):
    """Task already has all the approved workers it needs."""
    status_code = 409
    code = 'CapacityReached'


class TaskNotAcceptingSubmissions(MarketplaceError):
    """Task is not open for new submissions."""
    status_code = 409
    code = 'TaskNotAcceptingSubmissions'


class TaskClosed(TaskNotAcceptingSubmissions):
    """Task was cancelled or expired; its submissions can no longer be reviewed."""
    code = 'TaskClosed'


class AlreadyReviewed(MarketplaceError):
    """Submission already left the pending state."""
    status_code = 409
    code = 'AlreadyReviewed'


class ConflictingDecision(AlreadyReviewed):
    """Submission was already decided the other way."""
    code = 'ConflictingDecision'


class NotCancellable(MarketplaceError):
    """Task can no longer be cancelled."""
    status_code = 409
    code = 'NotCancellable'


class InvalidTransition(MarketplaceError):
    """Task status change not permitted from the current status."""
    status_code = 409
    code = 'InvalidTransition'


class ConcurrentModification(MarketplaceError):
    """Record changed underneath the operation; retry."""
    status_code = 409
    code = 'ConcurrentModification'
    retryable = True


class ReviewInProgress(ConcurrentModification):
    """Another review of this submission is still settling; retry."""
    code = 'ReviewInProgress'


class PayoutFailed(MarketplaceError):
    """Payment release failed; the submission is still pending."""
    status_code = 502
    code = 'PayoutFailed'
    retryable = True
