"""
Submission Review Engine.

Accepts worker submissions and decides them. Approval pays the worker from
the task escrow exactly once:

1. reserve   - record the submission in task.reservations under a version
               check, which holds one capacity slot for it
2. pay       - release the payment from escrow, referenced by submission id
3. finalize  - write the approved submission and the task counters together

If the payout fails the reservation is dropped and the submission stays
pending. A reservation left behind by a crashed process goes stale after
RESERVATION_LEASE_SECONDS and is completed by recover_reservations; the
ledger reference makes the repeated payout a no-op.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

from taskblitz.config import config
from taskblitz.errors import (
    CapacityReached, ConcurrentModification, ConflictingDecision, EscrowOverdraft, MarketplaceError,
    NotFound, PayoutFailed, ReviewInProgress, TaskClosed, TaskNotAcceptingSubmissions,
    Unauthorized, ValidationError,
)
from taskblitz.ledger import Ledger
from taskblitz.lifecycle import MAX_WRITE_ATTEMPTS, TaskLifecycleEngine
from taskblitz.logging import logger
from taskblitz.models import (
    SYSTEM_ACTOR, Actor, FileRefPayload, Payload, ReviewOutcome, Submission, SubmissionStatus, Task,
    TaskStatus, TextPayload, TransactionType, UrlPayload, format_timestamp, parse_timestamp,
    payload_from_dict, utcnow,
)
from taskblitz.repository import Repository


@dataclass(frozen=True)
class ReviewResult:
    submission: Submission
    outcome: str
    replayed: bool = False
    task: Optional[Task] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'submissionId': self.submission.submission_id,
            'status': self.submission.status,
            'outcome': self.outcome,
            'replayed': self.replayed,
        }


@dataclass(frozen=True)
class RejectionStatus:
    """Where a task stands against its rejection limit."""
    workers_completed: int
    workers_rejected: int
    limit_percentage: int
    rate: Decimal
    remaining: Optional[int]
    level: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'workersCompleted': self.workers_completed,
            'workersRejected': self.workers_rejected,
            'rejectionLimitPercentage': self.limit_percentage,
            'rejectionRate': self.rate,
            'remainingRejections': self.remaining,
            'level': self.level,
        }


def exceeds_rejection_limit(task: Task) -> bool:
    """Would one more rejection push the task's rejection rate over its limit?"""
    rejected = task.workers_rejected + 1
    resolved = task.workers_completed + rejected
    return rejected * 100 > task.rejection_limit_percentage * resolved


def rejection_status(task: Task) -> RejectionStatus:
    limit = task.rejection_limit_percentage
    completed, rejected = task.workers_completed, task.workers_rejected
    resolved = completed + rejected
    rate = (Decimal(rejected * 100) / resolved).quantize(Decimal('0.1'), ROUND_HALF_UP) if resolved else Decimal('0')

    if limit >= 100:
        return RejectionStatus(completed, rejected, limit, rate, None, 'none')

    # Largest k with (rejected + k) * 100 <= limit * (resolved + k)
    remaining = max(0, (limit * resolved - 100 * rejected) // (100 - limit))
    if remaining == 0:
        level = 'at_limit'
    elif rate >= Decimal(limit) * Decimal('0.8'):
        level = 'near_limit'
    elif rate >= Decimal(limit) * Decimal('0.5'):
        level = 'notice'
    else:
        level = 'none'
    return RejectionStatus(completed, rejected, limit, rate, remaining, level)


class SubmissionReviewEngine:
    """Accepts submissions and applies review decisions with exactly-once payouts."""

    def __init__(self, repository: Repository, ledger: Ledger, lifecycle: TaskLifecycleEngine,
                 settings=config):
        self.repository = repository
        self.ledger = ledger
        self.lifecycle = lifecycle
        self.settings = settings
        self.locks = lifecycle.locks

    def get_submission(self, submission_id: str) -> Submission:
        submission = self.repository.get_submission(submission_id)
        if submission is None:
            raise NotFound(f"Submission {submission_id} not found")
        return submission

    # =========================================================================
    # Submit
    # =========================================================================

    def submit(self, task_id: str, worker: Actor, payload, now: datetime = None) -> Submission:
        """
        Record a worker's submission for a task.

        Args:
            task_id: Task being worked
            worker: Submitting worker
            payload: Payload variant or its tagged dict form

        Raises:
            NotFound, ValidationError, TaskNotAcceptingSubmissions (paused),
            TaskClosed (terminal or past its deadline), CapacityReached, DuplicateSubmission
        """
        now = now or utcnow()
        if not isinstance(payload, (TextPayload, UrlPayload, FileRefPayload)):
            payload = payload_from_dict(payload)

        task = self.lifecycle.get_task(task_id)
        if worker.user_id == task.requester_id:
            raise ValidationError('Requesters cannot submit work to their own task')
        if task.is_terminal:
            raise TaskClosed(f"Task {task_id} is {task.status}", status=task.status)
        if not task.is_active:
            raise TaskNotAcceptingSubmissions(f"Task {task_id} is {task.status}", status=task.status)
        if now > task.deadline:
            raise TaskClosed(f"Task {task_id} passed its deadline", status=task.status)
        if task.workers_completed >= task.workers_needed:
            raise CapacityReached(f"Task {task_id} already has {task.workers_needed} approved workers")
        self._check_payload(task, payload)

        submission = Submission(
            submission_id=str(uuid.uuid4()),
            task_id=task_id,
            worker_id=worker.user_id,
            payload=payload,
            submitted_at=now,
        )
        submission = self.repository.insert_submission(submission)
        self.lifecycle.mark_in_progress(task_id, now)

        logger.info(f"Worker {worker.user_id} submitted {submission.submission_id} to task {task_id}")
        return submission

    @staticmethod
    def _check_payload(task: Task, payload: Payload) -> None:
        if payload.kind != task.submission_type:
            raise ValidationError(
                f"Task {task.task_id} accepts '{task.submission_type}' submissions, got '{payload.kind}'"
            )

    # =========================================================================
    # Review
    # =========================================================================

    def approve(self, submission_id: str, reviewer: Actor, now: datetime = None) -> ReviewResult:
        """
        Approve a pending submission and pay its worker.

        Repeating an approval returns the first result with replayed=True.

        Raises:
            Unauthorized, ConflictingDecision, CapacityReached, TaskClosed,
            ReviewInProgress, PayoutFailed
        """
        return self._review(submission_id, reviewer, SubmissionStatus.APPROVED, ReviewOutcome.APPROVED, now)

    def reject(self, submission_id: str, reviewer: Actor, now: datetime = None) -> ReviewResult:
        """
        Reject a pending submission.

        When the rejection would push the task past its rejection limit the
        submission is approved instead, with outcome AutoApprovedOverLimit.
        """
        return self._review(submission_id, reviewer, SubmissionStatus.REJECTED, ReviewOutcome.REJECTED, now)

    def _review(self, submission_id: str, reviewer: Actor, wanted: str, outcome: str,
                now: Optional[datetime]) -> ReviewResult:
        now = now or utcnow()
        submission = self.get_submission(submission_id)
        with self.locks.hold(submission.task_id):
            submission = self.get_submission(submission_id)
            task = self.lifecycle.get_task(submission.task_id)
            self._authorize(task, reviewer)

            replay = self._replay(submission, wanted)
            if replay:
                return replay
            if wanted == SubmissionStatus.REJECTED:
                return self._reject(task, submission, reviewer, now)
            return self._approve(task, submission, reviewer, outcome, now)

    @staticmethod
    def _authorize(task: Task, reviewer: Actor) -> None:
        if reviewer.user_id == task.requester_id or reviewer.is_admin or reviewer.is_system:
            return
        raise Unauthorized(f"{reviewer.user_id} cannot review submissions of task {task.task_id}")

    @staticmethod
    def _replay(submission: Submission, wanted: str) -> Optional[ReviewResult]:
        """Result of a decision already made, or None while the submission is pending."""
        if submission.is_pending:
            return None
        if wanted == SubmissionStatus.APPROVED and submission.outcome == ReviewOutcome.CLOSED:
            # Closed along with its task; the task check reports why it cannot be approved
            return None
        # A rejection that was converted to an approval replays as that approval
        converted = (wanted == SubmissionStatus.REJECTED
                     and submission.outcome == ReviewOutcome.AUTO_APPROVED_OVER_LIMIT)
        if submission.status == wanted or converted:
            logger.info(f"Submission {submission.submission_id} already {submission.status}, replaying")
            return ReviewResult(submission, submission.outcome, replayed=True)
        raise ConflictingDecision(
            f"Submission {submission.submission_id} was already {submission.status}",
            status=submission.status, outcome=submission.outcome,
        )

    @staticmethod
    def _ensure_reviewable(task: Task) -> None:
        if task.status == TaskStatus.COMPLETED:
            raise CapacityReached(f"Task {task.task_id} already has {task.workers_needed} approved workers")
        if task.is_terminal:
            raise TaskClosed(f"Task {task.task_id} is {task.status}", status=task.status)

    def _reload(self, submission_id: str, wanted: str):
        """Re-read after a lost write race. Returns (task, submission, replay)."""
        submission = self.get_submission(submission_id)
        task = self.lifecycle.get_task(submission.task_id)
        return task, submission, self._replay(submission, wanted)

    # -------------------------------------------------------------------------
    # Reject
    # -------------------------------------------------------------------------

    def _reject(self, task: Task, submission: Submission, reviewer: Actor, now: datetime) -> ReviewResult:
        submission_id = submission.submission_id
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            if submission_id in task.reservations:
                raise ReviewInProgress(f"Submission {submission_id} is being approved")
            if task.is_terminal:
                return self._reject_leftover(task, submission, reviewer, now)

            # Checked against the counters of this attempt
            if exceeds_rejection_limit(task):
                logger.info(f"Rejecting {submission_id} would exceed the {task.rejection_limit_percentage}% "
                            f"limit on task {task.task_id}; approving instead")
                outcome = ReviewOutcome.AUTO_APPROVED_OVER_LIMIT
                reserved = self._try_reserve(task, submission, reviewer, outcome, now)
                if reserved:
                    return self._pay(reserved, submission, reviewer, outcome, now)
            else:
                task_version, submission_version = task.version, submission.version
                self.lifecycle.record_rejection(task, now)
                submission.status = SubmissionStatus.REJECTED
                submission.outcome = ReviewOutcome.REJECTED
                submission.reviewed_at = now
                submission.reviewed_by = reviewer.user_id
                try:
                    task, submission = self.repository.save_review(task, task_version,
                                                                   submission, submission_version)
                    logger.info(f"Submission {submission_id} rejected by {reviewer.user_id}")
                    return ReviewResult(submission, ReviewOutcome.REJECTED, task=task)
                except ConcurrentModification:
                    pass

            logger.warning(f"Rejection of {submission_id} lost a write race (attempt {attempt})")
            task, submission, replay = self._reload(submission_id, SubmissionStatus.REJECTED)
            if replay:
                return replay

        raise ConcurrentModification(f"Could not record rejection of {submission_id}; retry")

    def _reject_leftover(self, task: Task, submission: Submission, reviewer: Actor,
                         now: datetime) -> ReviewResult:
        """Reject a submission left pending on a terminal task: no counters, no limit, no payout."""
        closed = self.lifecycle.close_submission(task.task_id, submission.submission_id, reviewer.user_id,
                                                 ReviewOutcome.REJECTED, now)
        if closed is None:
            # Decided meanwhile; replay it or report the conflict
            return self._replay(self.get_submission(submission.submission_id), SubmissionStatus.REJECTED)
        logger.info(f"Submission {submission.submission_id} of {task.status} task {task.task_id} "
                    f"rejected by {reviewer.user_id}")
        return ReviewResult(closed, ReviewOutcome.REJECTED, task=self.lifecycle.get_task(task.task_id))

    # -------------------------------------------------------------------------
    # Approve
    # -------------------------------------------------------------------------

    def _approve(self, task: Task, submission: Submission, reviewer: Actor, outcome: str,
                 now: datetime) -> ReviewResult:
        submission_id = submission.submission_id
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            self._ensure_reviewable(task)

            existing = task.reservations.get(submission_id)
            if existing:
                if not self.is_stale(existing, now):
                    raise ReviewInProgress(f"Submission {submission_id} is already being approved")
                logger.warning(f"Taking over stale approval of {submission_id} from {existing.get('reviewerId')}")
                return self._pay(task, submission, reviewer, existing.get('outcome', outcome), now)

            reserved = self._try_reserve(task, submission, reviewer, outcome, now)
            if reserved:
                return self._pay(reserved, submission, reviewer, outcome, now)

            logger.warning(f"Reserving {submission_id} lost a write race (attempt {attempt})")
            task, submission, replay = self._reload(submission_id, SubmissionStatus.APPROVED)
            if replay:
                return replay

        raise ConcurrentModification(f"Could not reserve a slot for {submission_id}; retry")

    def _try_reserve(self, task: Task, submission: Submission, reviewer: Actor, outcome: str,
                     now: datetime) -> Optional[Task]:
        """Hold a capacity slot for the submission. None if the task changed meanwhile."""
        if task.workers_completed + len(task.reservations) >= task.workers_needed:
            raise CapacityReached(f"Task {task.task_id} already has {task.workers_needed} approved workers")
        committed = task.amount_released + task.payment_per_task * (len(task.reservations) + 1)
        if committed > task.escrow_amount:
            raise EscrowOverdraft(f"Escrow of task {task.task_id} cannot cover another payout")

        task_version = task.version
        task.reservations[submission.submission_id] = {
            'at': format_timestamp(now),
            'outcome': outcome,
            'reviewerId': reviewer.user_id,
        }
        task.updated_at = now
        try:
            return self.repository.update_task(task, task_version)
        except ConcurrentModification:
            return None

    def _pay(self, task: Task, submission: Submission, reviewer: Actor, outcome: str,
             now: datetime) -> ReviewResult:
        submission_id = submission.submission_id
        handle = self.lifecycle.lock_handle(task)
        try:
            receipt = self.ledger.release_funds(handle, submission.worker_id, task.payment_per_task,
                                                reference=submission_id)
        except MarketplaceError as e:
            logger.error(f"Payout for submission {submission_id} failed: {e}")
            self._drop_reservation(task.task_id, submission_id)
            raise PayoutFailed(f"Payment to {submission.worker_id} failed; submission {submission_id} "
                               f"is still pending", submissionId=submission_id, cause=e.code) from e

        # Logged before finalizing; a retried payout replays the same receipt and log entry
        self.lifecycle.record_transaction(task, TransactionType.RELEASE, receipt)
        task, submission, completed = self._finalize(submission_id, reviewer, outcome, receipt.amount, now)
        logger.info(f"Submission {submission_id} approved ({outcome}); paid {receipt.amount} "
                    f"to {submission.worker_id}")

        if completed:
            task = self.lifecycle.settle(task.task_id, now)
        return ReviewResult(submission, submission.outcome, task=task)

    def _finalize(self, submission_id: str, reviewer: Actor, outcome: str, payout: Decimal, now: datetime):
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            submission = self.get_submission(submission_id)
            task = self.lifecycle.get_task(submission.task_id)
            if not submission.is_pending:
                return task, submission, False

            task_version, submission_version = task.version, submission.version
            task.reservations.pop(submission_id, None)
            completed = self.lifecycle.record_approval(task, payout, now)
            submission.status = SubmissionStatus.APPROVED
            submission.outcome = outcome
            submission.reviewed_at = now
            submission.reviewed_by = reviewer.user_id
            try:
                task, submission = self.repository.save_review(task, task_version, submission, submission_version)
                return task, submission, completed
            except ConcurrentModification:
                logger.warning(f"Finalizing approval of {submission_id} lost a write race (attempt {attempt})")

        # The reservation stays; recover_reservations completes it once stale
        raise ConcurrentModification(f"Payment for {submission_id} made but not yet recorded; retry")

    def _drop_reservation(self, task_id: str, submission_id: str) -> None:
        def mutate(task: Task) -> bool:
            return task.reservations.pop(submission_id, None) is not None

        self.lifecycle.update_task(task_id, mutate)

    def is_stale(self, reservation: Dict[str, str], now: datetime) -> bool:
        started = parse_timestamp(reservation.get('at'))
        lease = timedelta(seconds=self.settings.RESERVATION_LEASE_SECONDS)
        return started is None or now - started > lease

    # =========================================================================
    # Background work
    # =========================================================================

    def review_pending_older_than(self, timeout: timedelta, now: datetime = None) -> Dict[str, int]:
        """
        Auto-approve submissions left pending longer than timeout.

        Tasks that are paused still have their pending work approved.
        Submissions left pending on a terminal task are closed instead, so
        they leave the pending index. One failing submission never stops
        the sweep.
        """
        now = now or utcnow()
        pending = self.repository.list_pending_submissions(now - timeout)
        result = {'checked': len(pending), 'approved': 0, 'closed': 0, 'skipped': 0, 'failed': 0}

        for submission in pending:
            try:
                review = self.approve_by_timeout(submission, now)
                if review is None or review.replayed:
                    result['skipped'] += 1
                elif review.outcome == ReviewOutcome.CLOSED:
                    result['closed'] += 1
                else:
                    result['approved'] += 1
            except (CapacityReached, TaskClosed, ConflictingDecision, ReviewInProgress) as e:
                logger.info(f"Skipping auto-approval of {submission.submission_id}: {e}")
                result['skipped'] += 1
            except MarketplaceError as e:
                logger.error(f"Auto-approval of {submission.submission_id} failed: {e}")
                result['failed'] += 1
            except Exception:
                logger.exception(f"Unexpected error auto-approving {submission.submission_id}")
                result['failed'] += 1

        logger.info(f"Auto-approval sweep: {result}")
        return result

    def approve_by_timeout(self, submission: Submission, now: datetime) -> Optional[ReviewResult]:
        """
        Approve one overdue submission as the system, or close it if its task has ended.

        Returns:
            The review, or None if the submission was decided meanwhile
        """
        task = self.lifecycle.get_task(submission.task_id)
        if task.is_terminal:
            with self.locks.hold(task.task_id):
                closed = self.lifecycle.close_submission(task.task_id, submission.submission_id,
                                                         SYSTEM_ACTOR.user_id, ReviewOutcome.CLOSED, now)
            return ReviewResult(closed, ReviewOutcome.CLOSED, task=task) if closed else None
        return self._review(submission.submission_id, SYSTEM_ACTOR, SubmissionStatus.APPROVED,
                            ReviewOutcome.AUTO_APPROVED_BY_TIMEOUT, now)

    def recover_reservations(self, now: datetime = None) -> Dict[str, int]:
        """Complete approvals whose process died between reserving and recording the payout."""
        now = now or utcnow()
        result = {'checked': 0, 'recovered': 0, 'failed': 0}

        for task in self.repository.list_tasks_by_status(TaskStatus.ACTIVE | {TaskStatus.PAUSED}):
            for submission_id, reservation in list(task.reservations.items()):
                if not self.is_stale(reservation, now):
                    continue
                result['checked'] += 1
                try:
                    self._review(submission_id, SYSTEM_ACTOR, SubmissionStatus.APPROVED,
                                 reservation.get('outcome', ReviewOutcome.APPROVED), now)
                    result['recovered'] += 1
                except MarketplaceError as e:
                    logger.error(f"Could not recover approval of {submission_id}: {e}")
                    result['failed'] += 1
                except Exception:
                    logger.exception(f"Unexpected error recovering approval of {submission_id}")
                    result['failed'] += 1

        if result['checked']:
            logger.info(f"Reservation recovery: {result}")
        return result
